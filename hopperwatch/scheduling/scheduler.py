"""
hopperwatch — Refresh Scheduler
===============================
Runs named refresh jobs on fixed intervals in a background thread.

    sched = Scheduler()
    sched.add("power-status", 180, power_pipeline)
    sched.start()              # runs every job once, waits, then starts the timer
    sched.trigger("power-status")
    sched.stats()
    sched.stop()

Per job:  idle → running → idle
  - A job starts only from idle. A tick (or trigger) that finds it still
    running is skipped and counted; runs of one job never overlap.
  - Different jobs run on a shared worker pool and may overlap.
  - Any exception from a pipeline is logged and counted here and the job
    goes back to idle. Nothing propagates into the timer thread.
"""

import time
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

log = logging.getLogger("hopperwatch.scheduler")

IDLE    = "idle"
RUNNING = "running"


@dataclass
class Job:
    name:          str
    interval:      float
    pipeline:      Callable[[], object]
    state:         str                = IDLE
    last_run:      Optional[datetime] = None
    last_duration: Optional[float]    = None
    last_error:    Optional[str]      = None
    runs:          int                = 0
    failures:      int                = 0
    skipped:       int                = 0
    next_due:      float              = field(default=0.0, repr=False)

    def to_dict(self) -> dict:
        return {
            "name":          self.name,
            "interval_s":    self.interval,
            "state":         self.state,
            "last_run":      self.last_run.isoformat() if self.last_run else None,
            "last_duration": round(self.last_duration, 3) if self.last_duration is not None else None,
            "last_error":    self.last_error,
            "runs":          self.runs,
            "failures":      self.failures,
            "skipped":       self.skipped,
        }


class Scheduler:

    def __init__(self, tick: float = 1.0, max_workers: int = 8):
        self.tick        = tick
        self.jobs: dict  = {}
        self._lock       = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pool       = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hopperwatch-job")

    def add(self, name: str, interval: float, pipeline: Callable[[], object]) -> Job:
        if name in self.jobs:
            raise ValueError(f"job {name!r} already registered")
        if interval <= 0:
            raise ValueError(f"job {name!r}: interval must be positive")
        job = Job(name=name, interval=float(interval), pipeline=pipeline)
        self.jobs[name] = job
        return job

    # ── Lifecycle ─────────────────────────────────────────────────────────────
    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self, warm: bool = True):
        """Run every job once (and wait for it), then start the timer thread."""
        if self.running:
            return
        self._stop_event.clear()

        if warm:
            log.info("Warm-up: running %d job(s)", len(self.jobs))
            futures = [f for f in (self._submit(j) for j in self.jobs.values()) if f]
            wait(futures)

        now = time.monotonic()
        for job in self.jobs.values():
            job.next_due = now + job.interval

        self._thread = threading.Thread(target=self._loop, daemon=True, name="hopperwatch-scheduler")
        self._thread.start()
        log.info("Scheduler started: %s",
                 ", ".join(f"{j.name}/{j.interval:g}s" for j in self.jobs.values()))

    def stop(self, wait_for_jobs: bool = True):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._pool.shutdown(wait=wait_for_jobs)
        log.info("Scheduler stopped")

    def _loop(self):
        while not self._stop_event.wait(self.tick):
            now = time.monotonic()
            for job in list(self.jobs.values()):
                if now >= job.next_due:
                    job.next_due = now + job.interval
                    self._submit(job)

    # ── Execution ─────────────────────────────────────────────────────────────
    def trigger(self, name: str) -> bool:
        """Run `name` now unless it is already running. KeyError if unknown."""
        return self._submit(self.jobs[name]) is not None

    def _submit(self, job: Job) -> Optional[Future]:
        with self._lock:
            if job.state == RUNNING:
                job.skipped += 1
                log.info("Job %s still running, skipping this run (%d skipped)", job.name, job.skipped)
                return None
            job.state = RUNNING
        try:
            return self._pool.submit(self._run, job)
        except RuntimeError:
            # pool already shut down
            with self._lock:
                job.state = IDLE
            return None

    def _run(self, job: Job):
        started = time.monotonic()
        error = None
        try:
            job.pipeline()
        except Exception as e:
            error = e
            log.exception("Job %s failed: %s", job.name, e)
        finally:
            with self._lock:
                job.runs         += 1
                job.last_run      = datetime.now(timezone.utc)
                job.last_duration = time.monotonic() - started
                job.last_error    = str(error) if error else None
                if error:
                    job.failures += 1
                job.state = IDLE
        if error is None:
            log.debug("Job %s finished in %.2fs", job.name, job.last_duration)

    def stats(self) -> dict:
        with self._lock:
            return {
                "running": self.running,
                "jobs":    {name: job.to_dict() for name, job in self.jobs.items()},
            }
