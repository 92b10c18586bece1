"""
hopperwatch — Refresh Jobs
==========================
The four scheduled pipelines and the cache keys they write.

    analytics          hourly   warehouse reports + metrics range reports
    hardware-status    3 min    globalSystemStatus + systemPowerUpTime → HealthMerger
    power-status       3 min    Redfish power draw → PowerMerger
    cluster-overview   1 min    cluster stats, job summary, node details

`analytics` and `cluster-overview` are made of independent sub-jobs, one
per cache key. A sub-job fetches, transforms and only then writes its key;
a failing sub-job is logged with its cause and the rest still write.

Usage:
    jobs = RefreshJobs(settings, metrics, warehouse, cache)
    jobs.register(scheduler)
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from functools import partial
from typing import Callable, Optional

from hopperwatch.core.errors import FetchError
from hopperwatch.data import cluster_metrics as cm
from hopperwatch.data import usage_reports as ur
from hopperwatch.data.cache_store import CacheStore
from hopperwatch.data.metrics_connector import MetricsConnector
from hopperwatch.data.warehouse_connector import WarehouseConnector
from hopperwatch.telemetry.history import HealthMerger, PowerMerger
from hopperwatch.telemetry.transform import node_universe, transform_health, transform_power

log = logging.getLogger("hopperwatch.jobs")

# ── Cache key catalogue ───────────────────────────────────────────────────────
HARDWARE_STATUS_KEY = "hardware-status"
POWER_STATUS_KEY    = "power-status"
CLUSTER_STATS_KEY   = "cluster-stats"
JOBS_SUMMARY_KEY    = "jobs-summary"
NODES_KEY           = "nodes"

# report → range symbols; an empty tuple means one unsuffixed key
ANALYTICS_REPORTS = {
    "gpu-usage-by-user": ("1d", "7d", "30d"),
    "job-stats":         ("1d", "7d", "30d"),
    "aisg-wait-time":    ("1d", "7d", "30d"),
    "nusit-wait-time":   ("1d", "7d", "30d"),
    "monthly-gpu-hours": (),
    "job-history":       ("1h", "24h", "7d", "30d"),
    "resource-history":  ("1h", "24h", "7d", "30d"),
    "gpu-occupation":    ("24h", "7d", "30d"),
    "power-history":     ("yesterday", "1d", "7d", "30d"),
}

DAYS = {"1d": 1, "7d": 7, "30d": 30}

JOB_NAMES = ("analytics", "hardware-status", "power-status", "cluster-overview")

SUB_JOB_WORKERS = 4


def cache_key(report: str, symbol: Optional[str] = None) -> str:
    return f"{report}-{symbol}" if symbol else report


def all_cache_keys() -> list:
    keys = [HARDWARE_STATUS_KEY, POWER_STATUS_KEY, CLUSTER_STATS_KEY, JOBS_SUMMARY_KEY, NODES_KEY]
    for report, symbols in ANALYTICS_REPORTS.items():
        keys.extend(cache_key(report, s) for s in symbols or (None,))
    return keys


def _cause(e: Exception) -> str:
    return e.cause if isinstance(e, FetchError) else type(e).__name__


def run_sub_jobs(sub_jobs: dict, cache: CacheStore, job: str = "",
                 max_workers: int = SUB_JOB_WORKERS) -> dict:
    """
    Run key → payload-builder callables concurrently and write each
    successful payload under its key. Returns key → True/False.
    Raises RuntimeError only when every sub-job failed.
    """
    outcome = {}

    def _one(key: str, build: Callable):
        cache.write(key, build())

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"{job or 'sub'}-job") as pool:
        futures = {pool.submit(_one, key, build): key for key, build in sub_jobs.items()}
        for fut in as_completed(futures):
            key = futures[fut]
            try:
                fut.result()
                outcome[key] = True
            except Exception as e:
                outcome[key] = False
                log.error("[%s] %s not refreshed (%s): %s", job, key, _cause(e), e)

    failed = sorted(k for k, ok in outcome.items() if not ok)
    log.info("[%s] %d/%d keys refreshed%s", job, len(outcome) - len(failed), len(outcome),
             f"; failed: {', '.join(failed)}" if failed else "")
    if outcome and len(failed) == len(outcome):
        raise RuntimeError(f"{job}: all {len(failed)} sub-jobs failed")
    return outcome


# ══════════════════════════════════════════════════════════════════════════════
#  PIPELINES
# ══════════════════════════════════════════════════════════════════════════════

class RefreshJobs:

    def __init__(
        self,
        settings,
        metrics:   MetricsConnector,
        warehouse: WarehouseConnector,
        cache:     CacheStore,
    ):
        self.settings  = settings
        self.metrics   = metrics
        self.warehouse = warehouse
        self.cache     = cache
        self.universe  = node_universe(settings.node_prefix, settings.node_count)
        self.health    = HealthMerger(self.universe, depth=settings.health_history_depth)
        self.power     = PowerMerger(self.universe, depth=settings.power_history_depth)

    def register(self, scheduler):
        s = self.settings
        scheduler.add("analytics",        s.analytics_interval_s, self.analytics)
        scheduler.add("hardware-status",  s.hardware_interval_s,  self.hardware_status)
        scheduler.add("power-status",     s.power_interval_s,     self.power_status)
        scheduler.add("cluster-overview", s.overview_interval_s,  self.cluster_overview)

    # ── hardware-status ───────────────────────────────────────────────────────
    def hardware_status(self):
        res = self.metrics.query_many({
            "status": "globalSystemStatus",
            "uptime": "systemPowerUpTime",
        })
        status_rows = res["status"].unwrap()
        uptime_rows = res["uptime"].rows_or([])
        if not res["uptime"].ok:
            log.warning("[hardware-status] uptime unavailable (%s); keeping last known values",
                        res["uptime"].error.cause)

        self.health.ingest(transform_health(status_rows, uptime_rows, self.universe))
        snapshot = self.health.snapshot()
        self.cache.write(HARDWARE_STATUS_KEY, snapshot)
        log.info("[hardware-status] %s", snapshot["summary"])

    # ── power-status ──────────────────────────────────────────────────────────
    def power_status(self):
        rows = self.metrics.query("redfish_power_powercontrol_power_consumed_watts").unwrap()
        self.power.ingest(transform_power(rows, self.universe))
        snapshot = self.power.snapshot()
        self.cache.write(POWER_STATUS_KEY, snapshot)
        log.info("[power-status] total=%dW nodes=%d", snapshot["total"], len(snapshot["nodes"]))

    # ── cluster-overview ──────────────────────────────────────────────────────
    def _jobs_summary(self) -> dict:
        summary = cm.job_summary(self.metrics)
        summary["byUser"]  = cm.jobs_by_user(self.metrics)
        summary["byQueue"] = cm.jobs_by_queue(self.metrics)
        return summary

    def _nodes(self) -> dict:
        return {
            "counts": cm.node_counts(self.metrics),
            "nodes":  cm.node_details(self.metrics),
        }

    def overview_sub_jobs(self) -> dict:
        return {
            CLUSTER_STATS_KEY: partial(cm.cluster_stats, self.metrics),
            JOBS_SUMMARY_KEY:  self._jobs_summary,
            NODES_KEY:         self._nodes,
        }

    def cluster_overview(self):
        return run_sub_jobs(self.overview_sub_jobs(), self.cache, job="cluster-overview")

    # ── analytics ─────────────────────────────────────────────────────────────
    def analytics_sub_jobs(self) -> dict:
        wc, mc = self.warehouse, self.metrics
        builders = {
            "gpu-usage-by-user": lambda s: partial(ur.gpu_usage_by_user, wc, DAYS[s]),
            "job-stats":         lambda s: partial(ur.job_stats, wc, DAYS[s]),
            "aisg-wait-time":    lambda s: partial(ur.wait_time, wc, ur.AISG_QUEUES, DAYS[s]),
            "nusit-wait-time":   lambda s: partial(ur.wait_time, wc, ur.NUSIT_QUEUES, DAYS[s]),
            "monthly-gpu-hours": lambda s: partial(ur.monthly_gpu_hours, wc),
            "job-history":       lambda s: partial(cm.job_history, mc, s),
            "resource-history":  lambda s: partial(cm.resource_history, mc, s),
            "gpu-occupation":    lambda s: partial(cm.gpu_occupation, mc, s),
            "power-history":     lambda s: partial(cm.power_history, mc, s),
        }
        sub_jobs = {}
        for report, symbols in ANALYTICS_REPORTS.items():
            for symbol in symbols or (None,):
                sub_jobs[cache_key(report, symbol)] = builders[report](symbol)
        return sub_jobs

    def analytics(self):
        return run_sub_jobs(self.analytics_sub_jobs(), self.cache, job="analytics")
