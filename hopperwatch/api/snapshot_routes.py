"""
snapshot_routes.py — Read-only Snapshot API
============================================
Serves cached payloads straight out of the CacheStore. Nothing here ever
calls a metrics or warehouse source; refresh cadence is the scheduler's
business.

    GET  /api/v1/snapshot/{key}              any cache key
    GET  /api/v1/hardware-status             merged node health
    GET  /api/v1/power-status                merged node power draw
    GET  /api/v1/cluster                     headline cluster stats
    GET  /api/v1/analytics/{report}?timeRange=7d
    POST /api/v1/refresh/{job}               202 started / 409 running / 404 unknown
    GET  /api/v1/health                      scheduler stats + cache key ages

Cold keys
─────────
A key that has never been written answers 503 "Cache not available".
A stale key is served with its own timestamp and age; callers decide
what "too old" means.

Mount:
    from hopperwatch.api.snapshot_routes import router
    app.include_router(router)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from hopperwatch.data.cache_store import CacheStore
from hopperwatch.scheduling.jobs import (
    ANALYTICS_REPORTS, CLUSTER_STATS_KEY, HARDWARE_STATUS_KEY, POWER_STATUS_KEY,
    all_cache_keys, cache_key,
)

log = logging.getLogger("hopperwatch.api")

router = APIRouter(prefix="/api/v1", tags=["snapshots"])


# ════════════════════════════════════════════════════════════════════════════
# MODELS
# ════════════════════════════════════════════════════════════════════════════

class SnapshotResponse(BaseModel):
    key:         str
    timestamp:   str
    age_seconds: float
    data:        Any


class RefreshResponse(BaseModel):
    job:     str
    started: bool
    detail:  str


class HealthResponse(BaseModel):
    status:       str
    scheduler:    Dict[str, Any]
    cache:        Dict[str, Optional[float]]
    missing_keys: list


# ════════════════════════════════════════════════════════════════════════════
# HELPERS
# ════════════════════════════════════════════════════════════════════════════

def _cache(request: Request) -> CacheStore:
    return request.app.state.cache


def _scheduler(request: Request):
    sched = getattr(request.app.state, "scheduler", None)
    if sched is None:
        raise HTTPException(status_code=503, detail="Scheduler not available")
    return sched


def _snapshot(request: Request, key: str) -> SnapshotResponse:
    entry = _cache(request).read(key)
    if entry is None:
        raise HTTPException(status_code=503, detail="Cache not available")
    return SnapshotResponse(
        key         = entry.key,
        timestamp   = entry.timestamp.isoformat(),
        age_seconds = round(entry.age_seconds(), 1),
        data        = entry.payload,
    )


def default_range(report: str) -> Optional[str]:
    symbols = ANALYTICS_REPORTS[report]
    if not symbols:
        return None
    return "24h" if "24h" in symbols else "7d"


# ════════════════════════════════════════════════════════════════════════════
# ROUTES
# ════════════════════════════════════════════════════════════════════════════

@router.get("/snapshot/{key}", response_model=SnapshotResponse)
def get_snapshot(key: str, request: Request):
    return _snapshot(request, key)


@router.get("/hardware-status", response_model=SnapshotResponse)
def get_hardware_status(request: Request):
    return _snapshot(request, HARDWARE_STATUS_KEY)


@router.get("/power-status", response_model=SnapshotResponse)
def get_power_status(request: Request):
    return _snapshot(request, POWER_STATUS_KEY)


@router.get("/cluster", response_model=SnapshotResponse)
def get_cluster(request: Request):
    return _snapshot(request, CLUSTER_STATS_KEY)


@router.get("/analytics/{report}", response_model=SnapshotResponse)
def get_analytics(
    report:    str,
    request:   Request,
    timeRange: Optional[str] = Query(None, description="Range symbol, e.g. 24h, 7d, yesterday"),
):
    if report not in ANALYTICS_REPORTS:
        raise HTTPException(status_code=404, detail=f"Unknown report: {report}")
    symbols = ANALYTICS_REPORTS[report]
    symbol = (timeRange or default_range(report)) if symbols else None
    if symbols and symbol not in symbols:
        raise HTTPException(
            status_code=422,
            detail=f"timeRange for {report} must be one of: {', '.join(symbols)}",
        )
    return _snapshot(request, cache_key(report, symbol))


@router.post("/refresh/{job}", response_model=RefreshResponse, status_code=202)
def refresh_job(job: str, request: Request):
    sched = _scheduler(request)
    if job not in sched.jobs:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job}")
    if not sched.trigger(job):
        raise HTTPException(status_code=409, detail=f"Job {job} is already running")
    log.info("Manual refresh triggered: %s", job)
    return RefreshResponse(job=job, started=True, detail="Refresh started")


@router.get("/health", response_model=HealthResponse)
def health(request: Request):
    written = _cache(request).keys()
    now = datetime.now(timezone.utc)
    ages = {
        key: round((now - datetime.fromisoformat(ts)).total_seconds(), 1)
        for key, ts in written.items()
    }
    missing = [k for k in all_cache_keys() if k not in written]
    sched = getattr(request.app.state, "scheduler", None)
    return HealthResponse(
        status       = "ok" if not missing else "degraded",
        scheduler    = sched.stats() if sched is not None else {"running": False, "jobs": {}},
        cache        = ages,
        missing_keys = missing,
    )
