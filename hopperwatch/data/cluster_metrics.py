"""
hopperwatch — Cluster Metrics Reports
=====================================
Turns PBS / Redfish exporter series from the metrics backend into the
JSON payloads the dashboard reads from the snapshot cache.

Instant reports (cluster-overview job, every minute):
    job_summary      running / queued / held totals
    jobs_by_user     top 5 users by running jobs
    jobs_by_queue    running + queued per queue
    node_counts      free / busy / offline / down
    node_details     per-node state, GPUs, memory, job count
    cluster_stats    headline numbers for the overview cards

Range reports (analytics job, hourly):
    job_history        running / queued jobs over time
    resource_history   GPU / memory / node utilisation %
    gpu_occupation     GPU occupation % per node group
    power_history      total cluster draw in watts

Every function takes a MetricsConnector and either returns a payload or
raises FetchError; the calling sub-job decides what a failure means.
Optional inputs (per-queue queued counts, per-node job counts) fall back
to empty instead of failing the report.

Series merge
────────────
Range reports combine several series on the FIRST series' timestamps.
A point missing from a later series is 0; points only present in a
later series are dropped.
"""

import logging
from typing import Callable, Optional

import pandas as pd

from hopperwatch.data.metrics_connector import MetricsConnector, scalar, to_int, to_number
from hopperwatch.data.time_ranges import (
    format_power_timestamp, format_timestamp, parse_power_time_range, parse_time_range,
)

log = logging.getLogger("hopperwatch.reports.metrics")

# ── PromQL ────────────────────────────────────────────────────────────────────
JOB_TOTALS = {
    "running": "qstat_total_r_jobs",
    "queued":  "qstat_total_q_jobs",
    "hold":    "qstat_total_h_jobs",
}
NODE_COUNTS = {
    "free":    "pbs_node_count_free",
    "busy":    "pbs_node_count_busy",
    "offline": "pbs_node_count_offline",
    "down":    "pbs_node_count_down",
}
NODE_DETAILS = {
    "state":      "pbs_node_state",
    "gpus_total": "pbs_node_gpus_total",
    "gpus_used":  "pbs_node_gpus_used",
    "mem_total":  "pbs_node_mem_total",
    "mem_used":   "pbs_node_mem_used",
    "jobs":       "pbs_node_jobs",
}
GPU_TOTALS = {
    "gpus_total": "sum(pbs_node_gpus_total)",
    "gpus_used":  "sum(pbs_node_gpus_used)",
}
RESOURCE_UTILISATION = {
    "gpuUtilization":    "(sum(pbs_node_gpus_used) / sum(pbs_node_gpus_total)) * 100",
    "memoryUtilization": "(sum(pbs_node_mem_used) / sum(pbs_node_mem_total)) * 100",
    "nodeUtilization":   "(pbs_node_count_busy / (pbs_node_count_free + pbs_node_count_busy)) * 100",
}
POWER_TOTAL = "sum(redfish_power_powercontrol_power_consumed_watts)"

NODE_STATES = {0: "free", 1: "busy", 2: "offline", 3: "down"}

# Node groups for GPU occupation. hopper-01..06 are login / service nodes.
EXCLUDED_NODES_RE = "hopper-0[1-6]"
AISG_NODES        = [f"hopper-{i:02d}" for i in range(31, 47)]
NON_AISG_NODES    = [f"hopper-{i:02d}" for i in range(7, 31)]

TOP_USERS = 5


# ══════════════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════════════

def format_bytes(n) -> str:
    """1073741824 → '1GB'; 1610612736 → '1.5GB'."""
    n = to_number(n)
    if not n or n <= 0:
        return "0B"
    sizes = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while n >= 1024 and i < len(sizes) - 1:
        n /= 1024
        i += 1
    return f"{round(n, 2):g}{sizes[i]}"


def _points(rows: list) -> pd.Series:
    """First series of a range result as a float Series indexed by unix time."""
    if not rows or not rows[0].values:
        return pd.Series(dtype=float)
    values = rows[0].values
    s = pd.Series(
        [to_number(v) for _, v in values],
        index=[float(t) for t, _ in values],
        dtype=float,
    )
    return s[~s.index.duplicated(keep="first")]


def merge_series(series: dict, order: list) -> pd.DataFrame:
    """
    Align named range results on the timestamps of `order[0]`.
    Returns a frame indexed by unix time with one column per name; gaps are 0.
    """
    frame = pd.DataFrame({order[0]: _points(series[order[0]])})
    for name in order[1:]:
        frame[name] = _points(series[name]).reindex(frame.index)
    return frame.fillna(0)


def _unwrap_all(results: dict) -> dict:
    return {name: res.unwrap() for name, res in results.items()}


def _group_ratio(nodes_re: str, negate: bool = False) -> str:
    op = "!~" if negate else "=~"
    sel = f'{{node{op}"{nodes_re}"}}'
    return f"(sum(pbs_node_gpus_used{sel}) / sum(pbs_node_gpus_total{sel})) * 100"


GPU_OCCUPATION = {
    "overall": _group_ratio(EXCLUDED_NODES_RE, negate=True),
    "aisg":    _group_ratio("|".join(AISG_NODES)),
    "nonAisg": _group_ratio("|".join(NON_AISG_NODES)),
}


# ══════════════════════════════════════════════════════════════════════════════
#  INSTANT REPORTS
# ══════════════════════════════════════════════════════════════════════════════

def job_summary(mc: MetricsConnector) -> dict:
    rows = _unwrap_all(mc.query_many(JOB_TOTALS))
    return {name: scalar(rows[name]) for name in JOB_TOTALS}


def jobs_by_user(mc: MetricsConnector, limit: int = TOP_USERS) -> list:
    rows = mc.query("qstat_running_jobs_by_user").unwrap()
    users = [
        {"user": r.label("user") or "unknown", "count": to_int(r.raw)}
        for r in rows
    ]
    users.sort(key=lambda u: u["count"], reverse=True)
    return users[:limit]


def jobs_by_queue(mc: MetricsConnector) -> list:
    res = mc.query_many({
        "running": "qstat_running_jobs_by_queue",
        "queued":  "qstat_que_by_queue",
    })
    if not (res["running"].ok or res["queued"].ok):
        raise res["running"].error

    queues = {}
    for r in res["running"].rows_or([]):
        name = r.label("queue")
        n = to_int(r.raw)
        queues[name] = {"queue": name, "count": n, "running": n, "queued": 0}
    for r in res["queued"].rows_or([]):
        name = r.label("queue")
        n = to_int(r.raw)
        q = queues.setdefault(name, {"queue": name, "count": 0, "running": 0, "queued": 0})
        q["queued"] = n
        q["count"] += n
    return sorted(queues.values(), key=lambda q: q["count"], reverse=True)


def node_counts(mc: MetricsConnector) -> dict:
    rows = _unwrap_all(mc.query_many(NODE_COUNTS))
    return {name: scalar(rows[name]) for name in NODE_COUNTS}


def node_details(mc: MetricsConnector) -> list:
    res = mc.query_many(NODE_DETAILS)
    rows = {name: r.unwrap() for name, r in res.items() if name != "jobs"}
    rows["jobs"] = res["jobs"].rows_or([])
    if not res["jobs"].ok:
        log.debug("pbs_node_jobs unavailable, job counts left at 0: %s", res["jobs"].error)

    nodes = {}
    for r in rows["state"]:
        name = r.label("node")
        if not name:
            continue
        state = to_number(r.raw)
        nodes[name] = {
            "id":          name,
            "name":        name,
            "state":       NODE_STATES.get(int(state), "unknown") if state is not None else "unknown",
            "totalGpus":   0,
            "usedGpus":    0,
            "totalMemory": "0B",
            "usedMemory":  "0B",
            "jobCount":    0,
        }

    def _fill(metric: str, field: str, convert: Callable):
        for r in rows[metric]:
            node = nodes.get(r.label("node"))
            if node is not None:
                node[field] = convert(r.raw)

    _fill("gpus_total", "totalGpus",   to_int)
    _fill("gpus_used",  "usedGpus",    to_int)
    _fill("mem_total",  "totalMemory", format_bytes)
    _fill("mem_used",   "usedMemory",  format_bytes)
    _fill("jobs",       "jobCount",    to_int)
    return sorted(nodes.values(), key=lambda n: n["name"])


def cluster_stats(mc: MetricsConnector) -> dict:
    queries = {}
    queries.update(JOB_TOTALS)
    queries.update(NODE_COUNTS)
    queries.update(GPU_TOTALS)
    rows = _unwrap_all(mc.query_many(queries))
    v = {name: scalar(rows[name]) for name in queries}

    total_gpus, used_gpus = v["gpus_total"], v["gpus_used"]
    return {
        "totalNodes":     v["free"] + v["busy"] + v["offline"] + v["down"],
        "busyNodes":      v["busy"],
        "freeNodes":      v["free"],
        "downNodes":      v["down"] + v["offline"],
        "totalJobs":      v["running"] + v["queued"] + v["hold"],
        "runningJobs":    v["running"],
        "queuedJobs":     v["queued"],
        "heldJobs":       v["hold"],
        "totalGpus":      total_gpus,
        "usedGpus":       used_gpus,
        "gpuUtilization": round(used_gpus / total_gpus * 100, 1) if total_gpus > 0 else 0,
    }


# ══════════════════════════════════════════════════════════════════════════════
#  RANGE REPORTS
# ══════════════════════════════════════════════════════════════════════════════

def _range_report(mc: MetricsConnector, exprs: dict, symbol: str,
                  convert: Callable, now: Optional[float] = None) -> list:
    window = parse_time_range(symbol, now=now)
    rows   = _unwrap_all(mc.query_many(exprs, window))
    frame  = merge_series(rows, list(exprs))
    return [
        {"timestamp": format_timestamp(ts, window.symbol),
         **{name: convert(point[name]) for name in exprs}}
        for ts, point in frame.iterrows()
    ]


def job_history(mc: MetricsConnector, symbol: str = "24h", now: Optional[float] = None) -> list:
    points = _range_report(
        mc, {"runningJobs": JOB_TOTALS["running"], "queuedJobs": JOB_TOTALS["queued"]},
        symbol, int, now=now,
    )
    for p in points:
        p["totalJobs"] = p["runningJobs"] + p["queuedJobs"]
    return points


def resource_history(mc: MetricsConnector, symbol: str = "24h", now: Optional[float] = None) -> list:
    return _range_report(mc, RESOURCE_UTILISATION, symbol, lambda x: round(float(x), 1), now=now)


def gpu_occupation(mc: MetricsConnector, symbol: str = "24h", now: Optional[float] = None) -> list:
    return _range_report(mc, GPU_OCCUPATION, symbol, lambda x: round(float(x), 2), now=now)


def power_history(mc: MetricsConnector, symbol: str = "7d", now: Optional[float] = None) -> list:
    window = parse_power_time_range(symbol, now=now)
    rows   = mc.query_range(POWER_TOTAL, window).unwrap()
    points = _points(rows).fillna(0)
    return [
        {"timestamp": format_power_timestamp(ts, window.symbol), "total": int(round(w))}
        for ts, w in points.items()
    ]
