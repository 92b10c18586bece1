"""
hopperwatch — Warehouse Usage Reports (XDMoD)
=============================================
GPU usage, job volume and queue wait-time tables read from the XDMoD
`job_tasks` / `job_records` / `systemaccount` tables.

    gpu_usage_by_user(wc, days)   top 7 users by GPU hours
    job_stats(wc, days)           jobs and GPU hours per day
    wait_time(wc, AISG_QUEUES, days) / wait_time(wc, NUSIT_QUEUES, days)
                                  per-day, per-queue wait and GPU hours
    monthly_gpu_hours(wc)         GPU hours per month, last two years

Window start is local midnight `days` days ago, computed here and bound
as `:since` (unix seconds), so every report for the same `days` covers
the same calendar days.

Wait-time reports depend on the discovered wait column
(WarehouseConnector.wait_column); on SchemaMismatch they fail and the
other reports are unaffected.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from hopperwatch.data.warehouse_connector import JOB_TASKS_TABLE, WarehouseConnector

log = logging.getLogger("hopperwatch.reports.warehouse")

AISG_QUEUES  = ("AISG_large", "AISG_debug", "AISG_guest")
NUSIT_QUEUES = ("small", "interactive", "medium", "special", "large")

REPORT_DAYS = (1, 7, 30)
TOP_GPU_USERS = 7


def since_ts(days: int, now: Optional[datetime] = None) -> int:
    """Unix seconds of local midnight `days` days before today."""
    now = now or datetime.now()
    midnight = datetime.combine(now.date(), datetime.min.time())
    return int((midnight - timedelta(days=days)).timestamp())


def _num(v, ndigits: int = 2) -> float:
    if v is None:
        return 0.0
    return round(float(v), ndigits)


def _str_date(v) -> str:
    if isinstance(v, (date, datetime)):
        return v.isoformat()
    return str(v) if v is not None else ""


# ══════════════════════════════════════════════════════════════════════════════
#  REPORTS
# ══════════════════════════════════════════════════════════════════════════════

def gpu_usage_by_user(wc: WarehouseConnector, days: int = 7, limit: int = TOP_GPU_USERS,
                      now: Optional[datetime] = None) -> list:
    sql = f"""
        SELECT
            sa.username                                  AS username,
            COUNT(*)                                     AS num_jobs,
            COALESCE(SUM(jt.gpu_count), 0)               AS total_gpus_used,
            COALESCE(AVG(jt.gpu_count), 0)               AS avg_gpus_per_job,
            COALESCE(SUM(jt.gpu_time), 0) / 3600.0       AS total_gpu_hours,
            COALESCE(AVG(jt.gpu_time), 0) / 3600.0       AS avg_gpu_hours_per_job
        FROM {wc.table(JOB_TASKS_TABLE)} jt
        JOIN {wc.table("systemaccount")} sa ON jt.systemaccount_id = sa.id
        WHERE jt.end_time_ts >= :since
          AND jt.gpu_count > 0
        GROUP BY sa.username
        ORDER BY total_gpu_hours DESC
        LIMIT :limit
    """
    rows = wc.query(sql, {"since": since_ts(days, now), "limit": limit}).unwrap()
    return [
        {
            "username":          r["username"],
            "numJobs":           int(r["num_jobs"] or 0),
            "totalGpusUsed":     int(r["total_gpus_used"] or 0),
            "avgGpusPerJob":     _num(r["avg_gpus_per_job"]),
            "totalGpuHours":     _num(r["total_gpu_hours"]),
            "avgGpuHoursPerJob": _num(r["avg_gpu_hours_per_job"]),
        }
        for r in rows
    ]


def job_stats(wc: WarehouseConnector, days: int = 7, now: Optional[datetime] = None) -> list:
    sql = f"""
        SELECT
            DATE(FROM_UNIXTIME(end_time_ts))       AS job_date,
            COUNT(*)                               AS num_jobs,
            COALESCE(SUM(gpu_time), 0) / 3600.0    AS total_gpu_hours
        FROM {wc.table(JOB_TASKS_TABLE)}
        WHERE end_time_ts >= :since
          AND gpu_count > 0
        GROUP BY job_date
        ORDER BY job_date DESC
    """
    rows = wc.query(sql, {"since": since_ts(days, now)}).unwrap()
    return [
        {
            "jobDate":       _str_date(r["job_date"]),
            "numJobs":       int(r["num_jobs"] or 0),
            "totalGpuHours": _num(r["total_gpu_hours"]),
        }
        for r in rows
    ]


def wait_time(wc: WarehouseConnector, queues: tuple, days: int = 7,
              now: Optional[datetime] = None) -> list:
    """Per-day, per-queue wait and GPU hours for one queue group."""
    wait_col = wc.wait_column()
    names = {f"q{i}": q for i, q in enumerate(queues)}
    in_list = ", ".join(f":{k}" for k in names)
    sql = f"""
        SELECT
            DATE_FORMAT(FROM_UNIXTIME(jt.end_time_ts), '%Y-%m-%d')      AS date,
            jr.queue                                                    AS queue_name,
            COUNT(DISTINCT jt.job_id)                                   AS num_jobs,
            ROUND(SUM(jt.gpu_time) / 3600.0, 1)                         AS total_gpu_hours,
            ROUND(SUM(jt.gpu_time) / COUNT(*) / 3600.0, 1)              AS avg_gpu_hours_per_job,
            ROUND(AVG(jt.{wait_col} / 60.0), 1)                         AS avg_wait_minutes
        FROM {wc.table(JOB_TASKS_TABLE)} jt
        INNER JOIN {wc.table("job_records")} jr ON jt.job_record_id = jr.job_record_id
        WHERE jt.end_time_ts >= :since
          AND jt.gpu_count > 0
          AND jr.queue IN ({in_list})
        GROUP BY date, jr.queue
        ORDER BY date DESC, jr.queue
    """
    params = {"since": since_ts(days, now)}
    params.update(names)
    log.debug("Wait-time report for %s over %dd (column %s)", ",".join(queues), days, wait_col)
    rows = wc.query(sql, params).unwrap()
    return [
        {
            "date":              _str_date(r["date"]),
            "queueName":         r["queue_name"],
            "numJobs":           int(r["num_jobs"] or 0),
            "totalGpuHours":     _num(r["total_gpu_hours"], 1),
            "avgGpuHoursPerJob": _num(r["avg_gpu_hours_per_job"], 1),
            "avgWaitMinutes":    _num(r["avg_wait_minutes"], 1),
        }
        for r in rows
    ]


def monthly_gpu_hours(wc: WarehouseConnector, years: int = 2, now: Optional[datetime] = None) -> list:
    now = now or datetime.now()
    since = int((now - timedelta(days=365 * years)).timestamp())
    sql = f"""
        SELECT
            DATE_FORMAT(FROM_UNIXTIME(MIN(end_time_ts)), '%b %Y')          AS month,
            SUM(gpu_count * (end_time_ts - start_time_ts) / 3600.0)         AS gpu_hours
        FROM {wc.table(JOB_TASKS_TABLE)}
        WHERE end_time_ts >= :since
          AND gpu_count > 0
        GROUP BY DATE_FORMAT(FROM_UNIXTIME(end_time_ts), '%Y-%m')
        ORDER BY MIN(end_time_ts)
    """
    rows = wc.query(sql, {"since": since}).unwrap()
    return [{"month": r["month"], "gpuHours": _num(r["gpu_hours"], 1)} for r in rows]
