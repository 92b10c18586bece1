"""Metrics and warehouse report transformers."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from hopperwatch.core.errors import REJECTED, UNREACHABLE, FetchError, SchemaMismatch
from hopperwatch.data import cluster_metrics as cm
from hopperwatch.data import usage_reports as ur

from fakes import FakeMetrics, FakeWarehouse, instant, series

T0 = 1700000000


# =============================================================================
# METRICS: INSTANT
# =============================================================================

class TestInstantReports:

    def test_job_summary(self):
        mc = FakeMetrics({"qstat_total_r_jobs": [instant(12)],
                          "qstat_total_q_jobs": [instant(3)],
                          "qstat_total_h_jobs": []})
        assert cm.job_summary(mc) == {"running": 12, "queued": 3, "hold": 0}

    def test_job_summary_fails_when_a_total_fails(self):
        mc = FakeMetrics({"qstat_total_q_jobs": FetchError(UNREACHABLE, "down")})
        with pytest.raises(FetchError):
            cm.job_summary(mc)

    def test_jobs_by_user_top_five(self):
        rows = [instant(n, user=f"u{n}") for n in (3, 9, 1, 7, 5, 2, 8)]
        users = cm.jobs_by_user(FakeMetrics({"qstat_running_jobs_by_user": rows}))
        assert [u["user"] for u in users] == ["u9", "u8", "u7", "u5", "u3"]

    def test_jobs_by_queue_merges_running_and_queued(self):
        mc = FakeMetrics({
            "qstat_running_jobs_by_queue": [instant(4, queue="large"), instant(1, queue="small")],
            "qstat_que_by_queue":          [instant(6, queue="small"), instant(2, queue="AISG_debug")],
        })
        queues = cm.jobs_by_queue(mc)
        assert queues[0] == {"queue": "small", "count": 7, "running": 1, "queued": 6}
        assert {q["queue"] for q in queues} == {"large", "small", "AISG_debug"}

    def test_jobs_by_queue_tolerates_one_side_failing(self):
        mc = FakeMetrics({
            "qstat_running_jobs_by_queue": [instant(4, queue="large")],
            "qstat_que_by_queue":          FetchError(REJECTED, "HTTP 500"),
        })
        assert cm.jobs_by_queue(mc) == [{"queue": "large", "count": 4, "running": 4, "queued": 0}]

    def test_jobs_by_queue_fails_when_both_fail(self):
        err = FetchError(UNREACHABLE, "down")
        mc = FakeMetrics({"qstat_running_jobs_by_queue": err, "qstat_que_by_queue": err})
        with pytest.raises(FetchError):
            cm.jobs_by_queue(mc)

    def test_node_details(self):
        mc = FakeMetrics({
            "pbs_node_state":      [instant(1, node="hopper-08"), instant(3, node="hopper-07")],
            "pbs_node_gpus_total": [instant(8, node="hopper-07"), instant(8, node="hopper-08")],
            "pbs_node_gpus_used":  [instant(6, node="hopper-08")],
            "pbs_node_mem_total":  [instant(2 * 1024 ** 4, node="hopper-08")],
            "pbs_node_mem_used":   [instant(1536 * 1024 ** 3, node="hopper-08")],
            "pbs_node_jobs":       FetchError(REJECTED, "unknown metric"),
        })
        nodes = cm.node_details(mc)
        assert [n["name"] for n in nodes] == ["hopper-07", "hopper-08"]
        busy = nodes[1]
        assert busy["state"] == "busy"
        assert busy["usedGpus"] == 6
        assert busy["totalMemory"] == "2TB"
        assert busy["usedMemory"] == "1.5TB"
        assert busy["jobCount"] == 0
        assert nodes[0]["state"] == "down"

    def test_cluster_stats(self):
        mc = FakeMetrics({
            "qstat_total_r_jobs":       [instant(10)],
            "qstat_total_q_jobs":       [instant(5)],
            "qstat_total_h_jobs":       [instant(1)],
            "pbs_node_count_free":      [instant(20)],
            "pbs_node_count_busy":      [instant(22)],
            "pbs_node_count_offline":   [instant(3)],
            "pbs_node_count_down":      [instant(1)],
            "sum(pbs_node_gpus_total)": [instant(368)],
            "sum(pbs_node_gpus_used)":  [instant(92)],
        })
        stats = cm.cluster_stats(mc)
        assert stats["totalNodes"] == 46
        assert stats["downNodes"] == 4
        assert stats["totalJobs"] == 16
        assert stats["gpuUtilization"] == 25.0

    def test_cluster_stats_without_gpus(self):
        assert cm.cluster_stats(FakeMetrics())["gpuUtilization"] == 0


@pytest.mark.parametrize("n, expected", [
    (0, "0B"), (None, "0B"), (512, "512B"), (1024, "1KB"), (1536, "1.5KB"),
    (1024 ** 3, "1GB"), ("1073741824", "1GB"),
])
def test_format_bytes(n, expected):
    assert cm.format_bytes(n) == expected


# =============================================================================
# METRICS: RANGE
# =============================================================================

class TestSeriesMerge:

    def test_first_series_defines_the_axis(self):
        frame = cm.merge_series({
            "a": [series([(T0, 1), (T0 + 60, 2)])],
            "b": [series([(T0, 10), (T0 + 120, 30)])],
        }, ["a", "b"])
        assert list(frame.index) == [T0, T0 + 60]
        assert list(frame["b"]) == [10.0, 0.0]

    def test_empty_first_series_gives_empty_report(self):
        frame = cm.merge_series({"a": [], "b": [series([(T0, 1)])]}, ["a", "b"])
        assert frame.empty


class TestRangeReports:

    def test_job_history(self):
        mc = FakeMetrics({
            "qstat_total_r_jobs": [series([(T0, 5), (T0 + 300, 6)])],
            "qstat_total_q_jobs": [series([(T0, 2)])],
        })
        points = cm.job_history(mc, "24h", now=T0 + 600)
        assert points == [
            {"timestamp": "22:13", "runningJobs": 5, "queuedJobs": 2, "totalJobs": 7},
            {"timestamp": "22:18", "runningJobs": 6, "queuedJobs": 0, "totalJobs": 6},
        ]
        assert mc.windows[0].step == "5m"

    def test_resource_history_rounds(self):
        mc = FakeMetrics({cm.RESOURCE_UTILISATION["gpuUtilization"]: [series([(T0, "66.666")])]})
        points = cm.resource_history(mc, "7d", now=T0)
        assert points == [{"timestamp": "Nov 14", "gpuUtilization": 66.7,
                           "memoryUtilization": 0.0, "nodeUtilization": 0.0}]

    def test_gpu_occupation_groups(self):
        assert 'node!~"hopper-0[1-6]"' in cm.GPU_OCCUPATION["overall"]
        assert "hopper-31|" in cm.GPU_OCCUPATION["aisg"]
        assert "hopper-46" in cm.GPU_OCCUPATION["aisg"]
        assert "hopper-07|" in cm.GPU_OCCUPATION["nonAisg"]
        assert "hopper-31" not in cm.GPU_OCCUPATION["nonAisg"]

    def test_range_failure_propagates(self):
        mc = FakeMetrics({"qstat_total_q_jobs": FetchError(UNREACHABLE, "timeout")})
        with pytest.raises(FetchError):
            cm.job_history(mc, "1h")

    def test_power_history(self):
        mc = FakeMetrics({cm.POWER_TOTAL: [series([(T0, "41234.6"), (T0 + 3600, "40000")])]})
        points = cm.power_history(mc, "1d", now=T0 + 7200)
        assert points == [{"timestamp": "22:13", "total": 41235},
                          {"timestamp": "23:13", "total": 40000}]
        assert mc.windows[0].step == "1h"


# =============================================================================
# WAREHOUSE
# =============================================================================

NOW = datetime(2024, 3, 10, 15, 30)


def test_since_is_local_midnight():
    assert ur.since_ts(7, now=NOW) == int(datetime(2024, 3, 3).timestamp())


def test_gpu_usage_by_user():
    wh = FakeWarehouse(rows=[{
        "username": "alice", "num_jobs": 4, "total_gpus_used": Decimal("32"),
        "avg_gpus_per_job": Decimal("8.0000"), "total_gpu_hours": Decimal("123.456"),
        "avg_gpu_hours_per_job": Decimal("30.864"),
    }])
    out = ur.gpu_usage_by_user(wh, 7, now=NOW)
    assert out == [{"username": "alice", "numJobs": 4, "totalGpusUsed": 32, "avgGpusPerJob": 8.0,
                    "totalGpuHours": 123.46, "avgGpuHoursPerJob": 30.86}]
    sql, params = wh.queries[0]
    assert "modw.job_tasks" in sql and "modw.systemaccount" in sql
    assert params["limit"] == 7


def test_job_stats_dates_become_strings():
    wh = FakeWarehouse(rows=[{"job_date": date(2024, 3, 9), "num_jobs": 10, "total_gpu_hours": 5}])
    assert ur.job_stats(wh, 1, now=NOW) == [{"jobDate": "2024-03-09", "numJobs": 10, "totalGpuHours": 5.0}]


def test_wait_time_uses_discovered_column_and_binds_queues():
    wh = FakeWarehouse(rows=[{
        "date": "2024-03-09", "queue_name": "AISG_large", "num_jobs": 3,
        "total_gpu_hours": 12.0, "avg_gpu_hours_per_job": 4.0, "avg_wait_minutes": 17.5,
    }], wait_column="wait_time")
    out = ur.wait_time(wh, ur.AISG_QUEUES, 30, now=NOW)
    assert out[0]["queueName"] == "AISG_large"
    assert out[0]["avgWaitMinutes"] == 17.5
    sql, params = wh.queries[0]
    assert "jt.wait_time / 60.0" in sql
    assert sorted(v for k, v in params.items() if k.startswith("q")) == sorted(ur.AISG_QUEUES)


def test_wait_time_schema_mismatch_fails_fast():
    wh = FakeWarehouse(wait_column=SchemaMismatch("no wait-time column"))
    with pytest.raises(SchemaMismatch):
        ur.wait_time(wh, ur.NUSIT_QUEUES, 7)
    assert wh.queries == []


def test_monthly_gpu_hours():
    wh = FakeWarehouse(rows=[{"month": "Mar 2024", "gpu_hours": Decimal("1234.56")}])
    assert ur.monthly_gpu_hours(wh, now=NOW) == [{"month": "Mar 2024", "gpuHours": 1234.6}]


def test_warehouse_failure_propagates():
    wh = FakeWarehouse(error=FetchError(UNREACHABLE, "connection refused"))
    with pytest.raises(FetchError):
        ur.job_stats(wh, 7)
