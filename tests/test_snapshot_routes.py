"""Snapshot HTTP API over a real CacheStore and Scheduler (not started)."""

import threading

import pytest
from fastapi.testclient import TestClient

from hopperwatch.api.app import create_app
from hopperwatch.scheduling.scheduler import Scheduler


@pytest.fixture
def release():
    ev = threading.Event()
    yield ev
    ev.set()


@pytest.fixture
def scheduler(release):
    s = Scheduler()
    s.add("power-status", 180, lambda: None)
    s.add("analytics", 3600, lambda: release.wait(5))
    yield s
    release.set()
    s.stop()


@pytest.fixture
def client(settings, cache, scheduler):
    app = create_app(settings, cache=cache, scheduler=scheduler, start_scheduler=False)
    with TestClient(app) as c:
        yield c


class TestSnapshots:

    def test_cold_key_is_503(self, client):
        r = client.get("/api/v1/hardware-status")
        assert r.status_code == 503
        assert r.json()["detail"] == "Cache not available"

    def test_written_key_is_served_with_age(self, client, cache):
        cache.write("power-status", {"nodes": [], "total": 0})
        r = client.get("/api/v1/power-status")
        assert r.status_code == 200
        body = r.json()
        assert body["key"] == "power-status"
        assert body["data"] == {"nodes": [], "total": 0}
        assert body["age_seconds"] >= 0

    def test_empty_payload_is_not_503(self, client, cache):
        cache.write("job-stats-7d", [])
        r = client.get("/api/v1/snapshot/job-stats-7d")
        assert r.status_code == 200
        assert r.json()["data"] == []

    def test_cluster_alias(self, client, cache):
        cache.write("cluster-stats", {"totalNodes": 46})
        assert client.get("/api/v1/cluster").json()["data"]["totalNodes"] == 46


class TestAnalytics:

    def test_default_range_for_time_series(self, client, cache):
        cache.write("job-history-24h", [{"timestamp": "10:00"}])
        r = client.get("/api/v1/analytics/job-history")
        assert r.status_code == 200
        assert r.json()["key"] == "job-history-24h"

    def test_default_range_for_power_and_warehouse(self, client, cache):
        cache.write("power-history-7d", [])
        cache.write("gpu-usage-by-user-7d", [])
        assert client.get("/api/v1/analytics/power-history").status_code == 200
        assert client.get("/api/v1/analytics/gpu-usage-by-user").status_code == 200

    def test_explicit_range(self, client, cache):
        cache.write("power-history-yesterday", [{"total": 1}])
        r = client.get("/api/v1/analytics/power-history", params={"timeRange": "yesterday"})
        assert r.json()["data"] == [{"total": 1}]

    def test_unranged_report_ignores_time_range(self, client, cache):
        cache.write("monthly-gpu-hours", [])
        r = client.get("/api/v1/analytics/monthly-gpu-hours", params={"timeRange": "30d"})
        assert r.json()["key"] == "monthly-gpu-hours"

    def test_invalid_range_is_422(self, client):
        r = client.get("/api/v1/analytics/gpu-occupation", params={"timeRange": "1h"})
        assert r.status_code == 422

    def test_unknown_report_is_404(self, client):
        assert client.get("/api/v1/analytics/nope").status_code == 404

    def test_known_report_not_yet_cached_is_503(self, client):
        assert client.get("/api/v1/analytics/nusit-wait-time?timeRange=1d").status_code == 503


class TestRefresh:

    def test_unknown_job_is_404(self, client):
        assert client.post("/api/v1/refresh/nope").status_code == 404

    def test_started_is_202(self, client):
        r = client.post("/api/v1/refresh/power-status")
        assert r.status_code == 202
        assert r.json()["started"] is True

    def test_running_job_is_409(self, client, scheduler):
        assert client.post("/api/v1/refresh/analytics").status_code == 202
        r = client.post("/api/v1/refresh/analytics")
        assert r.status_code == 409
        assert scheduler.jobs["analytics"].skipped == 1


def test_health_reports_missing_keys(client, cache):
    cache.write("hardware-status", {"nodes": []})
    body = client.get("/api/v1/health").json()
    assert body["status"] == "degraded"
    assert "hardware-status" in body["cache"]
    assert "power-status" in body["missing_keys"]
    assert set(body["scheduler"]["jobs"]) == {"power-status", "analytics"}
