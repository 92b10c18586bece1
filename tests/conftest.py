import dataclasses

import pytest

from hopperwatch.core.env_config import get_settings
from hopperwatch.data.cache_store import CacheStore
from hopperwatch.telemetry.transform import node_universe


@pytest.fixture
def settings(tmp_path):
    base = get_settings(env_file=str(tmp_path / "missing.env"))
    return dataclasses.replace(
        base,
        cache_db             = str(tmp_path / "cache" / "snapshots.db"),
        node_prefix          = "hopper-",
        node_count           = 46,
        health_history_depth = 5,
        power_history_depth  = 3,
        analytics_interval_s = 3600.0,
        hardware_interval_s  = 180.0,
        power_interval_s     = 180.0,
        overview_interval_s  = 60.0,
        cors_origin          = "http://localhost:3000",
    )


@pytest.fixture
def cache(tmp_path) -> CacheStore:
    return CacheStore(str(tmp_path / "cache" / "snapshots.db"))


@pytest.fixture
def universe() -> list:
    return node_universe()
