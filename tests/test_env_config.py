"""Settings from environment variables."""

from hopperwatch.core.env_config import get_settings

VARS = ("PROMETHEUS_URL", "NODE_COUNT", "POWER_INTERVAL_S", "WAREHOUSE_URL",
        "LOG_LEVEL", "HEALTH_HISTORY_DEPTH", "API_PORT")


def _clear(monkeypatch):
    # setenv first so monkeypatch restores the pre-test environment, including
    # anything load_dotenv() writes during the test
    for var in VARS:
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)


def test_defaults(tmp_path, monkeypatch):
    _clear(monkeypatch)
    s = get_settings(env_file=str(tmp_path / "none.env"))
    assert s.prometheus_url == "http://localhost:9090"
    assert s.node_count == 46
    assert s.power_interval_s == 180.0
    assert s.warehouse_url.startswith("mysql+pymysql://")
    assert s.log_level == "INFO"


def test_env_file_and_overrides(tmp_path, monkeypatch):
    _clear(monkeypatch)
    env = tmp_path / "hopperwatch.env"
    env.write_text("PROMETHEUS_URL=http://vm.cluster:8428/\nNODE_COUNT=12\n")
    monkeypatch.setenv("HEALTH_HISTORY_DEPTH", "7")
    s = get_settings(env_file=str(env))
    assert s.prometheus_url == "http://vm.cluster:8428"
    assert s.node_count == 12
    assert s.health_history_depth == 7


def test_bad_number_falls_back_with_warning(tmp_path, monkeypatch, caplog):
    _clear(monkeypatch)
    monkeypatch.setenv("API_PORT", "five-thousand")
    s = get_settings(env_file=str(tmp_path / "none.env"))
    assert s.api_port == 5000
    assert "API_PORT" in caplog.text
