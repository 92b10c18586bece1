"""
hopperwatch - Environment Configuration
========================================
Loads `.env` (if present) and reads every runtime knob from the
environment into one frozen Settings object. Real environment variables
always win over the `.env` file.

Environment variables
─────────────────────
PROMETHEUS_URL          VictoriaMetrics / Prometheus base URL
PROMETHEUS_TIMEOUT      Per-request timeout in seconds. Default: 10
PROMETHEUS_TOKEN        Bearer token (takes precedence over basic auth)
PROMETHEUS_USERNAME     Basic auth user
PROMETHEUS_PASSWORD     Basic auth password
WAREHOUSE_URL           SQLAlchemy URL of the XDMoD warehouse
WAREHOUSE_SCHEMA        Schema holding the job tables. Default: modw
HOPPERWATCH_CACHE_DB    SQLite file backing the snapshot cache
NODE_PREFIX / NODE_COUNT   Node universe, e.g. hopper-01 … hopper-46
HEALTH_HISTORY_DEPTH    Samples kept per node for status damping. Default: 5
POWER_HISTORY_DEPTH     Samples kept per node for power damping. Default: 3
ANALYTICS_INTERVAL_S / HARDWARE_INTERVAL_S / POWER_INTERVAL_S / OVERVIEW_INTERVAL_S
API_HOST / API_PORT / CORS_ORIGIN
LOG_LEVEL               DEBUG / INFO / WARNING. Default: INFO

Usage:
    from hopperwatch.core.env_config import get_settings, configure_logging
    configure_logging()
    settings = get_settings()
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(os.path.expanduser("~/hopperwatch"))

LOG_FORMAT  = "%(asctime)s [%(levelname)s] %(name)s %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"


@dataclass(frozen=True)
class Settings:
    prometheus_url:       str
    prometheus_timeout:   float
    prometheus_token:     Optional[str]
    prometheus_username:  Optional[str]
    prometheus_password:  Optional[str]

    warehouse_url:        str
    warehouse_schema:     str

    cache_db:             str

    node_prefix:          str
    node_count:           int
    health_history_depth: int
    power_history_depth:  int

    analytics_interval_s: float
    hardware_interval_s:  float
    power_interval_s:     float
    overview_interval_s:  float

    api_host:             str
    api_port:             int
    cors_origin:          str
    log_level:            str


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        logging.getLogger("hopperwatch.config").warning(
            "Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        logging.getLogger("hopperwatch.config").warning(
            "Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def get_settings(env_file: Optional[str] = None) -> Settings:
    """Read Settings from the environment, loading `.env` first if present."""
    env_file = env_file or os.getenv("HOPPERWATCH_ENV_FILE", "")
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    prometheus_url = os.getenv("PROMETHEUS_URL", "http://localhost:9090")
    if not prometheus_url:
        logging.getLogger("hopperwatch.config").warning("PROMETHEUS_URL is not set")

    return Settings(
        prometheus_url       = prometheus_url.rstrip("/"),
        prometheus_timeout   = _float("PROMETHEUS_TIMEOUT", 10.0),
        prometheus_token     = os.getenv("PROMETHEUS_TOKEN") or None,
        prometheus_username  = os.getenv("PROMETHEUS_USERNAME") or None,
        prometheus_password  = os.getenv("PROMETHEUS_PASSWORD") or None,

        warehouse_url        = os.getenv("WAREHOUSE_URL", "mysql+pymysql://root@localhost:6032/modw"),
        warehouse_schema     = os.getenv("WAREHOUSE_SCHEMA", "modw"),

        cache_db             = os.getenv("HOPPERWATCH_CACHE_DB", str(BASE_DIR / "cache" / "snapshots.db")),

        node_prefix          = os.getenv("NODE_PREFIX", "hopper-"),
        node_count           = _int("NODE_COUNT", 46),
        health_history_depth = _int("HEALTH_HISTORY_DEPTH", 5),
        power_history_depth  = _int("POWER_HISTORY_DEPTH", 3),

        analytics_interval_s = _float("ANALYTICS_INTERVAL_S", 3600.0),
        hardware_interval_s  = _float("HARDWARE_INTERVAL_S", 180.0),
        power_interval_s     = _float("POWER_INTERVAL_S", 180.0),
        overview_interval_s  = _float("OVERVIEW_INTERVAL_S", 60.0),

        api_host             = os.getenv("API_HOST", "0.0.0.0"),
        api_port             = _int("API_PORT", 5000),
        cors_origin          = os.getenv("CORS_ORIGIN", "http://localhost:3000"),
        log_level            = os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: Optional[str] = None) -> None:
    """Install the root handler once. Safe to call repeatedly."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level   = getattr(logging, level, logging.INFO),
        format  = LOG_FORMAT,
        datefmt = LOG_DATEFMT,
    )
    # urllib3 retries are noise at INFO
    logging.getLogger("urllib3").setLevel(logging.WARNING)
