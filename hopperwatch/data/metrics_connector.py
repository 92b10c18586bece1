"""
hopperwatch — Metrics Connector (VictoriaMetrics / Prometheus HTTP API)
========================================================================
Runs PromQL instant and range queries against the cluster's metrics
backend and returns canonical SeriesRow lists.

Every call resolves to a FetchResult: connection problems and timeouts
become `unreachable`, non-2xx answers or `status != success` become
`rejected`, and bodies without a `data.result` list become `malformed`.
Nothing is raised past this module.

Usage:
    from hopperwatch.data.metrics_connector import MetricsConnector
    mc = MetricsConnector.from_settings(get_settings())
    res = mc.query('pbs_node_count_free')
    if res.ok:
        for row in res.rows:
            print(row.labels, row.value)
    res = mc.query_range('qstat_total_r_jobs', '24h')
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np
import requests

from hopperwatch.core.errors import (
    FetchError, FetchResult, MALFORMED, REJECTED, UNREACHABLE,
)
from hopperwatch.data.time_ranges import TimeWindow, parse_time_range

log = logging.getLogger("hopperwatch.metrics")

SOURCE = "metrics"

MAX_PARALLEL_QUERIES = 8


# ══════════════════════════════════════════════════════════════════════════════
#  ROW SET
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class SeriesRow:
    """One series from a query result. Instant queries fill `value`, range queries `values`."""
    labels: dict
    value:  Optional[tuple]            = None    # (unix_ts, raw string)
    values: list                       = field(default_factory=list)

    def label(self, *names: str) -> Optional[str]:
        if not isinstance(self.labels, dict):
            return None
        for name in names:
            v = self.labels.get(name)
            if v and isinstance(v, str):
                return v
        return None

    @property
    def raw(self) -> Optional[str]:
        if isinstance(self.value, (list, tuple)) and len(self.value) >= 2:
            return self.value[1]
        return None


def _sample(v) -> Optional[tuple]:
    """(ts, raw) from a `[ts, "value"]` pair; None for anything else."""
    if isinstance(v, (list, tuple)) and len(v) == 2:
        return tuple(v)
    return None


def parse_item(item: dict) -> SeriesRow:
    """
    One `data.result` entry as a SeriesRow. Shape errors stay local to the
    row: bad labels become {}, a bad `value` becomes None and bad `values`
    pairs are dropped, so the transformer degrades only that node.
    """
    labels = item.get("metric")
    values = item.get("values")
    return SeriesRow(
        labels = labels if isinstance(labels, dict) else {},
        value  = _sample(item.get("value")),
        values = [p for p in map(_sample, values) if p] if isinstance(values, list) else [],
    )


def to_number(raw) -> Optional[float]:
    """Parse a sample value. None for missing, non-numeric, NaN or infinite input."""
    if raw is None:
        return None
    try:
        v = float(raw)
    except (TypeError, ValueError):
        return None
    if not np.isfinite(v):
        return None
    return v


def to_int(raw, default: int = 0) -> int:
    v = to_number(raw)
    return int(v) if v is not None else default


def scalar(rows: list, default: int = 0) -> int:
    """First series' value as an int; the usual shape of an aggregate instant query."""
    if not rows:
        return default
    return to_int(rows[0].raw, default)


# ══════════════════════════════════════════════════════════════════════════════
#  CONNECTOR
# ══════════════════════════════════════════════════════════════════════════════

class MetricsConnector:

    def __init__(
        self,
        base_url: str,
        timeout:  float = 10.0,
        token:    Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        session:  Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout  = timeout
        self.session  = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        elif username and password:
            self.session.auth = (username, password)

    @classmethod
    def from_settings(cls, settings) -> "MetricsConnector":
        return cls(
            base_url = settings.prometheus_url,
            timeout  = settings.prometheus_timeout,
            token    = settings.prometheus_token,
            username = settings.prometheus_username,
            password = settings.prometheus_password,
        )

    def close(self):
        self.session.close()

    # ── HTTP ──────────────────────────────────────────────────────────────────
    def _get(self, path: str, params: dict) -> FetchResult:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.get(url, params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            return FetchResult.failure(FetchError(UNREACHABLE, str(e), source=SOURCE))
        except requests.RequestException as e:
            return FetchResult.failure(FetchError(REJECTED, str(e), source=SOURCE))

        if not r.ok:
            return FetchResult.failure(FetchError(
                REJECTED, f"HTTP {r.status_code} {r.reason} for {params.get('query', '')!r}",
                source=SOURCE))

        try:
            body = r.json()
        except ValueError as e:
            return FetchResult.failure(FetchError(MALFORMED, f"invalid JSON: {e}", source=SOURCE))

        if not isinstance(body, dict):
            return FetchResult.failure(FetchError(MALFORMED, "response is not an object", source=SOURCE))
        if body.get("status") != "success":
            return FetchResult.failure(FetchError(
                REJECTED, f"query failed: {body.get('error') or body.get('status')}", source=SOURCE))

        result = (body.get("data") or {}).get("result")
        if not isinstance(result, list):
            return FetchResult.failure(FetchError(MALFORMED, "missing data.result", source=SOURCE))

        rows = [parse_item(item) for item in result if isinstance(item, dict)]
        return FetchResult.success(rows)

    # ── Public interface ──────────────────────────────────────────────────────
    def query(self, expr: str) -> FetchResult:
        """Instant query: one current value per matching series."""
        res = self._get("/api/v1/query", {"query": expr})
        if not res.ok:
            log.warning("Instant query %r failed: %s", expr, res.error)
        return res

    def query_range(self, expr: str, time_range: Union[str, TimeWindow] = "24h") -> FetchResult:
        """Range query over a symbolic range ('1h', '24h', …) or an explicit TimeWindow."""
        window = time_range if isinstance(time_range, TimeWindow) else parse_time_range(time_range)
        params = {"query": expr}
        params.update(window.as_params())
        res = self._get("/api/v1/query_range", params)
        if not res.ok:
            log.warning("Range query %r (%s) failed: %s", expr, window.symbol, res.error)
        return res

    def query_many(self, exprs: dict, time_range: Union[str, TimeWindow, None] = None) -> dict:
        """
        Issue several queries concurrently and join them: name → FetchResult.
        Instant queries when `time_range` is None, range queries otherwise.
        """
        if not exprs:
            return {}
        if time_range is None:
            call = self.query
        else:
            window = time_range if isinstance(time_range, TimeWindow) else parse_time_range(time_range)

            def call(expr):
                return self.query_range(expr, window)

        with ThreadPoolExecutor(max_workers=min(len(exprs), MAX_PARALLEL_QUERIES),
                                thread_name_prefix="metrics-query") as pool:
            futures = {name: pool.submit(call, expr) for name, expr in exprs.items()}
            return {name: fut.result() for name, fut in futures.items()}
