"""
hopperwatch — Warehouse Connector (XDMoD data warehouse via SQLAlchemy)
=======================================================================
Runs parameterized SQL against the XDMoD `modw` schema and returns rows
as plain dicts inside a FetchResult.

Error mapping:
    connect fails (DNS, refused, timeout)       → unreachable
    connect fails with an auth error (1045, …)  → rejected
    connection dropped mid-statement            → unreachable
    any other statement error                   → rejected    (bad SQL, missing table, …)

Wait-time column discovery
──────────────────────────
XDMoD releases do not agree on the name of the per-task queue wait
column. `wait_column()` inspects the job tasks table once and remembers
the answer for the lifetime of the process; a miss raises SchemaMismatch.

Usage:
    wc = WarehouseConnector.from_settings(get_settings())
    res = wc.query("SELECT COUNT(*) AS n FROM modw.job_tasks WHERE gpu_count > :g", {"g": 0})
"""

import logging
import threading
from typing import Callable, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from hopperwatch.core.errors import (
    FetchError, FetchResult, REJECTED, SchemaMismatch, UNREACHABLE,
)

log = logging.getLogger("hopperwatch.warehouse")

SOURCE = "warehouse"

JOB_TASKS_TABLE = "job_tasks"

# Candidate names for the queue wait column, most common first
WAIT_COLUMN_CANDIDATES = ("waitduration", "wait_duration", "wait_time", "queue_wait", "wait_seconds")

# MySQL access-denied codes: 1044 db, 1045 user/password, 1698 auth plugin
AUTH_ERROR_CODES = {1044, 1045, 1698}


def _error_code(e: SQLAlchemyError):
    orig = getattr(e, "orig", None)
    args = getattr(orig, "args", None) or ()
    if args and isinstance(args[0], tuple):
        args = args[0]
    return args[0] if args else None


def connect_cause(e: SQLAlchemyError) -> str:
    """Cause tag for a failure to open a connection."""
    return REJECTED if _error_code(e) in AUTH_ERROR_CODES else UNREACHABLE


def statement_cause(e: SQLAlchemyError) -> str:
    """Cause tag for a failure on an open connection."""
    return UNREACHABLE if getattr(e, "connection_invalidated", False) else REJECTED


class WarehouseConnector:

    def __init__(self, engine: Engine, schema: Optional[str] = "modw"):
        self.engine = engine
        self.schema = schema or None
        self._wait_column: Optional[str] = None
        self._discovery_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "WarehouseConnector":
        log.info("[Warehouse] Creating engine for schema=%s", settings.warehouse_schema)
        engine = create_engine(
            settings.warehouse_url,
            pool_pre_ping = True,
            pool_recycle  = 3600,
            future        = True,
        )
        return cls(engine, schema=settings.warehouse_schema)

    def close(self):
        self.engine.dispose()

    def table(self, name: str) -> str:
        """Schema-qualified table name for interpolation into SQL text."""
        return f"{self.schema}.{name}" if self.schema else name

    # ── Queries ───────────────────────────────────────────────────────────────
    def _run(self, work: Callable) -> FetchResult:
        """Open a connection, run `work(conn)` and map any failure to a cause tag."""
        try:
            conn = self.engine.connect()
        except SQLAlchemyError as e:
            cause = connect_cause(e)
            log.warning("Warehouse connect failed (%s): %s", cause, getattr(e, "orig", None) or e)
            return FetchResult.failure(FetchError(cause, str(e), source=SOURCE))
        try:
            with conn:
                return FetchResult.success(work(conn))
        except SQLAlchemyError as e:
            cause = statement_cause(e)
            log.warning("Warehouse query failed (%s): %s", cause, e)
            return FetchResult.failure(FetchError(cause, str(e), source=SOURCE))

    def query(self, sql: str, params: Optional[dict] = None) -> FetchResult:
        def work(conn):
            result = conn.execute(text(sql), params or {})
            return [dict(r) for r in result.mappings()]
        return self._run(work)

    def test_connection(self) -> bool:
        res = self.query("SELECT 1 AS ok")
        if res.ok:
            log.info("[Warehouse] Connection OK")
        else:
            log.error("[Warehouse] Connection failed: %s", res.error)
        return res.ok

    # ── Schema introspection ──────────────────────────────────────────────────
    def columns(self, table: str) -> FetchResult:
        return self._run(
            lambda conn: [c["name"] for c in inspect(conn).get_columns(table, schema=self.schema)]
        )

    def wait_column(self) -> str:
        """
        Name of the queue wait column in job_tasks, discovered once per process.
        Raises FetchError if the table cannot be inspected and SchemaMismatch if
        no candidate column exists. Failures are not cached.
        """
        if self._wait_column is not None:
            return self._wait_column
        with self._discovery_lock:
            if self._wait_column is not None:
                return self._wait_column
            names = self.columns(JOB_TASKS_TABLE).unwrap()
            lowered = {n.lower(): n for n in names}
            for candidate in WAIT_COLUMN_CANDIDATES:
                if candidate in lowered:
                    self._wait_column = lowered[candidate]
                    log.info("[Warehouse] Wait-time column: %s.%s", JOB_TASKS_TABLE, self._wait_column)
                    return self._wait_column
            raise SchemaMismatch(
                f"no wait-time column in {self.table(JOB_TASKS_TABLE)} "
                f"(looked for {', '.join(WAIT_COLUMN_CANDIDATES)}; found {', '.join(names) or 'nothing'})"
            )
