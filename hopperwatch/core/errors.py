"""
Fetch error taxonomy shared by every source adapter.

All failure modes of an upstream call collapse into one FetchError that
carries a cause tag. Adapters never raise it across their boundary;
they hand it back inside a FetchResult so the caller decides whether to
abort (`unwrap()`) or substitute a default (`rows_or()`).
"""

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

# Cause tags
UNREACHABLE = "unreachable"   # connection refused, DNS, timeout
REJECTED    = "rejected"      # non-2xx, auth failure, status != success, bad SQL
MALFORMED   = "malformed"     # undecodable payload / missing envelope fields
SCHEMA      = "schema"        # expected column absent during introspection

CAUSES = (UNREACHABLE, REJECTED, MALFORMED, SCHEMA)

T = TypeVar("T")


class FetchError(Exception):
    """One failed upstream call. `cause` is one of CAUSES."""

    def __init__(self, cause: str, message: str, source: str = ""):
        if cause not in CAUSES:
            raise ValueError(f"unknown fetch error cause: {cause!r}")
        super().__init__(message)
        self.cause   = cause
        self.source  = source
        self.message = message

    def __str__(self) -> str:
        prefix = f"[{self.source}] " if self.source else ""
        return f"{prefix}{self.cause}: {self.message}"


class SchemaMismatch(FetchError):
    """Warehouse introspection did not find a column the query depends on."""

    def __init__(self, message: str, source: str = "warehouse"):
        super().__init__(SCHEMA, message, source=source)


@dataclass
class FetchResult(Generic[T]):
    rows:  Optional[T]          = None
    error: Optional[FetchError] = field(default=None)

    @classmethod
    def success(cls, rows: T) -> "FetchResult[T]":
        return cls(rows=rows)

    @classmethod
    def failure(cls, error: FetchError) -> "FetchResult[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.rows

    def rows_or(self, default: Any) -> Any:
        return default if self.error is not None else self.rows
