"""
Symbolic time ranges → concrete (start, end, step) windows for range queries.

    parse_time_range('24h')        → lookback 86400s, step '5m'
    parse_power_time_range('1d')   → lookback 86400s, step '1h'

Power history has its own vocabulary ('yesterday', '1d', '7d', '30d')
with coarser steps; everything else uses the general table.
"""

import time
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

log = logging.getLogger("hopperwatch.time_ranges")

# symbol → (lookback seconds, step)
TIME_RANGES = {
    "1h":  (3600,    "1m"),
    "24h": (86400,   "5m"),
    "7d":  (604800,  "30m"),
    "30d": (2592000, "4h"),
}
DEFAULT_RANGE = "24h"

# symbol → (lookback seconds, end offset seconds, step)
POWER_TIME_RANGES = {
    "yesterday": (86400,   86400, "1h"),
    "1d":        (86400,   0,     "1h"),
    "7d":        (604800,  0,     "6h"),
    "30d":       (2592000, 0,     "1d"),
}
DEFAULT_POWER_RANGE = "7d"


@dataclass(frozen=True)
class TimeWindow:
    symbol:   str
    start:    int      # unix seconds
    end:      int      # unix seconds
    step:     str
    lookback: int      # seconds

    def as_params(self) -> dict:
        return {"start": self.start, "end": self.end, "step": self.step}


def _now(now: Optional[float]) -> int:
    return int(now if now is not None else time.time())


def parse_time_range(symbol: str, now: Optional[float] = None) -> TimeWindow:
    if symbol not in TIME_RANGES:
        log.warning("Unknown time range %r, falling back to %s", symbol, DEFAULT_RANGE)
        symbol = DEFAULT_RANGE
    lookback, step = TIME_RANGES[symbol]
    end = _now(now)
    return TimeWindow(symbol=symbol, start=end - lookback, end=end, step=step, lookback=lookback)


def parse_power_time_range(symbol: str, now: Optional[float] = None) -> TimeWindow:
    if symbol not in POWER_TIME_RANGES:
        log.warning("Unknown power time range %r, falling back to %s", symbol, DEFAULT_POWER_RANGE)
        symbol = DEFAULT_POWER_RANGE
    lookback, end_offset, step = POWER_TIME_RANGES[symbol]
    end = _now(now) - end_offset
    return TimeWindow(symbol=symbol, start=end - lookback, end=end, step=step, lookback=lookback)


# ── Display formatting ────────────────────────────────────────────────────────

def format_timestamp(ts: float, symbol: str) -> str:
    """Label for a range-query point: clock time for short ranges, date otherwise."""
    dt = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    if symbol in ("1h", "24h"):
        return dt.strftime("%H:%M")
    return f"{dt.strftime('%b')} {dt.day}"


def format_power_timestamp(ts: float, symbol: str) -> str:
    dt = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    if symbol in ("1d", "yesterday"):
        return dt.strftime("%H:%M")
    if symbol == "7d":
        return dt.strftime("%a %H")
    return f"{dt.strftime('%b')} {dt.day}"
