"""
Per-node transformers for hardware health and power readings.

Both transformers enumerate the whole node universe: a node that is
missing from the scrape, or whose row cannot be parsed, comes back as a
placeholder sample instead of disappearing from the map.

Health values come from the Redfish/iDRAC `globalSystemStatus` metric:

    1 other   2 unknown   3 ok   4 warning   5 critical   6 non-recoverable
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from hopperwatch.data.metrics_connector import SeriesRow, to_number

log = logging.getLogger("hopperwatch.transform")

UNKNOWN         = "unknown"
OK              = "ok"
WARNING         = "warning"
CRITICAL        = "critical"
NON_RECOVERABLE = "non-recoverable"
OTHER           = "other"

STATUS_CODES = {
    1: (OTHER,           "Other"),
    2: (UNKNOWN,         "Unknown"),
    3: (OK,              "OK"),
    4: (WARNING,         "Warning"),
    5: (CRITICAL,        "Critical"),
    6: (NON_RECOVERABLE, "Non-Recoverable"),
}

NO_DATA_LABEL = "No Data"
NO_DATA_VALUE = -1

HEALTH_NODE_LABELS = ("instance", "node", "host")
POWER_NODE_LABELS  = ("source",)


# ══════════════════════════════════════════════════════════════════════════════
#  SAMPLES
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class HealthSample:
    node:           str
    observed_at:    float
    status:         str   = UNKNOWN
    status_label:   str   = NO_DATA_LABEL
    status_value:   int   = NO_DATA_VALUE
    uptime_seconds: int   = 0

    @property
    def known(self) -> bool:
        return self.status != UNKNOWN


@dataclass(frozen=True)
class PowerSample:
    node:        str
    observed_at: float
    watts:       int = 0


# ══════════════════════════════════════════════════════════════════════════════
#  NODE UNIVERSE
# ══════════════════════════════════════════════════════════════════════════════

def node_universe(prefix: str = "hopper-", count: int = 46) -> list:
    """hopper-01 … hopper-46: the fixed set every snapshot enumerates."""
    return [f"{prefix}{i:02d}" for i in range(1, count + 1)]


def short_node_name(instance: str) -> str:
    """'hopper-07.cluster.local:9100' → 'hopper-07'."""
    return instance.split(":")[0].split(".")[0]


def _node_of(row: SeriesRow, label_names: Iterable[str]) -> Optional[str]:
    raw = row.label(*label_names)
    return short_node_name(raw) if raw else None


# ══════════════════════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════════════════════

def status_from_code(code: Optional[float]) -> tuple:
    """(status, label, value) for a raw status code; anything unmapped is 'unknown'."""
    if code is None or int(code) != code:
        return UNKNOWN, "Unknown", 0
    status, label = STATUS_CODES.get(int(code), (UNKNOWN, "Unknown"))
    return status, label, int(code)


def transform_health(
    status_rows: list,
    uptime_rows: list,
    universe:    list,
    observed_at: Optional[float] = None,
) -> dict:
    """
    node → HealthSample for every node in the universe.

    `uptime_rows` may be empty (uptime scrape failed); nodes then carry
    uptime 0 and the merger substitutes the last known value.
    """
    observed_at = observed_at if observed_at is not None else time.time()
    known = set(universe)
    samples = {n: HealthSample(node=n, observed_at=observed_at) for n in universe}

    for row in status_rows:
        node = _node_of(row, HEALTH_NODE_LABELS)
        if node not in known:
            continue
        code = to_number(row.raw)
        if code is None:
            log.debug("Unparseable status %r for %s", row.raw, node)
            continue
        status, label, value = status_from_code(code)
        samples[node] = replace(samples[node], status=status, status_label=label, status_value=value)

    for row in uptime_rows:
        node = _node_of(row, HEALTH_NODE_LABELS)
        if node not in known:
            continue
        seconds = to_number(row.raw)
        if seconds is None or seconds <= 0:
            continue
        samples[node] = replace(samples[node], uptime_seconds=int(seconds))

    return samples


# ══════════════════════════════════════════════════════════════════════════════
#  POWER
# ══════════════════════════════════════════════════════════════════════════════

def transform_power(rows: list, universe: list, observed_at: Optional[float] = None) -> dict:
    """node → PowerSample (watts) for every node in the universe."""
    observed_at = observed_at if observed_at is not None else time.time()
    known = set(universe)
    samples = {n: PowerSample(node=n, observed_at=observed_at) for n in universe}

    for row in rows:
        node = _node_of(row, POWER_NODE_LABELS)
        if node not in known:
            continue
        watts = to_number(row.raw)
        if watts is None or watts < 0:
            log.debug("Unparseable power reading %r for %s", row.raw, node)
            continue
        samples[node] = PowerSample(node=node, observed_at=observed_at, watts=int(watts))

    return samples
