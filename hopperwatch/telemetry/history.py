"""
hopperwatch — History Merger (status flap damping)
==================================================
Keeps a short rolling window of recent samples per node and reduces it to
one display-stable value per node.

Health (window depth 5):
    Scan newest → oldest, ignore 'unknown', return the most severe status
    seen. Severity order:

        critical > non-recoverable > warning > other > ok

    A node whose whole window is 'unknown' is reported as 'No Data'.
    A single missed scrape therefore never flips a critical node to
    unknown, and a transient 'ok' blip never hides a developing failure.

Uptime:
    Each positive uptime reading is remembered per node (LastKnownUptime)
    and shown until a newer positive reading replaces it; a zero or
    missing reading never regresses the displayed value.

Power (window depth 3):
    Scan newest → oldest and return the first nonzero wattage, else 0.

Usage:
    merger = HealthMerger(node_universe(), depth=5)
    merger.ingest(transform_health(status_rows, uptime_rows, universe))
    snapshot = merger.snapshot()          # {'nodes': [...], 'summary': {...}}
"""

import threading
from collections import deque
from datetime import datetime, timezone
from typing import Iterator, Optional

from hopperwatch.telemetry.transform import (
    CRITICAL, HealthSample, NO_DATA_LABEL, NO_DATA_VALUE, NON_RECOVERABLE,
    OK, OTHER, PowerSample, UNKNOWN, WARNING,
)

SEVERITY_ORDER = (CRITICAL, NON_RECOVERABLE, WARNING, OTHER, OK)
_SEVERITY_RANK = {s: i for i, s in enumerate(SEVERITY_ORDER)}

HEALTH_HISTORY_DEPTH = 5
POWER_HISTORY_DEPTH  = 3


def format_uptime(seconds: Optional[float]) -> str:
    if not seconds or seconds <= 0:
        return "N/A"
    seconds = int(seconds)
    days    = seconds // 86400
    hours   = (seconds % 86400) // 3600
    minutes = (seconds % 3600) // 60
    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


# ══════════════════════════════════════════════════════════════════════════════
#  WINDOWS
# ══════════════════════════════════════════════════════════════════════════════

class HistoryWindow:
    """Bounded newest-first FIFO of samples for one node."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("history window capacity must be >= 1")
        self.capacity = capacity
        self._samples: deque = deque(maxlen=capacity)

    def push(self, sample) -> None:
        # appendleft on a bounded deque drops the oldest from the right
        self._samples.appendleft(sample)

    def __iter__(self) -> Iterator:
        return iter(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def newest(self):
        return self._samples[0] if self._samples else None

    def merge(self):
        raise NotImplementedError


class HealthWindow(HistoryWindow):

    def merge(self) -> Optional[HealthSample]:
        """Most severe known sample, newest first among equals; None if nothing known."""
        best = None
        for sample in self:
            if not sample.known:
                continue
            rank = _SEVERITY_RANK.get(sample.status, len(SEVERITY_ORDER))
            if best is None or rank < best[0]:
                best = (rank, sample)
        return best[1] if best else None


class PowerWindow(HistoryWindow):

    def merge(self) -> int:
        for sample in self:
            if sample.watts:
                return sample.watts
        return 0


# ══════════════════════════════════════════════════════════════════════════════
#  MERGERS
# ══════════════════════════════════════════════════════════════════════════════

class _Merger:
    window_cls = HistoryWindow

    def __init__(self, universe: list, depth: int):
        self.universe = list(universe)
        if not self.universe:
            raise ValueError("node universe is empty")
        self.depth    = depth
        self.windows  = {n: self.window_cls(depth) for n in self.universe}
        self.last_observed_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def cycles(self) -> int:
        return max((len(w) for w in self.windows.values()), default=0)

    def _placeholder(self, node: str, observed_at: float):
        raise NotImplementedError

    def ingest(self, samples: dict) -> None:
        """Push one cycle's samples; nodes absent from `samples` get a placeholder."""
        with self._lock:
            observed_at = max(
                (s.observed_at for s in samples.values()),
                default=datetime.now(timezone.utc).timestamp(),
            )
            for node in self.universe:
                sample = samples.get(node) or self._placeholder(node, observed_at)
                self._on_ingest(sample)
                self.windows[node].push(sample)
            self.last_observed_at = observed_at

    def _on_ingest(self, sample) -> None:
        pass


class HealthMerger(_Merger):
    window_cls = HealthWindow

    def __init__(self, universe: list, depth: int = HEALTH_HISTORY_DEPTH,
                 last_known_uptime: Optional[dict] = None):
        super().__init__(universe, depth)
        self.last_known_uptime: dict = dict(last_known_uptime or {})

    def _placeholder(self, node: str, observed_at: float) -> HealthSample:
        return HealthSample(node=node, observed_at=observed_at)

    def _on_ingest(self, sample: HealthSample) -> None:
        if sample.uptime_seconds and sample.uptime_seconds > 0:
            self.last_known_uptime[sample.node] = int(sample.uptime_seconds)

    def merge_node(self, node: str) -> dict:
        uptime = self.last_known_uptime.get(node, 0)
        chosen = self.windows[node].merge()
        if chosen is None:
            status, label, value = UNKNOWN, NO_DATA_LABEL, NO_DATA_VALUE
        else:
            status, label, value = chosen.status, chosen.status_label, chosen.status_value
        return {
            "node":            node,
            "status":          status,
            "statusLabel":     label,
            "statusValue":     value,
            "uptimeSeconds":   uptime,
            "uptimeFormatted": format_uptime(uptime),
        }

    def snapshot(self) -> Optional[dict]:
        """Merged view of every node, or None before the first ingest."""
        with self._lock:
            if self.cycles == 0:
                return None
            nodes = [self.merge_node(n) for n in self.universe]
        return {"nodes": nodes, "summary": health_summary(nodes)}


class PowerMerger(_Merger):
    window_cls = PowerWindow

    def __init__(self, universe: list, depth: int = POWER_HISTORY_DEPTH):
        super().__init__(universe, depth)

    def _placeholder(self, node: str, observed_at: float) -> PowerSample:
        return PowerSample(node=node, observed_at=observed_at)

    def merge_node(self, node: str) -> dict:
        return {"node": node, "watts": self.windows[node].merge()}

    def snapshot(self) -> Optional[dict]:
        with self._lock:
            if self.cycles == 0:
                return None
            nodes = [self.merge_node(n) for n in self.universe]
            observed_at = self.last_observed_at
        return {
            "nodes":     nodes,
            "total":     sum(n["watts"] for n in nodes),
            "timestamp": datetime.fromtimestamp(observed_at, tz=timezone.utc).isoformat(),
        }


def health_summary(nodes: list) -> dict:
    counts = {OK: 0, WARNING: 0, CRITICAL: 0, NON_RECOVERABLE: 0, OTHER: 0, UNKNOWN: 0}
    for n in nodes:
        counts[n["status"]] = counts.get(n["status"], 0) + 1
    return {
        "ok":             counts[OK],
        "warning":        counts[WARNING],
        "critical":       counts[CRITICAL],
        "nonRecoverable": counts[NON_RECOVERABLE],
        "other":          counts[OTHER],
        "unknown":        counts[UNKNOWN],
        "total":          len(nodes),
    }
