# hopperwatch telemetry: per-node transformers and flap-damping history
from hopperwatch.telemetry.transform import (
    HealthSample, PowerSample, node_universe, transform_health, transform_power,
)
from hopperwatch.telemetry.history import (
    HealthMerger, PowerMerger, HistoryWindow, format_uptime,
)

__all__ = [
    "HealthSample", "PowerSample", "node_universe", "transform_health", "transform_power",
    "HealthMerger", "PowerMerger", "HistoryWindow", "format_uptime",
]
