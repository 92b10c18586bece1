"""hopperwatch: telemetry aggregation cache for the Hopper HPC cluster dashboard."""

__version__ = "0.3.0"
