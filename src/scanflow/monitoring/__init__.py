"""Error reporting and metrics."""

from scanflow.monitoring.sink import MonitoringSink

__all__ = ["MonitoringSink"]
