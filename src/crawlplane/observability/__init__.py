"""Logging and metrics for the control plane."""

from .logging import configure_logging
from .metrics import METRICS, MetricsManager

__all__ = ["configure_logging", "MetricsManager", "METRICS"]
