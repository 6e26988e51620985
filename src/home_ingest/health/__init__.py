"""Per-metric readers for Health Connect exports."""

from .base import HealthMetricReader
from .registry import DEFAULT_METRICS, available_metrics, create_metric_readers

__all__ = [
    "DEFAULT_METRICS",
    "HealthMetricReader",
    "available_metrics",
    "create_metric_readers",
]
