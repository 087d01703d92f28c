"""
Monitoring infrastructure for the data layer.
Provides the query metric log and Prometheus metrics.
"""

from .metrics import (
    DataLayerMetrics,
    QueryMetric,
    QueryMetricsRecorder,
)

__all__ = [
    'DataLayerMetrics',
    'QueryMetric',
    'QueryMetricsRecorder',
]
