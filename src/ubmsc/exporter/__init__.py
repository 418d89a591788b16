"""Prometheus pull exporter for ubmsc."""

from .metrics import RecordCollector, render_metrics
from .service import DEFAULT_LISTEN, MetricsExporter, parse_listen

__all__ = [
    "DEFAULT_LISTEN",
    "MetricsExporter",
    "RecordCollector",
    "parse_listen",
    "render_metrics",
]
