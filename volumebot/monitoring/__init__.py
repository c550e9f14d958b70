"""
Monitoring package.

This package contains per-session metrics, Prometheus export, the
health/status HTTP endpoint and webhook alerting.
"""

from volumebot.monitoring.alerting import Alert, AlertConfig, AlertManager, AlertSeverity, AlertType
from volumebot.monitoring.metrics import MetricsAggregator, MetricsSnapshot
from volumebot.monitoring.metrics_rich import RichMetrics
from volumebot.monitoring.server import HealthChecker, start_metrics_server

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "MetricsAggregator",
    "MetricsSnapshot",
    "RichMetrics",
    "HealthChecker",
    "start_metrics_server",
]
