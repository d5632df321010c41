"""Test monitoring and alerting."""

from abpilot.monitoring.alerts import AlertStream, Subscription
from abpilot.monitoring.models import (
    ALERT_SEVERITIES,
    AlertSeverity,
    AlertType,
    MonitoringAlert,
    MonitoringSnapshot,
)
from abpilot.monitoring.monitor import PerformanceMonitor

__all__ = [
    "ALERT_SEVERITIES",
    "AlertSeverity",
    "AlertStream",
    "AlertType",
    "MonitoringAlert",
    "MonitoringSnapshot",
    "PerformanceMonitor",
    "Subscription",
]
