"""Performance monitoring for the gateway."""

from socratic_gateway.core.monitoring.monitor import (
    Alert,
    AlertConfig,
    AlertSeverity,
    AlertType,
    MetricsSnapshot,
    PerformanceMonitor,
    ProviderHealth,
)

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertSeverity",
    "AlertType",
    "MetricsSnapshot",
    "PerformanceMonitor",
    "ProviderHealth",
]
