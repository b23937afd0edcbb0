"""Post-deprecation access monitoring, telemetry and alerting."""

from pg_deprecation_manager.monitoring.alerts import (
    Alert,
    AlertChannel,
    AlertSeverity,
    AlertSystem,
    AlertType,
    CallbackChannel,
    ConsoleChannel,
)
from pg_deprecation_manager.monitoring.interceptor import (
    InterceptedConnection,
    QueryInterceptor,
    classify_query,
    find_deprecated_identifiers,
)
from pg_deprecation_manager.monitoring.monitor import AccessMonitor, ElementAccessStats
from pg_deprecation_manager.monitoring.store import (
    AccessStore,
    InMemoryAccessStore,
    PostgresAccessStore,
)
from pg_deprecation_manager.monitoring.telemetry import TelemetryCollector

__all__ = [
    "AccessMonitor",
    "AccessStore",
    "Alert",
    "AlertChannel",
    "AlertSeverity",
    "AlertSystem",
    "AlertType",
    "CallbackChannel",
    "ConsoleChannel",
    "ElementAccessStats",
    "InMemoryAccessStore",
    "InterceptedConnection",
    "PostgresAccessStore",
    "QueryInterceptor",
    "TelemetryCollector",
    "classify_query",
    "find_deprecated_identifiers",
]
