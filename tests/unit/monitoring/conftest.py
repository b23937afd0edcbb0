"""Fixtures for the monitoring components, wired without a manager."""

import pytest

from pg_deprecation_manager.config import AlertConfig, MonitoringConfig
from pg_deprecation_manager.metadata.models import DeprecatedElement, ElementType, UsageData
from pg_deprecation_manager.mocks import mock_config
from pg_deprecation_manager.monitoring import (
    AccessMonitor,
    AlertSystem,
    InMemoryAccessStore,
    TelemetryCollector,
)
from pg_deprecation_manager.naming import DeprecationReason


@pytest.fixture
def store():
    return InMemoryAccessStore()


@pytest.fixture
def telemetry(store, clock):
    return TelemetryCollector(store, MonitoringConfig(flush_interval_seconds=0.05), clock=clock)


@pytest.fixture
def alert_system(clock):
    return AlertSystem(AlertConfig(), channels=[], clock=clock)


@pytest.fixture
def monitor(store, telemetry, alert_system, clock):
    return AccessMonitor(store, telemetry, alert_system, mock_config(), clock=clock)


@pytest.fixture
def make_element(clock):
    """Build a deprecated element dated at the current fake time."""
    def _make(element_type=ElementType.TABLE, name="user_preferences", deprecated=None):
        short = name.split(".")[-1]
        return DeprecatedElement(
            type=element_type,
            original_name=name,
            deprecated_name=deprecated or f"{short}_deprecated_20250928_unu",
            schema="public",
            deprecation_date=clock.now,
            reason=DeprecationReason.UNUSED,
            usage_data=UsageData(confidence_score=0.9),
            migration_sql="",
            rollback_sql="",
        )
    return _make
