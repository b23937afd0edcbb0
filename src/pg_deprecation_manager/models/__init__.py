"""Connection-level type definitions."""

from pg_deprecation_manager.models.types import ConnectionState, HealthStatus

__all__ = ["ConnectionState", "HealthStatus"]
