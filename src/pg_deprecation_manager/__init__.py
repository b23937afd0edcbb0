"""Non-destructive schema deprecation and rollback for PostgreSQL."""

from pg_deprecation_manager.config import (
    AlertConfig,
    BackupConfig,
    DeprecationConfig,
    MonitoringConfig,
    RollbackConfig,
)
from pg_deprecation_manager.exceptions import (
    BackupValidationError,
    ConfigurationError,
    ConnectionError,
    DeprecationManagerError,
    ExecutionError,
    InvalidStateError,
    OperationTimeoutError,
    PoolExhaustedError,
    PostgresConnectionError,
    RetryExhaustedError,
    RollbackError,
    SafetyCheckFailure,
    ValidationError,
)
from pg_deprecation_manager.manager import DeprecationManager
from pg_deprecation_manager.metadata.models import (
    DeprecatedElement,
    DeprecationCandidate,
    DeprecationPlan,
    ElementState,
    ElementType,
    RiskLevel,
    RollbackPlan,
    Severity,
)
from pg_deprecation_manager.models import ConnectionState, HealthStatus
from pg_deprecation_manager.naming import DeprecationReason
from pg_deprecation_manager.planner import PlanOptions

__version__ = "0.1.0"

__all__ = [
    "AlertConfig",
    "BackupConfig",
    "BackupValidationError",
    "ConfigurationError",
    "ConnectionError",
    "ConnectionState",
    "DeprecatedElement",
    "DeprecationCandidate",
    "DeprecationConfig",
    "DeprecationManager",
    "DeprecationManagerError",
    "DeprecationPlan",
    "DeprecationReason",
    "ElementState",
    "ElementType",
    "ExecutionError",
    "HealthStatus",
    "InvalidStateError",
    "MonitoringConfig",
    "OperationTimeoutError",
    "PlanOptions",
    "PoolExhaustedError",
    "PostgresConnectionError",
    "RetryExhaustedError",
    "RiskLevel",
    "RollbackConfig",
    "RollbackError",
    "RollbackPlan",
    "SafetyCheckFailure",
    "Severity",
    "ValidationError",
]
