"""Schema metadata: data models, per-kind SQL strategies, catalog introspection and history."""

from pg_deprecation_manager.metadata.catalog import CatalogInspector
from pg_deprecation_manager.metadata.history import MigrationHistory, sql_checksum
from pg_deprecation_manager.metadata.models import (
    AccessEvent,
    AccessSource,
    DeprecatedElement,
    DeprecationCandidate,
    DeprecationPlan,
    DependencyType,
    ElementDependency,
    ElementState,
    ElementType,
    ExecutionResult,
    Impact,
    MigrationStatus,
    PlanMetadata,
    QueryType,
    RiskLevel,
    RollbackPlan,
    RollbackResult,
    RollbackStep,
    RollbackTestResult,
    SafetyCheckResult,
    Severity,
    SourceType,
    StepDependency,
    StepFailure,
    StepSqlType,
    UsageData,
)
from pg_deprecation_manager.metadata.strategies import STRATEGIES, ElementStrategy, strategy_for

__all__ = [
    "STRATEGIES",
    "AccessEvent",
    "AccessSource",
    "CatalogInspector",
    "DependencyType",
    "DeprecatedElement",
    "DeprecationCandidate",
    "DeprecationPlan",
    "ElementDependency",
    "ElementState",
    "ElementStrategy",
    "ElementType",
    "ExecutionResult",
    "Impact",
    "MigrationHistory",
    "MigrationStatus",
    "PlanMetadata",
    "QueryType",
    "RiskLevel",
    "RollbackPlan",
    "RollbackResult",
    "RollbackStep",
    "RollbackTestResult",
    "SafetyCheckResult",
    "Severity",
    "SourceType",
    "StepDependency",
    "StepFailure",
    "StepSqlType",
    "UsageData",
    "sql_checksum",
    "strategy_for",
]
