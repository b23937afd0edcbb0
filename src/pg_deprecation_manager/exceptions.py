"""Custom exceptions for pg_deprecation_manager."""

from datetime import UTC, datetime
from typing import Any


class DeprecationManagerError(Exception):
    """Base exception for all pg_deprecation_manager exceptions."""

    def context(self) -> dict[str, Any]:
        """Return audit context carried by the error."""
        return {"error": type(self).__name__, "message": str(self)}


class ConnectionError(DeprecationManagerError):
    """Raised when connection-related errors occur."""


class PostgresConnectionError(ConnectionError):
    """Raised when PostgreSQL connection or query execution fails."""


class PoolExhaustedError(ConnectionError):
    """Raised when connection pool is exhausted."""


class ConfigurationError(DeprecationManagerError):
    """Raised when configuration is invalid."""


class OperationTimeoutError(DeprecationManagerError):
    """Raised when operation times out."""


class RetryExhaustedError(DeprecationManagerError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_error: Exception | None = None):
        super().__init__(message)
        self.last_error = last_error


class ValidationError(DeprecationManagerError):
    """Raised when candidate input or an identifier is malformed."""


class InvalidStateError(ValidationError):
    """Raised when an element lifecycle transition is not allowed."""


class BackupValidationError(DeprecationManagerError):
    """Raised when a backup cannot be created or fails validation."""


class SafetyCheckFailure(DeprecationManagerError):
    """Raised when blocking safety checks reject a deprecation batch.

    ``failures`` holds the failing :class:`SafetyCheckResult` objects and
    ``severity`` the worst severity among them.
    """

    def __init__(self, message: str, failures: list | None = None, severity: str = "critical"):
        super().__init__(message)
        self.failures = list(failures or [])
        self.severity = severity

    def context(self) -> dict[str, Any]:
        ctx = super().context()
        ctx["severity"] = self.severity
        ctx["failures"] = [
            {"element": f.element, "check": f.check, "severity": f.severity.value, "message": f.message}
            for f in self.failures
        ]
        return ctx


class _AuditedError(DeprecationManagerError):
    """Error carrying the plan, step and SQL needed to reconstruct an operation."""

    def __init__(
        self,
        message: str,
        plan_id: str | None = None,
        step_order: int | None = None,
        sql: str | None = None,
        principal: str | None = None,
        timestamp: datetime | None = None,
    ):
        super().__init__(message)
        self.plan_id = plan_id
        self.step_order = step_order
        self.sql = sql
        self.principal = principal
        self.timestamp = timestamp or datetime.now(UTC)

    def context(self) -> dict[str, Any]:
        ctx = super().context()
        ctx.update({
            "plan_id": self.plan_id,
            "step_order": self.step_order,
            "sql": self.sql,
            "principal": self.principal,
            "timestamp": self.timestamp.isoformat(),
        })
        return ctx


class ExecutionError(_AuditedError):
    """Raised when a migration step fails; the wrapping transaction is aborted."""


class RollbackError(_AuditedError):
    """Raised when rollback execution fails and manual intervention is required."""

    def __init__(
        self,
        message: str,
        plan_id: str | None = None,
        step_order: int | None = None,
        sql: str | None = None,
        principal: str | None = None,
        timestamp: datetime | None = None,
        completed_steps: int = 0,
        total_steps: int = 0,
        result: Any | None = None,
    ):
        super().__init__(message, plan_id, step_order, sql, principal, timestamp)
        self.completed_steps = completed_steps
        self.total_steps = total_steps
        self.result = result

    def context(self) -> dict[str, Any]:
        ctx = super().context()
        ctx["completed_steps"] = self.completed_steps
        ctx["total_steps"] = self.total_steps
        return ctx
