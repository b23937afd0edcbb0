"""Persisted audit log of plan executions and rollbacks."""

import asyncio
import hashlib
import json
import logging
from datetime import UTC, datetime
from typing import Any

from pg_deprecation_manager.metadata.models import (
    DeprecationPlan,
    ExecutionResult,
    MigrationStatus,
)

logger = logging.getLogger(__name__)


def sql_checksum(statements: list[str]) -> str:
    """SHA-256 over the executed statements, in execution order."""
    digest = hashlib.sha256()
    for statement in statements:
        digest.update(statement.strip().encode())
        digest.update(b"\n")
    return digest.hexdigest()


class MigrationHistory:
    """Records plan executions in ``<metadata_schema>.migration_history``.

    Writes happen on their own connection, never inside the DDL
    transaction, so the audit trail survives an aborted migration.
    """

    def __init__(self, connection, schema: str = "_deprecation_metadata"):
        """Initialize the history log.

        Args:
            connection: PostgreSQL connection instance
            schema: Schema holding the metadata tables
        """
        self.connection = connection
        self.schema = schema
        self._lock = asyncio.Lock()

    @property
    def table(self) -> str:
        return f"{self.schema}.migration_history"

    async def initialize(self) -> None:
        """Create the tracking schema and tables."""
        await self.connection.execute(f"CREATE SCHEMA IF NOT EXISTS {self.schema}")
        await self.connection.execute(f"""
        CREATE TABLE IF NOT EXISTS {self.table} (
            id SERIAL PRIMARY KEY,
            plan_id VARCHAR(64) NOT NULL,
            checksum VARCHAR(64),
            status VARCHAR(20) CHECK (
                status IN (
                    'pending', 'running', 'completed', 'failed', 'rolled_back', 'rollback_failed'
                )
            ),
            principal VARCHAR(255),
            risk_level VARCHAR(10),
            elements JSONB,
            started_at TIMESTAMPTZ,
            finished_at TIMESTAMPTZ,
            execution_time_ms INTEGER,
            error_message TEXT,
            rolled_back_at TIMESTAMPTZ,
            rolled_back_by VARCHAR(255),
            rollback_error TEXT,
            rollback_details JSONB,
            resolved_at TIMESTAMPTZ,
            resolved_by VARCHAR(255)
        )
        """)
        await self.connection.execute(
            f"CREATE INDEX IF NOT EXISTS idx_migration_history_plan ON {self.table} (plan_id)"
        )

    async def record_execution(
        self,
        plan: DeprecationPlan,
        result: ExecutionResult,
        error: str | None = None,
    ) -> None:
        """Insert one audit row for an execution attempt."""
        status = MigrationStatus.COMPLETED if result.success else MigrationStatus.FAILED
        elements = json.dumps([
            {
                "type": e.type.value,
                "schema": e.schema,
                "original_name": e.original_name,
                "deprecated_name": e.deprecated_name,
            }
            for e in plan.elements
        ])
        async with self._lock:
            await self.connection.execute(
                f"""
                INSERT INTO {self.table}
                (plan_id, checksum, status, principal, risk_level, elements,
                 started_at, finished_at, execution_time_ms, error_message)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    plan.id,
                    result.checksum,
                    status.value,
                    result.principal,
                    plan.metadata.risk_level.value,
                    elements,
                    result.started_at,
                    result.finished_at,
                    result.duration_ms,
                    error,
                ),
            )
        logger.info("Recorded %s execution of plan %s", status.value, plan.id)

    async def mark_rolled_back(self, plan_id: str, principal: str) -> None:
        """Flag the completed execution of ``plan_id`` as rolled back."""
        async with self._lock:
            await self.connection.execute(
                f"""
                UPDATE {self.table}
                SET status = %s, rolled_back_at = %s, rolled_back_by = %s
                WHERE plan_id = %s AND status = %s
                """,
                (
                    MigrationStatus.ROLLED_BACK.value,
                    datetime.now(UTC),
                    principal,
                    plan_id,
                    MigrationStatus.COMPLETED.value,
                ),
            )

    async def mark_rollback_failed(self, plan_id: str, error: str, details: dict[str, Any]) -> None:
        """Flag the completed execution of ``plan_id`` as waiting for manual intervention.

        ``details`` holds the failed step, principal and completed/total
        step counts of the rollback attempt.
        """
        async with self._lock:
            await self.connection.execute(
                f"""
                UPDATE {self.table}
                SET status = %s, rollback_error = %s, rollback_details = %s,
                    resolved_at = %s, resolved_by = %s
                WHERE plan_id = %s AND status = %s
                """,
                (
                    MigrationStatus.ROLLBACK_FAILED.value,
                    error,
                    json.dumps(details, default=str),
                    None,
                    None,
                    plan_id,
                    MigrationStatus.COMPLETED.value,
                ),
            )
        logger.error("Recorded failed rollback of plan %s", plan_id)

    async def get_manual_intervention(self, plan_id: str) -> dict[str, Any] | None:
        """The history row of ``plan_id`` if a failed rollback is unresolved."""
        for row in await self.get_history():
            if row["plan_id"] == plan_id and row["status"] == MigrationStatus.ROLLBACK_FAILED.value:
                details = row.get("rollback_details")
                if isinstance(details, str):
                    row["rollback_details"] = json.loads(details)
                return row
        return None

    async def resolve_manual_intervention(self, plan_id: str, operator: str) -> None:
        """Return a failed rollback to ``completed`` once an operator has repaired the schema."""
        async with self._lock:
            await self.connection.execute(
                f"""
                UPDATE {self.table}
                SET status = %s, resolved_at = %s, resolved_by = %s
                WHERE plan_id = %s AND status = %s
                """,
                (
                    MigrationStatus.COMPLETED.value,
                    datetime.now(UTC),
                    operator,
                    plan_id,
                    MigrationStatus.ROLLBACK_FAILED.value,
                ),
            )

    async def get_history(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Return history rows, newest first."""
        query = f"""
        SELECT id, plan_id, checksum, status, principal, risk_level, elements,
               started_at, finished_at, execution_time_ms, error_message,
               rolled_back_at, rolled_back_by, rollback_error, rollback_details,
               resolved_at, resolved_by
        FROM {self.table}
        ORDER BY started_at DESC, id DESC
        """
        if limit:
            query += f" LIMIT {int(limit)}"
        return [dict(row) for row in await self.connection.fetch_all(query)]

    async def get_plan_record(self, plan_id: str) -> dict[str, Any] | None:
        """Latest history row for ``plan_id``."""
        for row in await self.get_history():
            if row["plan_id"] == plan_id:
                return row
        return None

    async def verify_checksum(self, plan: DeprecationPlan) -> dict[str, Any]:
        """Compare the recorded checksum with the plan's current SQL.

        Returns:
            Dictionary with ``status`` (valid, modified, missing) and both checksums
        """
        record = await self.get_plan_record(plan.id)
        actual = sql_checksum([e.migration_sql for e in plan.execution_order()])
        if record is None:
            return {"plan_id": plan.id, "status": "missing", "actual_checksum": actual}
        expected = record["checksum"]
        return {
            "plan_id": plan.id,
            "status": "valid" if expected == actual else "modified",
            "expected_checksum": expected,
            "actual_checksum": actual,
        }
