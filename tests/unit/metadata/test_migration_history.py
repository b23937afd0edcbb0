"""Tests for the migration history log."""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from pg_deprecation_manager.metadata.history import MigrationHistory, sql_checksum
from pg_deprecation_manager.metadata.models import (
    DeprecatedElement,
    DeprecationPlan,
    ElementType,
    ExecutionResult,
    PlanMetadata,
    RiskLevel,
    RollbackPlan,
    UsageData,
)
from pg_deprecation_manager.mocks import MockPostgresConnection
from pg_deprecation_manager.naming import DeprecationReason

STARTED = datetime(2025, 9, 28, 12, 0, tzinfo=UTC)


def make_plan(plan_id: str = "dep_1") -> DeprecationPlan:
    element = DeprecatedElement(
        type=ElementType.TABLE,
        original_name="user_preferences",
        deprecated_name="user_preferences_deprecated_20250928_unu",
        schema="public",
        deprecation_date=STARTED,
        reason=DeprecationReason.UNUSED,
        usage_data=UsageData(confidence_score=0.95),
        migration_sql='ALTER TABLE "public"."user_preferences" RENAME TO "user_preferences_deprecated_20250928_unu"',
        rollback_sql='ALTER TABLE "public"."user_preferences_deprecated_20250928_unu" RENAME TO "user_preferences"',
    )
    return DeprecationPlan(
        id=plan_id,
        elements=[element],
        rollback_plan=RollbackPlan(id=f"rb_{plan_id}", migration_id=plan_id, steps=[], estimated_duration=0),
        safety_checks=[],
        metadata=PlanMetadata(
            risk_level=RiskLevel.LOW,
            approval_required=False,
            created_by="alice",
            environment="development",
        ),
    )


def make_result(plan: DeprecationPlan, success: bool = True, offset: int = 0) -> ExecutionResult:
    started = STARTED + timedelta(minutes=offset)
    return ExecutionResult(
        plan_id=plan.id,
        success=success,
        executed_steps=len(plan.elements) if success else 0,
        total_steps=len(plan.elements),
        checksum=sql_checksum([e.migration_sql for e in plan.elements]),
        principal="alice",
        started_at=started,
        finished_at=started + timedelta(milliseconds=250),
    )


class TestSqlChecksum:
    def test_stable_and_order_sensitive(self):
        a, b = "ALTER TABLE a RENAME TO b", "ALTER TABLE c RENAME TO d"

        assert sql_checksum([a, b]) == sql_checksum([a + "  ", b])
        assert sql_checksum([a, b]) != sql_checksum([b, a])
        assert len(sql_checksum([])) == 64


class TestMigrationHistory:
    """History rows written through the mock connection"""

    @pytest_asyncio.fixture
    async def connection(self):
        conn = MockPostgresConnection()
        await conn.connect()
        return conn

    @pytest_asyncio.fixture
    async def history(self, connection):
        history = MigrationHistory(connection)
        await history.initialize()
        return history

    @pytest.mark.asyncio
    async def test_initialize_creates_schema_and_table(self, history, connection):
        assert history.table == "_deprecation_metadata.migration_history"
        assert connection.statements[0] == "CREATE SCHEMA IF NOT EXISTS _deprecation_metadata"
        assert any("CREATE TABLE IF NOT EXISTS _deprecation_metadata.migration_history" in s
                   for s in connection.statements)

    @pytest.mark.asyncio
    async def test_record_execution(self, history, connection):
        plan = make_plan()
        await history.record_execution(plan, make_result(plan))

        (row,) = connection.history_rows
        assert row["plan_id"] == "dep_1"
        assert row["status"] == "completed"
        assert row["principal"] == "alice"
        assert row["risk_level"] == "low"
        assert row["execution_time_ms"] == 250
        assert '"deprecated_name": "user_preferences_deprecated_20250928_unu"' in row["elements"]

    @pytest.mark.asyncio
    async def test_record_failure_keeps_error(self, history, connection):
        plan = make_plan()
        await history.record_execution(plan, make_result(plan, success=False), error="relation exists")

        assert connection.history_rows[0]["status"] == "failed"
        assert connection.history_rows[0]["error_message"] == "relation exists"

    @pytest.mark.asyncio
    async def test_mark_rolled_back_only_touches_completed_rows(self, history, connection):
        plan = make_plan()
        await history.record_execution(plan, make_result(plan, success=False), error="boom")
        await history.record_execution(plan, make_result(plan, offset=5))

        await history.mark_rolled_back(plan.id, "bob")

        statuses = [(r["status"], r["rolled_back_by"]) for r in connection.history_rows]
        assert statuses == [("failed", None), ("rolled_back", "bob")]

    @pytest.mark.asyncio
    async def test_rollback_failure_and_resolution(self, history, connection):
        """rollback_failed -> resolved returns the row to completed"""
        plan = make_plan()
        await history.record_execution(plan, make_result(plan))
        assert await history.get_manual_intervention(plan.id) is None

        details = {"principal": "bob", "step": 1, "completed_steps": 0, "total_steps": 1}
        await history.mark_rollback_failed(plan.id, "lock timeout", details)

        record = await history.get_manual_intervention(plan.id)
        assert record["status"] == "rollback_failed"
        assert record["rollback_error"] == "lock timeout"
        assert record["rollback_details"] == details

        await history.resolve_manual_intervention(plan.id, "dba")

        (row,) = connection.history_rows
        assert row["status"] == "completed"
        assert row["resolved_by"] == "dba"
        assert row["resolved_at"] is not None
        assert await history.get_manual_intervention(plan.id) is None

    @pytest.mark.asyncio
    async def test_status_check_allows_rollback_failed(self, history, connection):
        await history.initialize()
        create = next(s for s in connection.statements if "CREATE TABLE" in s)
        assert "'rollback_failed'" in create
        assert "rollback_details JSONB" in create

    @pytest.mark.asyncio
    async def test_get_history_newest_first(self, history):
        first, second = make_plan("dep_1"), make_plan("dep_2")
        await history.record_execution(first, make_result(first))
        await history.record_execution(second, make_result(second, offset=10))

        rows = await history.get_history()
        assert [r["plan_id"] for r in rows] == ["dep_2", "dep_1"]
        assert [r["plan_id"] for r in await history.get_history(limit=1)] == ["dep_2"]
        assert (await history.get_plan_record("dep_1"))["plan_id"] == "dep_1"
        assert await history.get_plan_record("dep_404") is None

    @pytest.mark.asyncio
    async def test_verify_checksum(self, history):
        plan = make_plan()
        assert (await history.verify_checksum(plan))["status"] == "missing"

        await history.record_execution(plan, make_result(plan))
        assert (await history.verify_checksum(plan))["status"] == "valid"

        plan.elements[0].migration_sql = 'ALTER TABLE "public"."user_preferences" RENAME TO "other"'
        report = await history.verify_checksum(plan)
        assert report["status"] == "modified"
        assert report["expected_checksum"] != report["actual_checksum"]
