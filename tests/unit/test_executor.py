"""Tests for migration execution."""

from unittest.mock import patch

import pytest

from pg_deprecation_manager import (
    ElementState,
    ExecutionError,
    InvalidStateError,
    ValidationError,
)


def candidate(element_type="table", name="user_preferences", reason="unused", confidence=0.95):
    return {"type": element_type, "name": name, "reason": reason, "confidence_score": confidence}


class TestMigrationExecutor:
    """Executing plans against the shop schema"""

    @pytest.mark.asyncio
    async def test_execute_low_risk_plan(self, manager, shop_catalog):
        plan = await manager.plan([candidate()])

        result = await manager.execute(plan, principal="alice")

        assert result.success
        assert result.executed_steps == result.total_steps == 1
        assert result.principal == "alice"
        assert result.history_recorded
        assert ("public", "user_preferences_deprecated_20250928_unu") in shop_catalog.tables
        assert ("public", "user_preferences") not in shop_catalog.tables
        assert plan.elements[0].state == ElementState.DEPRECATED
        assert manager.postgres.commits == 1
        assert manager.monitor.is_monitored("public.user_preferences")

        (row,) = manager.postgres.history_rows
        assert row["plan_id"] == plan.id
        assert row["status"] == "completed"
        assert row["checksum"] == result.checksum

    @pytest.mark.asyncio
    async def test_execute_by_plan_id(self, manager):
        plan = await manager.plan([candidate()])

        result = await manager.execute(plan.id)

        assert result.plan_id == plan.id
        assert (await manager.verify_checksum(plan.id))["status"] == "valid"

    @pytest.mark.asyncio
    async def test_approval_required(self, manager, shop_catalog):
        plan = await manager.plan([candidate("column", "users.legacy_flag")])
        before = shop_catalog.structure()

        with pytest.raises(ValidationError, match="requires approval"):
            await manager.execute(plan)

        assert shop_catalog.structure() == before
        assert manager.postgres.transactions_begun == 0

        manager.approve(plan, "carol")
        result = await manager.execute(plan)
        assert result.success
        assert "legacy_flag_deprecated_20250928_unu" in shop_catalog.tables[("public", "users")].columns

    @pytest.mark.asyncio
    async def test_force_skips_approval(self, manager):
        plan = await manager.plan([candidate("column", "users.legacy_flag")])

        result = await manager.execute(plan, force=True)

        assert result.success

    @pytest.mark.asyncio
    async def test_multi_element_plan_is_atomic(self, manager, shop_catalog):
        """A failure at the second rename leaves the first one uncommitted."""
        plan = await manager.plan([
            candidate("column", "users.legacy_flag"),
            candidate(),
        ])
        manager.approve(plan, "carol")
        assert [e.original_name for e in plan.execution_order()] == ["user_preferences", "users.legacy_flag"]
        before = shop_catalog.structure()
        manager.postgres.fail_on(r'RENAME COLUMN "legacy_flag"')

        with pytest.raises(ExecutionError) as exc_info:
            await manager.execute(plan, principal="alice")

        error = exc_info.value
        assert "failed at step 2 of 2" in str(error)
        assert error.plan_id == plan.id
        assert error.step_order == 2
        assert error.principal == "alice"
        assert 'RENAME COLUMN "legacy_flag"' in error.sql
        assert shop_catalog.structure() == before
        assert manager.postgres.rollbacks == 1
        assert manager.postgres.commits == 0
        assert all(e.state == ElementState.PLANNED for e in plan.elements)
        assert not manager.monitor.is_monitored("public.user_preferences")

        (row,) = manager.postgres.history_rows
        assert row["status"] == "failed"
        assert "Simulated failure" in row["error_message"]

    @pytest.mark.asyncio
    async def test_execution_timeout_rolls_back(self, manager, shop_catalog):
        """A plan that outlives execution_timeout_seconds commits nothing."""
        plan = await manager.plan([candidate()])
        before = shop_catalog.structure()

        with patch.object(manager.config, "execution_timeout_seconds", 0.05), \
                patch.object(manager.postgres, "_latency_ms", 40):
            with pytest.raises(ExecutionError, match=r"exceeded 0\.05s") as exc_info:
                await manager.execute(plan, principal="alice")

        assert exc_info.value.plan_id == plan.id
        assert shop_catalog.structure() == before
        assert manager.postgres.commits == 0
        assert manager.postgres.rollbacks == 1
        assert plan.elements[0].state == ElementState.PLANNED
        assert manager.postgres.history_rows[0]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_name_taken_after_planning(self, manager, shop_catalog):
        plan = await manager.plan([candidate()])
        shop_catalog.add_table("user_preferences_deprecated_20250928_unu", ["id"])

        with pytest.raises(ExecutionError, match="already exists"):
            await manager.execute(plan)

        assert ("public", "user_preferences") in shop_catalog.tables
        assert plan.elements[0].state == ElementState.PLANNED

    @pytest.mark.asyncio
    async def test_plans_execute_once(self, manager):
        plan = await manager.plan([candidate()])
        await manager.execute(plan)

        with pytest.raises(InvalidStateError, match="not in the planned state"):
            await manager.execute(plan)

    @pytest.mark.asyncio
    async def test_history_failure_does_not_undo_the_migration(self, manager, shop_catalog):
        plan = await manager.plan([candidate()])
        manager.postgres.fail_on(r"INSERT INTO .*migration_history")

        result = await manager.execute(plan)

        assert result.success
        assert result.history_recorded is False
        assert ("public", "user_preferences_deprecated_20250928_unu") in shop_catalog.tables
        assert manager.postgres.history_rows == []

    @pytest.mark.asyncio
    async def test_ddl_is_not_retried(self, manager):
        plan = await manager.plan([candidate()])
        manager.postgres.fail_on(r"RENAME TO", times=1)

        with pytest.raises(ExecutionError):
            await manager.execute(plan)

        renames = [s for s in manager.postgres.statements if "RENAME TO" in s]
        assert len(renames) == 1
