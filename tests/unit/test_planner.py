"""Tests for deprecation planning."""

import re
from datetime import date
from unittest.mock import AsyncMock, patch

import pytest

from pg_deprecation_manager import (
    DeprecationCandidate,
    ElementState,
    ElementType,
    PlanOptions,
    RiskLevel,
    SafetyCheckFailure,
    ValidationError,
)
from pg_deprecation_manager.metadata.models import StepDependency, StepSqlType
from pg_deprecation_manager.planner import assess_risk, estimate_duration, validate_candidates


def candidate(element_type="table", name="user_preferences", reason="unused", confidence=0.95, **extra):
    return {"type": element_type, "name": name, "reason": reason, "confidence_score": confidence, **extra}


class TestPlanning:
    """Planning over the shop schema"""

    @pytest.mark.asyncio
    async def test_unused_table_is_low_risk(self, manager):
        """user_preferences is empty and unreferenced."""
        plan = await manager.plan([candidate()])

        assert re.fullmatch(r"dep_\d+_[0-9a-f]{8}", plan.id)
        (element,) = plan.elements
        assert element.deprecated_name == "user_preferences_deprecated_20250928_unu"
        assert element.state == ElementState.PLANNED
        assert element.dependencies == []
        assert plan.metadata.risk_level == RiskLevel.LOW
        assert plan.metadata.approval_required is False
        assert plan.metadata.is_approved
        assert plan.metadata.estimated_duration == 30
        assert plan.metadata.environment == "development"
        assert plan.warnings == []
        assert manager.get_plan(plan.id) is plan

    @pytest.mark.asyncio
    async def test_rollback_plan_is_attached(self, manager):
        plan = await manager.plan([candidate()])

        rollback = plan.rollback_plan
        assert rollback.id == f"rb_{plan.id}"
        assert rollback.migration_id == plan.id
        assert [s.sql for s in rollback.steps] == [plan.elements[0].rollback_sql]

    @pytest.mark.asyncio
    async def test_planning_is_read_only(self, manager, shop_catalog):
        before = shop_catalog.structure()

        await manager.plan([candidate()])

        assert shop_catalog.structure() == before
        assert manager.postgres.transactions_begun == 0
        assert manager.postgres.ddl_statements == 0

    @pytest.mark.asyncio
    async def test_explicit_deprecation_date_and_creator(self, manager):
        plan = await manager.plan(
            [candidate()], PlanOptions(created_by="alice", deprecation_date=date(2025, 10, 1))
        )

        assert plan.elements[0].deprecated_name == "user_preferences_deprecated_20251001_unu"
        assert plan.metadata.created_by == "alice"

    @pytest.mark.asyncio
    async def test_column_with_an_index(self, manager):
        """The index on legacy_flag is captured and restored by the rollback plan."""
        plan = await manager.plan([candidate("column", "users.legacy_flag", reason="performance")])

        (element,) = plan.elements
        assert element.deprecated_name == "legacy_flag_deprecated_20250928_perf"
        assert [d.name for d in element.dependencies] == ["idx_users_legacy_flag"]
        assert plan.metadata.risk_level == RiskLevel.MEDIUM
        assert plan.metadata.approval_required is True
        assert [w.check for w in plan.warnings] == ["dependency_impact"]

        steps = plan.rollback_plan.steps
        assert [s.sql_type for s in steps] == [StepSqlType.RENAME, StepSqlType.CREATE_INDEX]
        assert plan.rollback_plan.step_dependencies == [StepDependency(step=2, depends_on=1)]
        assert plan.metadata.estimated_duration == 10

    @pytest.mark.asyncio
    async def test_candidate_objects_are_accepted(self, manager):
        plan = await manager.plan([
            DeprecationCandidate(type=ElementType.INDEX, name="idx_users_legacy_flag",
                                 reason="optimization", confidence_score=0.92),
        ])

        assert plan.elements[0].deprecated_name == "idx_users_legacy_flag_deprecated_20250928_opti"
        assert plan.metadata.risk_level == RiskLevel.LOW


class TestSafetyGate:
    """Blocking safety checks"""

    @pytest.mark.asyncio
    async def test_referenced_table_is_rejected(self, manager, shop_catalog):
        """legacy_reports is referenced by two foreign keys."""
        before = shop_catalog.structure()

        with pytest.raises(SafetyCheckFailure) as exc_info:
            await manager.plan([candidate(name="legacy_reports")])

        error = exc_info.value
        assert error.severity == "critical"
        assert [f.check for f in error.failures] == ["dependency_impact"]
        assert "report_exports_report_id_fkey" in str(error)
        assert shop_catalog.structure() == before
        assert manager.postgres.transactions_begun == 0
        assert manager.postgres.ddl_statements == 0

    @pytest.mark.asyncio
    async def test_risky_operations_produce_high_risk_plan(self, manager):
        plan = await manager.plan([candidate(name="legacy_reports")], allow_risky_operations=True)

        assert plan.metadata.risk_level == RiskLevel.HIGH
        assert plan.metadata.approval_required is True
        assert not plan.metadata.is_approved
        assert len(plan.rollback_plan.steps) == 3

    @pytest.mark.asyncio
    async def test_missing_element(self, manager):
        with patch("pg_deprecation_manager.safety.checks.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(SafetyCheckFailure) as exc_info:
                await manager.plan([candidate(name="ghosts")])

        assert "existence" in [f.check for f in exc_info.value.failures]

    @pytest.mark.asyncio
    async def test_strict_mode_blocks_high_severity(self, manager):
        low_confidence = candidate(confidence=0.75)

        plan = await manager.plan([low_confidence])
        assert [w.check for w in plan.warnings] == ["confidence_threshold"]
        assert plan.metadata.risk_level == RiskLevel.MEDIUM

        with pytest.raises(SafetyCheckFailure) as exc_info:
            await manager.plan([low_confidence], strict=True)
        assert exc_info.value.severity == "high"

    @pytest.mark.asyncio
    async def test_skipped_checks_do_not_block(self, manager):
        plan = await manager.plan([candidate(name="legacy_reports")], skip_checks={"dependency_impact"})

        assert "dependency_impact" not in {r.check for r in plan.safety_checks}
        assert plan.metadata.risk_level == RiskLevel.HIGH


class TestCandidateValidation:
    """Batch validation before any database access"""

    def test_empty_batch(self):
        with pytest.raises(ValidationError, match="No deprecation candidates"):
            validate_candidates([])

    @pytest.mark.asyncio
    async def test_duplicates(self, manager):
        issued = len(manager.postgres.statements)

        with pytest.raises(ValidationError, match="listed twice"):
            await manager.plan([candidate(), candidate(confidence=0.99)])

        assert len(manager.postgres.statements) == issued

    @pytest.mark.asyncio
    async def test_table_with_its_own_column(self, manager):
        with pytest.raises(ValidationError, match="deprecated in the same plan"):
            await manager.plan([candidate(name="users"), candidate("column", "users.legacy_flag")])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [
        candidate(name="user_preferences_deprecated_20250101_unu"),
        candidate(name="bad name"),
        candidate("column", "legacy_flag"),
        candidate(reason="boredom"),
        candidate(element_type="sequence"),
        candidate(confidence=1.5),
    ])
    async def test_malformed_candidates(self, manager, bad):
        with pytest.raises(ValidationError):
            await manager.plan([bad])


class TestRisk:
    """assess_risk() / estimate_duration()"""

    @staticmethod
    def adjust(element, confidence, deps):
        element.usage_data.confidence_score = confidence
        element.dependencies = deps
        return element

    @pytest.mark.asyncio
    async def test_risk_levels(self, manager):
        plan = await manager.plan([candidate("column", "users.legacy_flag")])
        element = plan.elements[0]
        index_dep = list(element.dependencies)

        assert assess_risk(self.adjust(element, 0.95, [])) == RiskLevel.LOW
        assert assess_risk(self.adjust(element, 0.85, [])) == RiskLevel.MEDIUM
        assert assess_risk(self.adjust(element, 0.95, index_dep)) == RiskLevel.MEDIUM
        assert assess_risk(self.adjust(element, 0.65, [])) == RiskLevel.HIGH
        assert estimate_duration([self.adjust(element, 0.95, index_dep * 3)]) == 5 + 15
