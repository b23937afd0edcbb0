"""Deprecation planning.

The planner turns candidates from an external unused-element analysis into
a :class:`DeprecationPlan`. Planning only reads the catalog: if any
blocking safety check fails it raises :class:`SafetyCheckFailure` before a
plan exists, so nothing has touched the schema.
"""

import asyncio
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from pg_deprecation_manager import naming
from pg_deprecation_manager.backup.validator import BackupValidator
from pg_deprecation_manager.config import DeprecationConfig
from pg_deprecation_manager.exceptions import SafetyCheckFailure, ValidationError
from pg_deprecation_manager.metadata.catalog import CatalogInspector
from pg_deprecation_manager.metadata.models import (
    DeprecatedElement,
    DeprecationCandidate,
    DeprecationPlan,
    ElementState,
    ElementType,
    PlanMetadata,
    RiskLevel,
    Severity,
    UsageData,
    utcnow,
)
from pg_deprecation_manager.metadata.strategies import check_identifier, strategy_for
from pg_deprecation_manager.rollback import RollbackManager
from pg_deprecation_manager.safety.checks import (
    SafetyCheckEngine,
    SafetyCheckOptions,
    blocking_failures,
    retry_read_only,
)

logger = logging.getLogger(__name__)

LOW_RISK_CONFIDENCE = 0.9
HIGH_RISK_CONFIDENCE = 0.7
SECONDS_PER_DEPENDENCY = 5

_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


@dataclass
class PlanOptions:
    """Options for a single planning run."""
    created_by: str = "system"
    backup_id: str | None = None
    backup_validated: bool = False
    approval_granted: bool = False
    allow_risky_operations: bool | None = None
    strict: bool | None = None
    skip_checks: set[str] = field(default_factory=set)
    deprecation_date: date | None = None


def assess_risk(element: DeprecatedElement) -> RiskLevel:
    """Risk of deprecating one element.

    Zero dependencies with confidence of at least 0.9 is low; a high-impact
    dependency or confidence below 0.7 is high; anything else is medium.
    """
    score = element.usage_data.confidence_score
    if element.high_impact_dependencies or score < HIGH_RISK_CONFIDENCE:
        return RiskLevel.HIGH
    if not element.dependencies and score >= LOW_RISK_CONFIDENCE:
        return RiskLevel.LOW
    return RiskLevel.MEDIUM


def plan_risk(elements: list[DeprecatedElement]) -> RiskLevel:
    return max((assess_risk(e) for e in elements), key=_RISK_RANK.__getitem__, default=RiskLevel.LOW)


def estimate_duration(elements: list[DeprecatedElement]) -> int:
    """Estimated execution time in seconds."""
    total = 0
    for element in elements:
        total += strategy_for(element.type).estimated_seconds
        total += SECONDS_PER_DEPENDENCY * len(element.dependencies)
    return total


def new_plan_id(now: datetime) -> str:
    return f"dep_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def validate_candidates(candidates: list[DeprecationCandidate]) -> None:
    """Reject malformed batches before any database access.

    Raises:
        ValidationError: On an empty batch, malformed names, duplicates, or a
            table planned together with one of its own columns or constraints
    """
    if not candidates:
        raise ValidationError("No deprecation candidates given")

    seen: set[tuple[str, ElementType, str]] = set()
    tables: set[tuple[str, str]] = set()
    members: list[tuple[str, str, str, ElementType]] = []
    for candidate in candidates:
        strategy = strategy_for(candidate.type)
        element_type = strategy.element_type
        check_identifier(candidate.schema, "schema name")
        table, identifier = strategy.split(candidate.name)
        issues = naming.validate_can_deprecate(identifier)
        if issues:
            raise ValidationError(f"{candidate.schema}.{candidate.name}: " + "; ".join(issues))
        if not 0.0 <= candidate.confidence_score <= 1.0:
            raise ValidationError(f"{candidate.name}: confidence_score must be between 0 and 1")
        naming.reason_code(candidate.reason)

        key = (candidate.schema, element_type, candidate.name)
        if key in seen:
            raise ValidationError(f"{element_type.value} {candidate.schema}.{candidate.name} is listed twice")
        seen.add(key)
        if element_type == ElementType.TABLE:
            tables.add((candidate.schema, candidate.name))
        elif table is not None:
            members.append((candidate.schema, table, candidate.name, element_type))

    for schema, table, name, element_type in members:
        if (schema, table) in tables:
            raise ValidationError(
                f"{element_type.value} {schema}.{name} belongs to table {schema}.{table}, "
                "which is deprecated in the same plan"
            )


class DeprecationPlanner:
    """Builds deprecation plans from candidates."""

    def __init__(
        self,
        catalog: CatalogInspector,
        safety: SafetyCheckEngine,
        rollback: RollbackManager,
        config: DeprecationConfig,
        backup: BackupValidator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.safety = safety
        self.rollback = rollback
        self.config = config
        self.backup = backup
        self.clock = clock
        self._semaphore = asyncio.Semaphore(config.safety_check_concurrency)

    def build_element(
        self, candidate: DeprecationCandidate, now: datetime, on: date | None = None
    ) -> DeprecatedElement:
        """Create the proposed element with its migration and rollback SQL."""
        strategy = strategy_for(candidate.type)
        identifier = strategy.target_identifier(candidate.name)
        element = DeprecatedElement(
            type=ElementType(candidate.type),
            original_name=candidate.name,
            deprecated_name=naming.generate(identifier, candidate.reason, on or now.date()),
            schema=candidate.schema,
            deprecation_date=now,
            reason=naming.DeprecationReason(candidate.reason),
            usage_data=UsageData(
                confidence_score=candidate.confidence_score,
                last_accessed=candidate.last_accessed,
                access_count=candidate.access_count,
                analysis_date=now,
                access_sources=list(candidate.access_sources),
            ),
            migration_sql="",
            rollback_sql="",
        )
        element.migration_sql = strategy.migration_sql(element)
        element.rollback_sql = strategy.rollback_sql(element)
        return element

    async def _introspect(self, element: DeprecatedElement) -> None:
        async with self._semaphore:
            element.dependencies = await retry_read_only(
                lambda: self.catalog.get_dependencies(element.type, element.schema, element.original_name),
                self.config,
                f"dependency lookup for {element.qualified_name}",
            )
            element.usage_data.scan_baseline = await retry_read_only(
                lambda: self.catalog.get_scan_baseline(element.type, element.schema, element.original_name),
                self.config,
                f"usage baseline for {element.qualified_name}",
            )

    async def _backup_validated(self, options: PlanOptions) -> bool:
        if options.backup_validated:
            return True
        if options.backup_id and self.backup is not None:
            result = await self.backup.validate_backup(options.backup_id)
            return result.passed
        return False

    async def plan(
        self,
        candidates: list[DeprecationCandidate | dict[str, Any]],
        options: PlanOptions | None = None,
    ) -> DeprecationPlan:
        """Plan the deprecation of ``candidates``.

        Returns:
            A plan whose elements are in the ``planned`` state, with its
            rollback plan attached

        Raises:
            ValidationError: If the candidate batch is malformed
            SafetyCheckFailure: If any blocking safety check fails
        """
        options = options or PlanOptions()
        candidates = [
            c if isinstance(c, DeprecationCandidate) else DeprecationCandidate.from_dict(c)
            for c in candidates
        ]
        validate_candidates(candidates)

        now = self.clock()
        plan_id = new_plan_id(now)
        elements = [self.build_element(c, now, options.deprecation_date) for c in candidates]

        await asyncio.gather(*(self._introspect(e) for e in elements))

        strict = self.config.strict_mode if options.strict is None else options.strict
        results = await self.safety.check(elements, SafetyCheckOptions(
            backup_validated=await self._backup_validated(options),
            approval_granted=options.approval_granted,
            allow_risky_operations=options.allow_risky_operations,
            strict=strict,
            skip_checks=set(options.skip_checks),
        ))

        blocking = blocking_failures(results, strict)
        if blocking:
            worst = max((r.severity for r in blocking), key=lambda s: s.rank)
            summary = "; ".join(f"{r.element} [{r.check}/{r.severity.value}] {r.message}" for r in blocking)
            logger.error("Planning rejected by %d blocking safety checks", len(blocking))
            raise SafetyCheckFailure(
                f"Deprecation planning blocked: {summary}",
                failures=blocking,
                severity=worst.value,
            )

        for element in elements:
            element.transition(ElementState.PLANNED)

        risk = plan_risk(elements)
        plan = DeprecationPlan(
            id=plan_id,
            elements=elements,
            rollback_plan=self.rollback.create_rollback_plan(elements, plan_id),
            safety_checks=results,
            metadata=PlanMetadata(
                risk_level=risk,
                approval_required=risk != RiskLevel.LOW,
                created_by=options.created_by,
                environment=self.config.environment,
                created_at=now,
                estimated_duration=estimate_duration(elements),
            ),
        )
        warnings = [r for r in plan.warnings if r.severity != Severity.LOW]
        logger.info(
            "Created plan %s: %d elements, risk %s, %d warnings",
            plan.id, len(elements), risk.value, len(warnings)
        )
        return plan
