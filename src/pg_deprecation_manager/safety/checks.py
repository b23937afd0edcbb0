"""Read-only safety checks gating deprecation of schema elements."""

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TypeVar

from pg_deprecation_manager import naming
from pg_deprecation_manager.config import DeprecationConfig
from pg_deprecation_manager.exceptions import OperationTimeoutError, PostgresConnectionError
from pg_deprecation_manager.metadata.catalog import CatalogInspector
from pg_deprecation_manager.metadata.models import (
    DeprecatedElement,
    ElementType,
    Impact,
    SafetyCheckResult,
    Severity,
    utcnow,
)
from pg_deprecation_manager.metadata.strategies import is_structural_inverse, strategy_for

logger = logging.getLogger(__name__)

EXISTENCE = "existence"
NAMING_CONVENTION = "naming_convention"
NAMING_COLLISION = "naming_collision"
CONFIDENCE_THRESHOLD = "confidence_threshold"
RECENCY = "recency"
DEPENDENCY_IMPACT = "dependency_impact"
DATA_INTEGRITY = "data_integrity"
ENVIRONMENT_POLICY = "environment_policy"
ROLLBACK_FEASIBILITY = "rollback_feasibility"

ALL_CHECKS = (
    EXISTENCE,
    NAMING_CONVENTION,
    NAMING_COLLISION,
    CONFIDENCE_THRESHOLD,
    RECENCY,
    DEPENDENCY_IMPACT,
    DATA_INTEGRITY,
    ENVIRONMENT_POLICY,
    ROLLBACK_FEASIBILITY,
)

TRANSIENT_ERRORS = (PostgresConnectionError, OperationTimeoutError)

T = TypeVar("T")


@dataclass
class SafetyCheckOptions:
    """Caller-supplied facts and policy for one safety-check run."""
    backup_validated: bool = False
    approval_granted: bool = False
    allow_risky_operations: bool | None = None
    strict: bool | None = None
    skip_checks: set[str] = field(default_factory=set)


def blocking_failures(results: list[SafetyCheckResult], strict: bool = False) -> list[SafetyCheckResult]:
    """Failed results that must stop planning: critical, plus high in strict mode."""
    blocking = {Severity.CRITICAL, Severity.HIGH} if strict else {Severity.CRITICAL}
    return [r for r in results if not r.passed and r.severity in blocking]


def summarize_safety_checks(results: list[SafetyCheckResult], strict: bool = False) -> dict:
    """Counts by outcome and severity, and whether planning may proceed."""
    failed = [r for r in results if not r.passed]
    return {
        "total": len(results),
        "passed": len(results) - len(failed),
        "failed": len(failed),
        "failed_by_severity": dict(Counter(r.severity.value for r in failed)),
        "can_proceed": not blocking_failures(results, strict),
        "blocking": [f"{r.element}: {r.check}" for r in blocking_failures(results, strict)],
    }


async def retry_read_only(
    operation: Callable[[], Awaitable[T]],
    config: DeprecationConfig,
    what: str,
    retries: int | None = None,
) -> T:
    """Await ``operation()``, retrying transient connection errors with backoff.

    Only for read-only work: DDL is never retried.
    """
    attempts = (config.max_retry_attempts if retries is None else retries) + 1
    for attempt in range(attempts):
        try:
            return await operation()
        except TRANSIENT_ERRORS as e:
            if attempt == attempts - 1:
                raise
            delay = min(config.retry_backoff_factor ** attempt, config.retry_max_delay)
            logger.warning("%s hit %s, retrying in %.1fs", what, e, delay)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")


class SafetyCheckEngine:
    """Runs the safety-check battery over candidate elements.

    Checks only read catalog metadata, so elements are checked concurrently
    up to ``safety_check_concurrency``. Transient connection errors are
    retried; any other error turns the check into a failed critical result.
    """

    def __init__(
        self,
        catalog: CatalogInspector,
        config: DeprecationConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.config = config
        self.clock = clock
        self._semaphore = asyncio.Semaphore(config.safety_check_concurrency)
        self._checks = {
            EXISTENCE: self._check_existence,
            NAMING_CONVENTION: self._check_naming_convention,
            NAMING_COLLISION: self._check_naming_collision,
            CONFIDENCE_THRESHOLD: self._check_confidence,
            RECENCY: self._check_recency,
            DEPENDENCY_IMPACT: self._check_dependencies,
            DATA_INTEGRITY: self._check_data_integrity,
            ENVIRONMENT_POLICY: self._check_environment,
            ROLLBACK_FEASIBILITY: self._check_rollback_feasibility,
        }

    async def check(
        self,
        elements: list[DeprecatedElement],
        options: SafetyCheckOptions | None = None,
    ) -> list[SafetyCheckResult]:
        """Run every enabled check for every element.

        Returns:
            Results grouped per element, in input order
        """
        options = options or SafetyCheckOptions()
        per_element = await asyncio.gather(
            *(self._check_element(element, options) for element in elements)
        )
        results = [result for batch in per_element for result in batch]

        failed = [r for r in results if not r.passed]
        for result in failed:
            logger.warning(
                "Safety check %s failed for %s (%s): %s",
                result.check, result.element, result.severity.value, result.message
            )
        logger.info(
            "Ran %d safety checks over %d elements, %d failed",
            len(results), len(elements), len(failed)
        )
        return results

    async def _check_element(
        self, element: DeprecatedElement, options: SafetyCheckOptions
    ) -> list[SafetyCheckResult]:
        skipped = set(self.config.skip_checks) | set(options.skip_checks)
        async with self._semaphore:
            results = []
            for check_id, check in self._checks.items():
                if check_id in skipped:
                    continue
                results.append(await self._run_check(check_id, check, element, options))
            return results

    async def _run_check(self, check_id, check, element, options) -> SafetyCheckResult:
        try:
            result = await retry_read_only(
                lambda: check(element, options),
                self.config,
                f"{check_id} for {element.qualified_name}",
            )
        except Exception as e:
            return self._errored(check_id, element, e)
        result.check = check_id
        result.element = element.qualified_name
        return result

    def _errored(self, check_id: str, element: DeprecatedElement, error: Exception) -> SafetyCheckResult:
        logger.error("Safety check %s errored for %s: %s", check_id, element.qualified_name, error)
        return SafetyCheckResult(
            check=check_id,
            passed=False,
            severity=Severity.CRITICAL,
            message=f"Check could not be completed: {error}",
            element=element.qualified_name,
            details={"error": type(error).__name__},
        )

    @staticmethod
    def _result(passed: bool, severity: Severity, message: str, **details) -> SafetyCheckResult:
        return SafetyCheckResult(check="", passed=passed, severity=severity, message=message, details=details)

    async def _check_existence(self, element, options) -> SafetyCheckResult:
        exists = await self.catalog.element_exists(element.type, element.schema, element.original_name)
        if exists:
            return self._result(True, Severity.CRITICAL, f"{element.qualified_name} exists")
        return self._result(
            False, Severity.CRITICAL,
            f"{element.type.value} {element.qualified_name} does not exist"
        )

    async def _check_naming_convention(self, element, options) -> SafetyCheckResult:
        identifier = strategy_for(element.type).target_identifier(element.original_name)
        issues = naming.validate_can_deprecate(identifier)
        if not naming.validate(element.deprecated_name):
            issues.append(f"{element.deprecated_name} does not match the deprecated-name grammar")
        if issues:
            return self._result(False, Severity.CRITICAL, "; ".join(issues), issues=issues)
        return self._result(True, Severity.CRITICAL, f"{element.deprecated_name} is well formed")

    async def _check_naming_collision(self, element, options) -> SafetyCheckResult:
        taken = await self.catalog.element_exists(
            element.type, element.schema, element.original_name, identifier=element.deprecated_name
        )
        if taken:
            return self._result(
                False, Severity.CRITICAL, f"{element.deprecated_name} already exists in {element.schema}"
            )
        return self._result(True, Severity.CRITICAL, f"{element.deprecated_name} is free")

    async def _check_confidence(self, element, options) -> SafetyCheckResult:
        score = element.usage_data.confidence_score
        minimum = self.config.minimum_confidence_score
        if score < minimum:
            return self._result(
                False, Severity.HIGH,
                f"Confidence {score:.2f} is below the minimum {minimum:.2f}",
                confidence_score=score, minimum=minimum,
            )
        return self._result(True, Severity.HIGH, f"Confidence {score:.2f} meets {minimum:.2f}")

    async def _check_recency(self, element, options) -> SafetyCheckResult:
        last = element.usage_data.last_accessed
        window = timedelta(days=self.config.recency_window_days)
        if last is not None and self.clock() - last < window:
            return self._result(
                False, Severity.HIGH,
                f"Accessed {last.isoformat()}, within the last {self.config.recency_window_days} days",
                last_accessed=last.isoformat(),
            )
        return self._result(True, Severity.HIGH, "No access within the recency window")

    async def _check_dependencies(self, element, options) -> SafetyCheckResult:
        deps = element.dependencies
        names = [f"{d.type.value}:{d.name}" for d in deps]
        if not deps:
            return self._result(True, Severity.LOW, "No dependent objects")

        impacts = {d.impact for d in deps}
        if Impact.HIGH in impacts:
            allow = options.allow_risky_operations
            if allow is None:
                allow = self.config.allow_risky_operations
            high = [f"{d.type.value}:{d.name}" for d in element.high_impact_dependencies]
            return self._result(
                bool(allow), Severity.CRITICAL,
                f"High-impact dependents: {', '.join(high)}"
                + (" (allowed by risky-operations policy)" if allow else ""),
                dependencies=names,
            )
        if Impact.MEDIUM in impacts:
            return self._result(False, Severity.HIGH, f"Dependents: {', '.join(names)}", dependencies=names)
        return self._result(False, Severity.MEDIUM, f"Low-impact dependents: {', '.join(names)}", dependencies=names)

    async def _check_data_integrity(self, element, options) -> SafetyCheckResult:
        if element.type != ElementType.TABLE:
            return self._result(True, Severity.MEDIUM, "Not a table")
        rows = await self.catalog.get_row_count(element.schema, element.original_name)
        if rows == 0:
            return self._result(True, Severity.MEDIUM, "Table is empty", row_count=0)
        if options.backup_validated:
            return self._result(True, Severity.MEDIUM, f"{rows} rows covered by a validated backup", row_count=rows)
        return self._result(
            False, Severity.MEDIUM,
            f"Table holds {rows} rows and no validated backup was provided",
            row_count=rows,
        )

    async def _check_environment(self, element, options) -> SafetyCheckResult:
        if not self.config.is_production:
            return self._result(True, Severity.LOW, f"{self.config.environment} environment")
        if options.approval_granted:
            return self._result(True, Severity.CRITICAL, "Production change approved")
        return self._result(False, Severity.CRITICAL, "Production changes require explicit approval")

    async def _check_rollback_feasibility(self, element, options) -> SafetyCheckResult:
        if is_structural_inverse(element.migration_sql, element.rollback_sql):
            return self._result(True, Severity.HIGH, "Rollback SQL inverts the migration")
        return self._result(False, Severity.HIGH, "Rollback SQL is not the inverse of the migration SQL")
