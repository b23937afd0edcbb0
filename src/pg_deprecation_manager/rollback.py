"""Rollback of committed deprecations.

A rollback plan renames every element back to its original identifier and
re-creates any captured constraint or index that no longer exists. It runs
in one transaction: either every step commits or none does. Partial mode
(``RollbackConfig.allow_partial_rollback``) wraps each step in a savepoint
and commits whatever succeeded.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pg_deprecation_manager.backup.validator import BackupValidator
from pg_deprecation_manager.config import DeprecationConfig
from pg_deprecation_manager.exceptions import RollbackError, ValidationError
from pg_deprecation_manager.locks import ElementLockRegistry
from pg_deprecation_manager.metadata.history import MigrationHistory
from pg_deprecation_manager.metadata.models import (
    DependencyType,
    DeprecatedElement,
    ElementState,
    ElementType,
    RollbackPlan,
    RollbackResult,
    RollbackStep,
    RollbackTestResult,
    StepDependency,
    StepFailure,
    StepSqlType,
    utcnow,
)
from pg_deprecation_manager.metadata.strategies import (
    FORBIDDEN_STATEMENT_RE,
    classify_statement,
    constraint_probe,
    index_probe,
    presence_validation_sql,
    restore_constraint_sql,
    restore_index_sql,
    strategy_for,
    validation_passed,
)
from pg_deprecation_manager.monitoring.alerts import AlertSystem
from pg_deprecation_manager.monitoring.monitor import AccessMonitor
from pg_deprecation_manager.safety.checks import retry_read_only
from pg_deprecation_manager.transactions import TransactionManager

logger = logging.getLogger(__name__)

STEP_SECONDS = {
    StepSqlType.RENAME: 10,
    StepSqlType.CREATE_CONSTRAINT: 30,
    StepSqlType.CREATE_INDEX: 60,
}


def restore_order(elements: list[DeprecatedElement]) -> list[DeprecatedElement]:
    """Fewer dependencies first, tables last."""
    indexed = list(enumerate(elements))
    indexed.sort(key=lambda pair: (pair[1].type == ElementType.TABLE, len(pair[1].dependencies), pair[0]))
    return [element for _, element in indexed]


def find_cycle(dependencies: list[StepDependency]) -> list[int] | None:
    """Return one dependency cycle among steps, or None."""
    graph: dict[int, list[int]] = {}
    for dep in dependencies:
        graph.setdefault(dep.step, []).append(dep.depends_on)

    visiting: list[int] = []
    done: set[int] = set()

    def visit(node: int) -> list[int] | None:
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        if node in done:
            return None
        visiting.append(node)
        for nxt in graph.get(node, []):
            cycle = visit(nxt)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for start in list(graph):
        cycle = visit(start)
        if cycle:
            return cycle
    return None


class RollbackManager:
    """Builds, validates and executes rollback plans."""

    def __init__(
        self,
        connection,
        transactions: TransactionManager,
        config: DeprecationConfig,
        history: MigrationHistory | None = None,
        locks: ElementLockRegistry | None = None,
        backup: BackupValidator | None = None,
        alerts: AlertSystem | None = None,
        monitor: AccessMonitor | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.connection = connection
        self.transactions = transactions
        self.config = config
        self.history = history
        self.locks = locks or ElementLockRegistry()
        self.backup = backup
        self.alerts = alerts
        self.monitor = monitor
        self.clock = clock
        self._manual_intervention: dict[str, dict[str, Any]] = {}

    # Planning

    def create_rollback_plan(self, elements: list[DeprecatedElement], migration_id: str) -> RollbackPlan:
        """Synthesize the rollback plan for a deprecation plan.

        Each element gets a rename step back to its original identifier,
        followed by guarded restore steps for every captured foreign key
        and index definition. Restore steps depend on their rename step.
        """
        steps: list[RollbackStep] = []
        step_dependencies: list[StepDependency] = []
        validation_checks: list[str] = []

        for element in restore_order(elements):
            strategy = strategy_for(element.type)
            rename = RollbackStep(
                order=len(steps) + 1,
                sql_type=StepSqlType.RENAME,
                sql=element.rollback_sql,
                description=f"Rename {element.schema}.{element.deprecated_name} back to {element.original_name}",
                validation_sql=strategy.rollback_validation_sql(element),
                element=element.qualified_name,
                estimated_seconds=STEP_SECONDS[StepSqlType.RENAME],
            )
            steps.append(rename)
            validation_checks.append(
                f"{element.qualified_name} exists and {element.deprecated_name} does not"
            )

            for dep in element.dependencies:
                step = self._restore_step(element, dep, order=len(steps) + 1)
                if step is None:
                    continue
                steps.append(step)
                step_dependencies.append(StepDependency(step=step.order, depends_on=rename.order))
                validation_checks.append(f"{dep.type.value} {dep.name} exists")

        return RollbackPlan(
            id=f"rb_{migration_id}",
            migration_id=migration_id,
            steps=steps,
            estimated_duration=sum(s.estimated_seconds for s in steps),
            step_dependencies=step_dependencies,
            validation_checks=validation_checks,
            created_at=self.clock(),
        )

    @staticmethod
    def _restore_step(element: DeprecatedElement, dep, order: int) -> RollbackStep | None:
        if not dep.definition:
            return None
        if dep.type == DependencyType.FOREIGN_KEY and dep.owner_table:
            return RollbackStep(
                order=order,
                sql_type=StepSqlType.CREATE_CONSTRAINT,
                sql=restore_constraint_sql(element.schema, dep.owner_table, dep.name, dep.definition),
                description=f"Re-create foreign key {dep.name} on {dep.owner_table} if missing",
                validation_sql=presence_validation_sql(constraint_probe(element.schema, dep.owner_table, dep.name)),
                element=element.qualified_name,
                estimated_seconds=STEP_SECONDS[StepSqlType.CREATE_CONSTRAINT],
            )
        if dep.type == DependencyType.INDEX:
            return RollbackStep(
                order=order,
                sql_type=StepSqlType.CREATE_INDEX,
                sql=restore_index_sql(dep.definition),
                description=f"Re-create index {dep.name} if missing",
                validation_sql=presence_validation_sql(index_probe(element.schema, dep.name)),
                element=element.qualified_name,
                estimated_seconds=STEP_SECONDS[StepSqlType.CREATE_INDEX],
            )
        return None

    # Validation

    def validate_structure(self, plan: RollbackPlan) -> list[str]:
        """Grammar and dependency-graph issues; pure."""
        issues = []
        orders = [s.order for s in plan.steps]
        if not plan.steps:
            issues.append("Rollback plan has no steps")
        if len(set(orders)) != len(orders):
            issues.append("Rollback steps have duplicate order numbers")

        for step in plan.steps:
            if FORBIDDEN_STATEMENT_RE.search(step.sql):
                issues.append(f"Step {step.order} contains a destructive statement")
            kind = classify_statement(step.sql)
            if kind is None:
                issues.append(f"Step {step.order} SQL is not a recognized rollback statement")
            elif kind != step.sql_type:
                issues.append(f"Step {step.order} is declared {step.sql_type.value} but is {kind.value}")
            if not step.validation_sql.lstrip().upper().startswith("SELECT"):
                issues.append(f"Step {step.order} validation must be a SELECT")

        known = set(orders)
        for dep in plan.step_dependencies:
            if dep.step not in known or dep.depends_on not in known:
                issues.append(f"Unknown step in dependency {dep}")
            elif dep.depends_on >= dep.step:
                issues.append(f"Dependency {dep} points forward")
        cycle = find_cycle(plan.step_dependencies)
        if cycle:
            issues.append("Circular step dependencies: " + " -> ".join(map(str, cycle)))
        return issues

    async def validate_rollback_plan(self, plan: RollbackPlan) -> list[str]:
        """Validate every step without executing any of them.

        Step statements are only matched against the rollback grammar;
        PostgreSQL cannot ``EXPLAIN`` DDL, so their syntax is not checked
        by the server until execution. What ``EXPLAIN`` plans is each
        step's read-only validation query. Safe to call repeatedly.

        Returns:
            Issues found, empty when the plan is valid
        """
        issues = self.validate_structure(plan)
        for step in plan.steps:
            try:
                await retry_read_only(
                    lambda step=step: self.connection.fetch_all(f"EXPLAIN {step.validation_sql}"),
                    self.config,
                    f"EXPLAIN for rollback step {step.order}",
                    retries=self.config.rollback.max_retry_attempts,
                )
            except Exception as e:
                issues.append(f"Step {step.order} validation query cannot be planned: {e}")
        return issues

    async def test(self, plan: RollbackPlan) -> RollbackTestResult:
        """Dry run: can this plan execute right now?"""
        issues = await self.validate_rollback_plan(plan)
        warnings = []

        if await self.requires_manual_intervention(plan.migration_id):
            issues.append(f"Plan {plan.migration_id} is waiting for manual intervention")
        if plan.estimated_duration > self.config.rollback.timeout_seconds:
            warnings.append(
                f"Estimated duration {plan.estimated_duration}s exceeds the "
                f"{self.config.rollback.timeout_seconds}s timeout"
            )
        if self.config.rollback.allow_partial_rollback:
            warnings.append("Partial rollback is enabled; failed steps will not undo successful ones")
        if self.config.rollback.create_backup_before_rollback and self.backup is None:
            warnings.append("No backup service configured; rollback will run without a backup")

        for step in plan.steps:
            if step.sql_type != StepSqlType.RENAME:
                continue
            row = await self.connection.fetch_one(step.validation_sql)
            # before rollback the deprecated name should be present and the original absent
            if row and int(row.get("source_count") or 0) == 0:
                issues.append(f"{step.element} is not currently deprecated")
            elif row and int(row.get("target_count") or 0) > 0:
                issues.append(f"{step.element} already exists under its original name")

        return RollbackTestResult(
            can_execute=not issues,
            issues=issues,
            warnings=warnings,
            estimated_duration=plan.estimated_duration,
        )

    # Execution

    async def execute(
        self,
        plan: RollbackPlan,
        principal: str = "system",
        elements: list[DeprecatedElement] | None = None,
    ) -> RollbackResult:
        """Execute a rollback plan.

        Args:
            plan: Plan produced by :meth:`create_rollback_plan`
            principal: Who is running the rollback, for the audit log
            elements: Live element objects to move to ``restored``

        Raises:
            ValidationError: If the plan fails pre-execution validation
            BackupValidationError: If the pre-rollback backup is rejected
            RollbackError: If execution fails; manual intervention is then required
        """
        if await self.requires_manual_intervention(plan.migration_id):
            raise RollbackError(
                f"Plan {plan.migration_id} requires manual intervention before another rollback",
                plan_id=plan.migration_id,
                principal=principal,
                total_steps=len(plan.steps),
            )

        async with self.locks.hold(plan.elements):
            if self.config.rollback.validate_before_rollback:
                issues = await self.validate_rollback_plan(plan)
                if issues:
                    raise ValidationError(f"Rollback plan {plan.id} is invalid: " + "; ".join(issues))

            backup_id = None
            if self.config.rollback.create_backup_before_rollback:
                if self.backup is not None:
                    backup_id = await self.backup.ensure_backup(plan.id, plan.elements)
                else:
                    logger.warning("No backup service configured; rolling back %s without a backup", plan.id)

            partial = self.config.rollback.allow_partial_rollback
            started = self.clock()
            result = RollbackResult(
                rollback_id=plan.id,
                success=False,
                completed_steps=0,
                total_steps=len(plan.steps),
                backup_id=backup_id,
                partial=partial,
            )
            logger.info(
                "Rolling back %s (%d steps, %s mode) as %s",
                plan.migration_id, len(plan.steps), "partial" if partial else "strict", principal
            )

            if partial:
                restored = await self._execute_partial(plan, principal, result)
            else:
                restored = await self._execute_strict(plan, principal, result)
            result.duration_ms = int((self.clock() - started).total_seconds() * 1000)

        await self._after_commit(plan, principal, restored, elements, completed=not result.errors)

        if result.errors:
            await self._enter_manual_intervention(plan, principal, result, result.errors[0].error)
            first = result.errors[0]
            raise RollbackError(
                f"Partial rollback of {plan.migration_id} left {len(result.errors)} steps failed",
                plan_id=plan.migration_id,
                step_order=first.step,
                sql=first.sql,
                principal=principal,
                completed_steps=result.completed_steps,
                total_steps=result.total_steps,
                result=result,
            )

        result.success = True
        logger.info("Rollback %s committed in %dms", plan.id, result.duration_ms)
        return result

    async def _run_step(self, tx, step: RollbackStep) -> None:
        await tx.execute(step.sql)
        row = await tx.fetch_one(step.validation_sql)
        if not validation_passed(row):
            raise ValidationError(f"Validation failed after step {step.order}: {step.description}")

    async def _execute_strict(self, plan: RollbackPlan, principal: str, result: RollbackResult) -> set[str]:
        current: RollbackStep | None = None
        try:
            async with self.transactions.transaction(timeout=self.config.rollback.timeout_seconds) as tx:
                for step in plan.steps:
                    current = step
                    await self._run_step(tx, step)
                    result.completed_steps += 1

                # re-confirm every rename once all restore steps have run
                current = None
                for step in plan.steps:
                    if step.sql_type != StepSqlType.RENAME:
                        continue
                    if not validation_passed(await tx.fetch_one(step.validation_sql)):
                        raise ValidationError(f"Post-rollback validation failed for {step.element}")
        except Exception as e:
            result.errors.append(StepFailure(
                step=current.order if current else 0,
                sql=current.sql if current else "",
                error=str(e),
                timestamp=self.clock(),
            ))
            await self._enter_manual_intervention(plan, principal, result, str(e))
            raise RollbackError(
                f"Rollback of {plan.migration_id} failed after {result.completed_steps} of "
                f"{result.total_steps} steps; the transaction was aborted and nothing was committed: {e}",
                plan_id=plan.migration_id,
                step_order=current.order if current else None,
                sql=current.sql if current else None,
                principal=principal,
                completed_steps=result.completed_steps,
                total_steps=result.total_steps,
                result=result,
            ) from e
        return set(plan.elements)

    async def _execute_partial(self, plan: RollbackPlan, principal: str, result: RollbackResult) -> set[str]:
        failed_steps: set[int] = set()
        failed_elements: set[str] = set()
        blockers = {d.step: d.depends_on for d in plan.step_dependencies}
        try:
            async with self.transactions.transaction(timeout=self.config.rollback.timeout_seconds) as tx:
                for step in plan.steps:
                    if blockers.get(step.order) in failed_steps:
                        failed_steps.add(step.order)
                        failed_elements.add(step.element)
                        result.errors.append(StepFailure(
                            step=step.order,
                            sql=step.sql,
                            error=f"Skipped: step {blockers[step.order]} failed",
                            timestamp=self.clock(),
                        ))
                        continue
                    try:
                        async with tx.savepoint():
                            await self._run_step(tx, step)
                    except Exception as e:
                        logger.error("Rollback step %d failed: %s", step.order, e)
                        failed_steps.add(step.order)
                        failed_elements.add(step.element)
                        result.errors.append(StepFailure(
                            step=step.order, sql=step.sql, error=str(e), timestamp=self.clock()
                        ))
                        continue
                    result.completed_steps += 1
        except Exception as e:
            result.errors.append(StepFailure(step=0, sql="", error=str(e), timestamp=self.clock()))
            await self._enter_manual_intervention(plan, principal, result, str(e))
            raise RollbackError(
                f"Partial rollback of {plan.migration_id} aborted: {e}",
                plan_id=plan.migration_id,
                principal=principal,
                completed_steps=result.completed_steps,
                total_steps=result.total_steps,
                result=result,
            ) from e
        return set(plan.elements) - failed_elements

    async def _after_commit(
        self,
        plan: RollbackPlan,
        principal: str,
        restored: set[str],
        elements: list[DeprecatedElement] | None,
        completed: bool = True,
    ) -> None:
        for element in elements or []:
            if element.qualified_name in restored and element.state == ElementState.DEPRECATED:
                element.transition(ElementState.RESTORED)
        if self.monitor is not None:
            for name in restored:
                self.monitor.stop_monitoring(name)
        # a partial rollback with failures is recorded as rollback_failed instead
        if self.history is not None and restored and completed:
            try:
                await self.history.mark_rolled_back(plan.migration_id, principal)
            except Exception as e:
                logger.error("Rollback of %s committed but history update failed: %s", plan.migration_id, e)

    async def _enter_manual_intervention(
        self, plan: RollbackPlan, principal: str, result: RollbackResult, error: str
    ) -> None:
        failed = result.errors[-1] if result.errors else None
        entry = {
            "rollback_id": plan.id,
            "principal": principal,
            "error": error,
            "step": failed.step if failed else None,
            "sql": failed.sql if failed else None,
            "completed_steps": result.completed_steps,
            "total_steps": result.total_steps,
            "partial": result.partial,
            "timestamp": self.clock().isoformat(),
        }
        self._manual_intervention[plan.migration_id] = entry
        logger.error("Rollback %s requires manual intervention: %s", plan.id, error)

        if self.history is not None:
            try:
                await self.history.mark_rollback_failed(plan.migration_id, error, entry)
            except Exception as e:
                logger.error("Could not record failed rollback of %s in history: %s", plan.migration_id, e)

        if self.alerts is None:
            return
        try:
            await self.alerts.manual_intervention(
                plan.migration_id,
                f"Rollback {plan.id} failed and requires manual intervention: {error}",
                details=entry,
            )
        except Exception as e:
            logger.error("Could not raise manual-intervention alert for %s: %s", plan.id, e)

    # Manual intervention

    async def requires_manual_intervention(self, migration_id: str) -> bool:
        """True while a failed rollback of ``migration_id`` is unresolved.

        The history log is consulted as well, so the block survives a
        process restart.
        """
        if migration_id in self._manual_intervention:
            return True
        if self.history is None:
            return False
        record = await self.history.get_manual_intervention(migration_id)
        if record is None:
            return False
        self._manual_intervention[migration_id] = record.get("rollback_details") or {
            "error": record.get("rollback_error")
        }
        return True

    @property
    def manual_interventions(self) -> dict[str, dict[str, Any]]:
        return dict(self._manual_intervention)

    async def clear_manual_intervention(self, migration_id: str, operator: str) -> bool:
        """Mark a failed rollback as resolved by an operator.

        Returns:
            False when nothing was waiting for intervention
        """
        if not await self.requires_manual_intervention(migration_id):
            return False
        self._manual_intervention.pop(migration_id, None)
        if self.history is not None:
            await self.history.resolve_manual_intervention(migration_id, operator)
        logger.info("Manual intervention for %s cleared by %s", migration_id, operator)
        return True
