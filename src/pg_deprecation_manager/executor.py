"""Migration execution for deprecation plans."""

import logging
from collections.abc import Callable
from datetime import datetime

from pg_deprecation_manager.config import DeprecationConfig
from pg_deprecation_manager.exceptions import ExecutionError, InvalidStateError, ValidationError
from pg_deprecation_manager.locks import ElementLockRegistry
from pg_deprecation_manager.metadata.history import MigrationHistory, sql_checksum
from pg_deprecation_manager.metadata.models import (
    DeprecatedElement,
    DeprecationPlan,
    ElementState,
    ExecutionResult,
    utcnow,
)
from pg_deprecation_manager.metadata.strategies import strategy_for, validation_passed
from pg_deprecation_manager.monitoring.monitor import AccessMonitor
from pg_deprecation_manager.transactions import TransactionManager

logger = logging.getLogger(__name__)


class MigrationExecutor:
    """Runs a plan's renames inside a single transaction.

    Steps run independent elements first and each rename is validated
    against the catalog before the next one starts. Any failure aborts the
    whole transaction; DDL is never retried.
    """

    def __init__(
        self,
        transactions: TransactionManager,
        config: DeprecationConfig,
        history: MigrationHistory | None = None,
        locks: ElementLockRegistry | None = None,
        monitor: AccessMonitor | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.transactions = transactions
        self.config = config
        self.history = history
        self.locks = locks or ElementLockRegistry()
        self.monitor = monitor
        self.clock = clock

    def _check_executable(self, plan: DeprecationPlan, force: bool) -> None:
        if not plan.elements:
            raise ValidationError(f"Plan {plan.id} has no elements")
        not_planned = [e.qualified_name for e in plan.elements if e.state != ElementState.PLANNED]
        if not_planned:
            raise InvalidStateError(
                f"Plan {plan.id} has elements that are not in the planned state: {', '.join(not_planned)}"
            )
        if not plan.metadata.is_approved:
            if not force:
                raise ValidationError(
                    f"Plan {plan.id} is {plan.metadata.risk_level.value} risk and requires approval"
                )
            logger.warning("Executing unapproved %s-risk plan %s (forced)", plan.metadata.risk_level.value, plan.id)

    async def execute(self, plan: DeprecationPlan, principal: str = "system", force: bool = False) -> ExecutionResult:
        """Execute ``plan``.

        Args:
            plan: Plan produced by the planner
            principal: Who is executing, for the audit log
            force: Execute even if the plan still needs approval

        Returns:
            Result of the committed execution

        Raises:
            ValidationError: If the plan is empty or unapproved
            InvalidStateError: If an element is not in the planned state
            ExecutionError: If any step fails; nothing is committed
        """
        self._check_executable(plan, force)

        ordered = plan.execution_order()
        checksum = sql_checksum([e.migration_sql for e in ordered])
        started = self.clock()
        executed = 0
        current: DeprecatedElement | None = None

        async with self.locks.hold(e.qualified_name for e in ordered):
            logger.info("Executing plan %s (%d steps) as %s", plan.id, len(ordered), principal)
            try:
                async with self.transactions.transaction(timeout=self.config.execution_timeout_seconds) as tx:
                    for element in ordered:
                        current = element
                        await tx.execute(element.migration_sql)
                        row = await tx.fetch_one(strategy_for(element.type).migration_validation_sql(element))
                        if not validation_passed(row):
                            raise ValidationError(
                                f"{element.qualified_name} was not renamed to {element.deprecated_name}"
                            )
                        executed += 1
                    current = None
            except Exception as e:
                error = ExecutionError(
                    f"Plan {plan.id} failed at step {executed + 1} of {len(ordered)}"
                    f"{f' ({current.qualified_name})' if current else ''}; transaction rolled back: {e}",
                    plan_id=plan.id,
                    step_order=executed + 1 if current else None,
                    sql=current.migration_sql if current else None,
                    principal=principal,
                )
                logger.error("%s", error)
                await self._record(plan, ExecutionResult(
                    plan_id=plan.id,
                    success=False,
                    executed_steps=0,
                    total_steps=len(ordered),
                    checksum=checksum,
                    principal=principal,
                    started_at=started,
                    finished_at=self.clock(),
                ), error=str(e))
                raise error from e

            for element in ordered:
                element.transition(ElementState.DEPRECATED)

        result = ExecutionResult(
            plan_id=plan.id,
            success=True,
            executed_steps=executed,
            total_steps=len(ordered),
            checksum=checksum,
            principal=principal,
            started_at=started,
            finished_at=self.clock(),
        )
        if self.monitor is not None:
            for element in ordered:
                self.monitor.start_monitoring(element)

        result.history_recorded = await self._record(plan, result)
        logger.info("Plan %s committed in %dms", plan.id, result.duration_ms)
        return result

    async def _record(self, plan: DeprecationPlan, result: ExecutionResult, error: str | None = None) -> bool:
        """Write the audit row outside the DDL transaction."""
        if self.history is None:
            return False
        try:
            await self.history.record_execution(plan, result, error=error)
        except Exception as e:
            logger.error("Could not record execution of plan %s in history: %s", plan.id, e)
            return False
        return True
