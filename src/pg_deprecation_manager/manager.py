"""Main manager class for pg_deprecation_manager."""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pg_deprecation_manager import naming
from pg_deprecation_manager.backup import BackupService, BackupValidator
from pg_deprecation_manager.config import DeprecationConfig
from pg_deprecation_manager.connections import PostgresConnection
from pg_deprecation_manager.exceptions import ConfigurationError, DeprecationManagerError
from pg_deprecation_manager.executor import MigrationExecutor
from pg_deprecation_manager.locks import ElementLockRegistry
from pg_deprecation_manager.metadata import CatalogInspector, MigrationHistory
from pg_deprecation_manager.metadata.models import (
    AccessSource,
    DeprecationCandidate,
    DeprecationPlan,
    ElementType,
    ExecutionResult,
    QueryType,
    RollbackResult,
    RollbackTestResult,
    SourceType,
    utcnow,
)
from pg_deprecation_manager.models import HealthStatus
from pg_deprecation_manager.monitoring import (
    AccessMonitor,
    AccessStore,
    AlertChannel,
    AlertSystem,
    InterceptedConnection,
    PostgresAccessStore,
    QueryInterceptor,
    TelemetryCollector,
)
from pg_deprecation_manager.planner import DeprecationPlanner, PlanOptions
from pg_deprecation_manager.rollback import RollbackManager
from pg_deprecation_manager.safety import SafetyCheckEngine
from pg_deprecation_manager.transactions import TransactionManager

logger = logging.getLogger(__name__)


class DeprecationManager:
    """Entry point wiring the deprecation engine around one connection.

    Components share a single lock registry, so a migration and a rollback
    touching the same element never interleave.
    """

    def __init__(
        self,
        config: DeprecationConfig | None = None,
        connection=None,
        store: AccessStore | None = None,
        backup_service: BackupService | None = None,
        alert_channels: list[AlertChannel] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize DeprecationManager.

        Args:
            config: Engine configuration (uses defaults if None)
            connection: Database connection, a pooled ``PostgresConnection`` if None
            store: Access-event store, PostgreSQL-backed if None
            backup_service: External backup service; required in production when backups are enabled
            alert_channels: Alert delivery channels, console logging if None
            clock: Source of the current time
        """
        self.config = config or DeprecationConfig()
        self.postgres = connection if connection is not None else PostgresConnection(self.config)
        self.clock = clock
        self._is_initialized = False
        self._plans: dict[str, DeprecationPlan] = {}

        self.locks = ElementLockRegistry()
        self.catalog = CatalogInspector(self.postgres)
        self.history = MigrationHistory(self.postgres, self.config.metadata_schema)
        self.transactions = TransactionManager(
            self.postgres, default_timeout=self.config.execution_timeout_seconds
        )

        self.alerts = AlertSystem(self.config.alerts, alert_channels, clock=clock)
        self.store = store if store is not None else PostgresAccessStore(self.postgres, self.config.metadata_schema)
        self.telemetry = TelemetryCollector(self.store, self.config.monitoring, clock=clock)
        self.monitor = AccessMonitor(self.store, self.telemetry, self.alerts, self.config, clock=clock)
        self.interceptor = QueryInterceptor(self.monitor)

        self.backup: BackupValidator | None = None
        if backup_service is not None and self.config.backup.enabled:
            self.backup = BackupValidator(backup_service, self.config.backup, self.postgres, clock=clock)

        self.safety = SafetyCheckEngine(self.catalog, self.config, clock=clock)
        self.rollback_manager = RollbackManager(
            self.postgres,
            self.transactions,
            self.config,
            history=self.history,
            locks=self.locks,
            backup=self.backup,
            alerts=self.alerts,
            monitor=self.monitor,
            clock=clock,
        )
        self.planner = DeprecationPlanner(
            self.catalog, self.safety, self.rollback_manager, self.config, backup=self.backup, clock=clock
        )
        self.executor = MigrationExecutor(
            self.transactions,
            self.config,
            history=self.history,
            locks=self.locks,
            monitor=self.monitor,
            clock=clock,
        )

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    async def initialize(self) -> None:
        """Connect, create metadata tables and start monitoring.

        Raises:
            ConfigurationError: If backups are required but no backup service
                is configured, or the service rejects the configuration
        """
        if self._is_initialized:
            logger.warning("Manager already initialized")
            return

        self._check_backup_service()

        logger.info("Initializing DeprecationManager (%s)", self.config.environment)
        await self.postgres.connect_with_retry()
        if self.backup is not None:
            await self.backup.validate_config()
        await self.history.initialize()
        await self.monitor.start()

        self._is_initialized = True
        logger.info("DeprecationManager initialized successfully")

    def _check_backup_service(self) -> None:
        wanted = self.config.backup.enabled or self.config.rollback.create_backup_before_rollback
        if self.backup is not None or not wanted:
            return
        if self.config.is_production:
            raise ConfigurationError(
                "Backups are required in production but no backup service is configured"
            )
        logger.warning("Backups are enabled but no backup service is configured; backups will be skipped")

    async def close(self) -> None:
        """Flush monitoring and close the connection."""
        logger.info("Closing DeprecationManager")
        try:
            await self.monitor.close()
        finally:
            await self.postgres.disconnect()
        self._is_initialized = False
        logger.info("DeprecationManager closed")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_initialized(self) -> None:
        if not self._is_initialized:
            raise DeprecationManagerError("Manager not initialized")

    async def health_check(self) -> HealthStatus:
        """Check the connection and the monitoring pipeline."""
        connected, latency = await self.postgres.health_check()
        status = HealthStatus(
            postgres_connected=connected,
            postgres_latency_ms=latency,
            telemetry_running=self.telemetry.running,
            pending_events=self.telemetry.pending,
            dropped_events=self.telemetry.dropped,
            manual_interventions=len(self.rollback_manager.manual_interventions),
            timestamp=self.clock(),
            postgres_error=None if connected else "Connection failed",
        )
        if not status.is_healthy:
            logger.warning(
                "Health check failed - PostgreSQL: %s, manual interventions: %d",
                connected, status.manual_interventions
            )
        return status

    def get_config_info(self) -> dict[str, Any]:
        """Configuration with sensitive values masked."""
        return self.config.mask_sensitive_data()

    # Deprecation lifecycle

    async def plan(
        self,
        candidates: list[DeprecationCandidate | dict[str, Any]],
        options: PlanOptions | None = None,
        **kwargs: Any,
    ) -> DeprecationPlan:
        """Plan the deprecation of ``candidates``.

        Keyword arguments are forwarded to :class:`PlanOptions` when no
        options object is given.
        """
        self._ensure_initialized()
        plan = await self.planner.plan(candidates, options or PlanOptions(**kwargs))
        self._plans[plan.id] = plan
        return plan

    def get_plan(self, plan_id: str) -> DeprecationPlan | None:
        return self._plans.get(plan_id)

    def approve(self, plan: DeprecationPlan | str, approver: str) -> DeprecationPlan:
        plan = self._lookup(plan)
        plan.approve(approver)
        logger.info("Plan %s approved by %s", plan.id, approver)
        return plan

    async def execute(
        self, plan: DeprecationPlan | str, principal: str = "system", force: bool = False
    ) -> ExecutionResult:
        self._ensure_initialized()
        plan = self._lookup(plan)
        self._plans[plan.id] = plan
        return await self.executor.execute(plan, principal=principal, force=force)

    async def test_rollback(self, plan: DeprecationPlan | str) -> RollbackTestResult:
        self._ensure_initialized()
        return await self.rollback_manager.test(self._lookup(plan).rollback_plan)

    async def validate_rollback(self, plan: DeprecationPlan | str) -> list[str]:
        self._ensure_initialized()
        return await self.rollback_manager.validate_rollback_plan(self._lookup(plan).rollback_plan)

    async def rollback(self, plan: DeprecationPlan | str, principal: str = "system") -> RollbackResult:
        """Restore every element of an executed plan."""
        self._ensure_initialized()
        plan = self._lookup(plan)
        return await self.rollback_manager.execute(plan.rollback_plan, principal=principal, elements=plan.elements)

    async def clear_manual_intervention(self, migration_id: str, operator: str) -> bool:
        """Unblock rollback of a plan after an operator repaired a failed rollback."""
        self._ensure_initialized()
        return await self.rollback_manager.clear_manual_intervention(migration_id, operator)

    def _lookup(self, plan: DeprecationPlan | str) -> DeprecationPlan:
        if isinstance(plan, DeprecationPlan):
            return plan
        found = self._plans.get(plan)
        if found is None:
            raise DeprecationManagerError(f"Unknown plan: {plan}")
        return found

    # Monitoring

    def record_access(
        self,
        element_name: str,
        element_type: ElementType | str | None = None,
        source: AccessSource | SourceType | str = SourceType.APPLICATION,
        query_type: QueryType | str = QueryType.SELECT,
        execution_time_ms: float | None = None,
    ) -> None:
        """Record an access to a deprecated element; never raises."""
        if element_type is None:
            element_type = self.monitor.element_type_of(element_name)
        self.monitor.record_access(element_name, element_type, source, query_type, execution_time_ms)

    def intercept(self, connection, source: AccessSource | None = None) -> InterceptedConnection:
        """Wrap an application connection so queries on deprecated names are recorded."""
        return self.interceptor.wrap(connection, source)

    def get_dashboard_data(self) -> dict[str, Any]:
        return self.monitor.get_dashboard_data()

    def get_removal_candidates(self) -> list[str]:
        return [e.qualified_name for e in self.monitor.get_removal_candidates()]

    # Catalog and audit

    async def get_deprecation_status(self, schema: str = "public") -> list[dict[str, Any]]:
        """Deprecated objects found in the catalog, with their parsed names."""
        self._ensure_initialized()
        status = []
        for row in await self.catalog.find_deprecated_objects(schema):
            parsed = naming.parse(row["name"])
            status.append({
                "element_type": row["element_type"],
                "table_name": row["table_name"],
                "name": row["name"],
                "valid": parsed.is_valid,
                "original_name": parsed.original,
                "deprecation_date": parsed.deprecated_on.isoformat() if parsed.deprecated_on else None,
                "reason": parsed.reason.value if parsed.reason else None,
                "monitored": self.monitor.is_monitored(row["name"]),
            })
        return status

    async def get_history(self, limit: int | None = None) -> list[dict[str, Any]]:
        self._ensure_initialized()
        return await self.history.get_history(limit)

    async def verify_checksum(self, plan: DeprecationPlan | str) -> dict[str, Any]:
        self._ensure_initialized()
        return await self.history.verify_checksum(self._lookup(plan))
