"""Backup validation before risky schema operations.

Creating and storing backups is the job of an external service; this
module only consumes its contract and decides whether a backup is
trustworthy enough to proceed.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pg_deprecation_manager.config import BackupConfig
from pg_deprecation_manager.exceptions import BackupValidationError, ConfigurationError
from pg_deprecation_manager.metadata.models import Severity, utcnow
from pg_deprecation_manager.metadata.strategies import quote_ident

logger = logging.getLogger(__name__)

TABLE_CHECKSUM_QUERY = """
SELECT md5(COALESCE(string_agg(md5(t.*::text), '' ORDER BY t.*::text), '')) AS checksum
FROM {table} t
"""


@dataclass
class BackupMetadata:
    """What the backup service reports about one backup."""
    id: str
    created_at: datetime
    plan_id: str | None = None
    kind: str = "pre-migration"
    elements: list[str] = field(default_factory=list)
    size_bytes: int = 0
    checksums: dict[str, str] = field(default_factory=dict)
    compressed: bool = False
    encrypted: bool = False
    database_version: str = ""


@dataclass
class BackupCheck:
    name: str
    passed: bool
    severity: Severity
    message: str


@dataclass
class BackupValidationResult:
    """Outcome of validating one backup at the configured level."""
    backup_id: str
    passed: bool
    level: str
    checks: list[BackupCheck] = field(default_factory=list)
    score: int = 0
    duration_ms: int = 0

    @property
    def failed_checks(self) -> list[BackupCheck]:
        return [c for c in self.checks if not c.passed]


@dataclass
class RestoreTestResult:
    backup_id: str
    success: bool
    errors: list[str] = field(default_factory=list)
    skipped: bool = False
    duration_ms: int = 0


class BackupService(ABC):
    """Contract of the external backup and restore service."""

    @abstractmethod
    async def create_backup(self, plan_id: str, elements: list[str]) -> BackupMetadata:
        """Back up ``elements`` (qualified names) before an operation on ``plan_id``."""

    @abstractmethod
    async def get_metadata(self, backup_id: str) -> BackupMetadata | None:
        """Metadata of a backup, None if it does not exist."""

    @abstractmethod
    async def validate(self, config: BackupConfig) -> list[str]:
        """Service-level validation of a configuration; returns issues."""

    @abstractmethod
    async def test_restore(self, backup_id: str) -> list[str]:
        """Restore into a scratch database; returns errors, empty on success."""

    @abstractmethod
    async def list_backups(self) -> list[BackupMetadata]:
        """Every backup the service holds."""

    @abstractmethod
    async def delete_backup(self, backup_id: str) -> None:
        """Delete one backup."""


class BackupValidator:
    """Validates backups against :class:`BackupConfig`."""

    def __init__(
        self,
        service: BackupService,
        config: BackupConfig | None = None,
        connection=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the validator.

        Args:
            service: Backup service implementation
            config: Backup settings
            connection: Optional PostgreSQL connection, used for table checksums
            clock: Source of the current time
        """
        self.service = service
        self.config = config or BackupConfig()
        self.connection = connection
        self.clock = clock

    async def validate_config(self) -> None:
        """Validate settings locally and with the backup service.

        Raises:
            ConfigurationError: If either rejects the configuration
        """
        self.config._validate()
        issues = await self.service.validate(self.config)
        if issues:
            raise ConfigurationError("Backup configuration rejected: " + "; ".join(issues))

    def validate_requirements(self, environment: str = "development") -> dict[str, list[str]]:
        """Policy issues and warnings for running with the current settings."""
        issues: list[str] = []
        warnings: list[str] = []
        if not self.config.enabled:
            (issues if environment == "production" else warnings).append("Backups are disabled")
        if environment == "production" and self.config.verification_level != "comprehensive":
            warnings.append(
                f"Verification level {self.config.verification_level} is below comprehensive"
            )
        if not self.config.encryption:
            warnings.append("Backups are not encrypted")
        if not self.config.test_restore_enabled:
            warnings.append("Restore testing is disabled")
        return {"issues": issues, "warnings": warnings}

    async def validate_backup(self, backup_id: str) -> BackupValidationResult:
        """Run the checks for the configured verification level.

        The backup passes unless a check above low severity fails.
        """
        start = time.monotonic()
        level = self.config.verification_level
        metadata = await self.service.get_metadata(backup_id)
        if metadata is None:
            return BackupValidationResult(
                backup_id=backup_id,
                passed=False,
                level=level,
                checks=[BackupCheck("existence", False, Severity.CRITICAL, f"Backup {backup_id} not found")],
            )

        checks = self._basic_checks(metadata)
        if level in ("full", "comprehensive"):
            checks.extend(self._full_checks(metadata))
        if level == "comprehensive":
            checks.extend(await self._comprehensive_checks(metadata))

        passed_count = sum(1 for c in checks if c.passed)
        result = BackupValidationResult(
            backup_id=backup_id,
            passed=all(c.passed or c.severity == Severity.LOW for c in checks),
            level=level,
            checks=checks,
            score=round(passed_count / len(checks) * 100),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        logger.info(
            "Backup %s validation %s (%s, score %d)",
            backup_id, "passed" if result.passed else "failed", level, result.score
        )
        return result

    def _basic_checks(self, metadata: BackupMetadata) -> list[BackupCheck]:
        cap = self.config.max_backup_size_mb * 1024 * 1024
        age = self.clock() - metadata.created_at
        return [
            BackupCheck("existence", True, Severity.CRITICAL, f"Backup {metadata.id} exists"),
            BackupCheck(
                "non_empty", metadata.size_bytes > 0, Severity.HIGH,
                f"Backup holds {metadata.size_bytes} bytes",
            ),
            BackupCheck(
                "size_cap", metadata.size_bytes <= cap, Severity.HIGH,
                f"Backup size {metadata.size_bytes} bytes against cap of {self.config.max_backup_size_mb} MB",
            ),
            BackupCheck(
                "age", age <= timedelta(days=self.config.retention_days), Severity.MEDIUM,
                f"Backup is {age.days} days old",
            ),
        ]

    def _full_checks(self, metadata: BackupMetadata) -> list[BackupCheck]:
        missing = [e for e in metadata.elements if e not in metadata.checksums]
        return [
            BackupCheck(
                "checksums", bool(metadata.checksums) and not missing, Severity.MEDIUM,
                "Checksums present for every element" if not missing and metadata.checksums
                else f"Missing checksums: {', '.join(missing) or 'all'}",
            ),
            BackupCheck(
                "compression", metadata.compressed == self.config.compression, Severity.MEDIUM,
                f"compressed={metadata.compressed}, expected {self.config.compression}",
            ),
            BackupCheck(
                "encryption", metadata.encrypted == self.config.encryption, Severity.HIGH,
                f"encrypted={metadata.encrypted}, expected {self.config.encryption}",
            ),
        ]

    async def _comprehensive_checks(self, metadata: BackupMetadata) -> list[BackupCheck]:
        issues = await self.service.validate(self.config)
        checks = [
            BackupCheck(
                "service_validation", not issues, Severity.HIGH,
                "; ".join(issues) if issues else "Backup service accepted the configuration",
            ),
        ]
        if self.config.test_restore_enabled:
            restore = await self.test_restore(metadata.id)
            checks.append(BackupCheck(
                "restore_test", restore.success, Severity.HIGH,
                "Restore succeeded" if restore.success else "; ".join(restore.errors),
            ))
        return checks

    async def test_restore(self, backup_id: str) -> RestoreTestResult:
        """Restore the backup into a scratch database when restore testing is enabled."""
        if not self.config.test_restore_enabled:
            return RestoreTestResult(backup_id=backup_id, success=False, skipped=True)
        start = time.monotonic()
        errors = await self.service.test_restore(backup_id)
        return RestoreTestResult(
            backup_id=backup_id,
            success=not errors,
            errors=list(errors),
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    async def ensure_backup(self, plan_id: str, elements: list[str]) -> str:
        """Create, validate and optionally restore-test a backup.

        Returns:
            The backup id

        Raises:
            BackupValidationError: If the backup cannot be trusted
        """
        try:
            metadata = await self.service.create_backup(plan_id, elements)
        except Exception as e:
            raise BackupValidationError(f"Backup for {plan_id} could not be created: {e}") from e

        result = await self.validate_backup(metadata.id)
        if not result.passed:
            failed = ", ".join(f"{c.name} ({c.message})" for c in result.failed_checks)
            raise BackupValidationError(f"Backup {metadata.id} failed validation: {failed}")

        if self.config.test_restore_enabled and self.config.verification_level != "comprehensive":
            restore = await self.test_restore(metadata.id)
            if not restore.success:
                raise BackupValidationError(
                    f"Backup {metadata.id} could not be restored: {'; '.join(restore.errors)}"
                )

        logger.info("Backup %s ready for %s", metadata.id, plan_id)
        return metadata.id

    async def cleanup_old_backups(self) -> list[str]:
        """Delete backups older than the retention period."""
        cutoff = self.clock() - timedelta(days=self.config.retention_days)
        deleted = []
        for metadata in await self.service.list_backups():
            if metadata.created_at < cutoff:
                await self.service.delete_backup(metadata.id)
                deleted.append(metadata.id)
        if deleted:
            logger.info("Deleted %d backups older than %d days", len(deleted), self.config.retention_days)
        return deleted

    async def get_backup_statistics(self) -> dict[str, Any]:
        backups = await self.service.list_backups()
        dates = sorted(b.created_at for b in backups)
        return {
            "total": len(backups),
            "total_size_bytes": sum(b.size_bytes for b in backups),
            "oldest": dates[0].isoformat() if dates else None,
            "newest": dates[-1].isoformat() if dates else None,
        }

    async def calculate_table_checksum(self, schema: str, table: str) -> str:
        """md5 aggregate over every row of a table."""
        if self.connection is None:
            raise ConfigurationError("A database connection is required for table checksums")
        row = await self.connection.fetch_one(
            TABLE_CHECKSUM_QUERY.format(table=f"{quote_ident(schema)}.{quote_ident(table)}")
        )
        return row["checksum"] if row else ""
