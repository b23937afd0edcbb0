"""In-memory backup service for testing purposes."""

import itertools
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pg_deprecation_manager.backup.validator import BackupMetadata, BackupService
from pg_deprecation_manager.config import BackupConfig
from pg_deprecation_manager.metadata.models import utcnow


class InMemoryBackupService(BackupService):
    """Backup service that only keeps metadata.

    The attributes set in the constructor control what newly created
    backups look like, so tests can produce invalid backups on purpose.
    """

    def __init__(
        self,
        size_bytes: int = 1024,
        compressed: bool = True,
        encrypted: bool = False,
        with_checksums: bool = True,
        restore_errors: list[str] | None = None,
        config_issues: list[str] | None = None,
        fail_create: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.size_bytes = size_bytes
        self.compressed = compressed
        self.encrypted = encrypted
        self.with_checksums = with_checksums
        self.restore_errors = list(restore_errors or [])
        self.config_issues = list(config_issues or [])
        self.fail_create = fail_create
        self.clock = clock
        self.backups: dict[str, BackupMetadata] = {}
        self.restores: list[str] = []
        self._ids = itertools.count(1)

    async def create_backup(self, plan_id: str, elements: list[str]) -> BackupMetadata:
        if self.fail_create:
            raise RuntimeError("backup storage unavailable")
        backup_id = f"backup_{next(self._ids):04d}"
        metadata = BackupMetadata(
            id=backup_id,
            created_at=self.clock(),
            plan_id=plan_id,
            elements=list(elements),
            size_bytes=self.size_bytes,
            checksums={e: f"md5:{e}" for e in elements} if self.with_checksums else {},
            compressed=self.compressed,
            encrypted=self.encrypted,
            database_version="16.0",
        )
        self.backups[backup_id] = metadata
        return metadata

    def add(self, metadata: BackupMetadata) -> None:
        """Register an existing backup."""
        self.backups[metadata.id] = metadata

    async def get_metadata(self, backup_id: str) -> BackupMetadata | None:
        return self.backups.get(backup_id)

    async def validate(self, config: BackupConfig) -> list[str]:
        return list(self.config_issues)

    async def test_restore(self, backup_id: str) -> list[str]:
        self.restores.append(backup_id)
        if backup_id not in self.backups:
            return [f"backup {backup_id} not found"]
        return list(self.restore_errors)

    async def list_backups(self) -> list[BackupMetadata]:
        return list(self.backups.values())

    async def delete_backup(self, backup_id: str) -> None:
        self.backups.pop(backup_id, None)

    def get_stats(self) -> dict[str, Any]:
        return {"backups": len(self.backups), "restores": len(self.restores)}
