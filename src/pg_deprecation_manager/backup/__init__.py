"""Backup validation."""

from pg_deprecation_manager.backup.validator import (
    BackupCheck,
    BackupMetadata,
    BackupService,
    BackupValidationResult,
    BackupValidator,
    RestoreTestResult,
)

__all__ = [
    "BackupCheck",
    "BackupMetadata",
    "BackupService",
    "BackupValidationResult",
    "BackupValidator",
    "RestoreTestResult",
]
