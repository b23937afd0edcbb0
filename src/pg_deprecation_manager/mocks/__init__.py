"""Mock implementations for pg_deprecation_manager.

This module provides in-memory mock implementations of the database
connection, the schema catalog and the backup service for testing
purposes. All mocks are zero-dependency and use only Python standard
library.
"""

from .backup import InMemoryBackupService
from .catalog import InMemoryCatalog, MockDatabaseError
from .connections import MockPostgresConnection, MockTransaction
from .manager import create_mock_manager, mock_config

__all__ = [
    "InMemoryBackupService",
    "InMemoryCatalog",
    "MockDatabaseError",
    "MockPostgresConnection",
    "MockTransaction",
    "create_mock_manager",
    "mock_config",
]
