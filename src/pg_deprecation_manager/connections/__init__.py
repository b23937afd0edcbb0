"""Connection management modules."""

from pg_deprecation_manager.connections.base import BaseConnection
from pg_deprecation_manager.connections.postgres import PostgresConnection

__all__ = ["BaseConnection", "PostgresConnection"]
