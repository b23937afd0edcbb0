"""PostgreSQL connection management."""

import logging
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import AsyncConnection
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from ..config import DeprecationConfig
from ..exceptions import PoolExhaustedError, PostgresConnectionError
from ..models.types import ConnectionState
from .base import BaseConnection

logger = logging.getLogger(__name__)

Parameters = tuple | list | dict[str, Any] | None


class PostgresConnection(BaseConnection):
    """PostgreSQL database connection manager.

    This is the repository every engine component talks to: plain
    ``fetch_all``/``fetch_one``/``execute`` for catalog reads and audit
    writes, and ``begin_transaction``/``commit_transaction``/
    ``rollback_transaction`` for the DDL transaction driven by
    :class:`~pg_deprecation_manager.transactions.TransactionManager`.
    """

    def __init__(self, config: DeprecationConfig):
        """Initialize PostgreSQL connection.

        Args:
            config: Engine configuration
        """
        super().__init__(config)
        self._pool: AsyncConnectionPool | None = None

    async def connect(self) -> None:
        """Establish connection pool to PostgreSQL."""
        try:
            self._state = ConnectionState.CONNECTING
            logger.info("Creating PostgreSQL connection pool")

            self._pool = AsyncConnectionPool(
                conninfo=self.config.postgres_dsn,
                min_size=1,
                max_size=self.config.connection_pool_size,
                timeout=self.config.timeout_seconds,
                kwargs={
                    "row_factory": dict_row,
                    "autocommit": False,
                },
                open=False,
            )
            await self._pool.open()
            await self._pool.wait()

            self._connection = self._pool
            self._state = ConnectionState.CONNECTED
            logger.info("Successfully created PostgreSQL connection pool")

        except (psycopg.OperationalError, PoolTimeout) as e:
            self._state = ConnectionState.FAILED
            logger.error("PostgreSQL connection failed: %s", e)
            raise PostgresConnectionError(f"Failed to connect to PostgreSQL: {e}") from e

    async def disconnect(self) -> None:
        """Close PostgreSQL connection pool."""
        if not self._pool:
            return
        try:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._state = ConnectionState.CLOSED
        except psycopg.Error as e:
            logger.error("Error closing PostgreSQL pool: %s", e)
            self._state = ConnectionState.FAILED
        finally:
            self._pool = None
            self._connection = None

    async def health_check(self) -> tuple[bool, float]:
        """Perform health check on PostgreSQL connection.

        Returns:
            Tuple of (is_healthy, latency_ms)
        """
        if not self._pool:
            return False, 0.0

        try:
            start_time = time.monotonic()
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1 AS health")
                    await cur.fetchone()
            return True, (time.monotonic() - start_time) * 1000

        except (psycopg.OperationalError, PoolTimeout) as e:
            logger.warning("PostgreSQL health check failed: %s", e)
            if self.config.enable_auto_reconnect:
                self._state = ConnectionState.RECONNECTING
            return False, 0.0

    @asynccontextmanager
    async def acquire_connection(self) -> AsyncIterator[AsyncConnection]:
        """Acquire a connection from the pool.

        Yields:
            PostgreSQL connection

        Raises:
            PoolExhaustedError: If pool is exhausted
        """
        await self.ensure_connected()

        try:
            async with self._pool.connection() as conn:
                yield conn
        except PoolTimeout as e:
            raise PoolExhaustedError(
                f"Connection pool exhausted (timeout: {self.config.timeout_seconds}s)"
            ) from e

    @staticmethod
    async def _run(conn: AsyncConnection, query: str, parameters: Parameters) -> list[dict[str, Any]]:
        async with conn.cursor() as cur:
            await cur.execute(query, parameters or None)
            # DDL and plain DML return no result set
            if cur.description is None:
                return []
            return [dict(row) for row in await cur.fetchall()]

    async def fetch_all(self, query: str, parameters: Parameters = None) -> list[dict[str, Any]]:
        """Execute a query and fetch all results.

        Args:
            query: SQL query string
            parameters: Query parameters as tuple, list, or dict

        Returns:
            List of result records as dictionaries

        Raises:
            PostgresConnectionError: If query execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                return await self._run(conn, query, parameters)
        except psycopg.Error as e:
            logger.error("PostgreSQL query execution failed: %s", e)
            raise PostgresConnectionError(f"Query execution failed: {e}") from e

    async def fetch_one(self, query: str, parameters: Parameters = None) -> dict[str, Any] | None:
        """Execute a query and fetch the first result row, or None."""
        rows = await self.fetch_all(query, parameters)
        return rows[0] if rows else None

    async def execute(
        self,
        query: str,
        parameters: Parameters = None,
        transaction: AsyncConnection | None = None
    ) -> list[dict[str, Any]]:
        """Execute a SQL statement with optional transaction support.

        Args:
            query: SQL statement
            parameters: Query parameters
            transaction: Connection returned by :meth:`begin_transaction`

        Returns:
            Result rows, empty for statements without a result set

        Raises:
            PostgresConnectionError: If execution fails
        """
        if transaction is None:
            return await self.fetch_all(query, parameters)

        try:
            return await self._run(transaction, query, parameters)
        except psycopg.Error as e:
            logger.error("PostgreSQL statement failed in transaction: %s", e)
            raise PostgresConnectionError(f"Query execution failed: {e}") from e

    async def execute_many(self, query: str, data: list[dict[str, Any]]) -> int:
        """Execute query for multiple named-parameter sets.

        Returns:
            Number of affected rows

        Raises:
            PostgresConnectionError: If execution fails
        """
        if not data:
            return 0

        param_names = re.findall(r"%\((\w+)\)s", query)
        positional = re.sub(r"%\(\w+\)s", "%s", query)
        rows = [tuple(row.get(name) for name in param_names) for row in data]

        try:
            async with self.acquire_connection() as conn:
                async with conn.cursor() as cur:
                    await cur.executemany(positional, rows)
                    return cur.rowcount or 0
        except psycopg.Error as e:
            logger.error("PostgreSQL executemany failed: %s", e)
            raise PostgresConnectionError(f"Batch execution failed: {e}") from e

    async def begin_transaction(self) -> AsyncConnection:
        """Begin a new transaction on a dedicated pooled connection.

        Raises:
            PostgresConnectionError: If transaction creation fails
        """
        await self.ensure_connected()

        try:
            conn = await self._pool.getconn()
        except PoolTimeout as e:
            raise PoolExhaustedError(
                f"Connection pool exhausted (timeout: {self.config.timeout_seconds}s)"
            ) from e

        try:
            await conn.set_autocommit(False)
        except psycopg.Error as e:
            await self._pool.putconn(conn)
            logger.error("Failed to begin transaction: %s", e)
            raise PostgresConnectionError(f"Failed to begin transaction: {e}") from e
        return conn

    async def commit_transaction(self, transaction: AsyncConnection | None) -> None:
        """Commit a transaction and return its connection to the pool.

        Raises:
            PostgresConnectionError: If commit fails
        """
        if not transaction:
            return

        try:
            await transaction.commit()
        except psycopg.Error as e:
            logger.error("Failed to commit transaction: %s", e)
            raise PostgresConnectionError(f"Failed to commit transaction: {e}") from e
        finally:
            await self._pool.putconn(transaction)

    async def rollback_transaction(self, transaction: AsyncConnection | None) -> None:
        """Rollback a transaction and return its connection to the pool.

        Raises:
            PostgresConnectionError: If rollback fails
        """
        if not transaction:
            return

        try:
            await transaction.rollback()
        except psycopg.Error as e:
            logger.error("Failed to rollback transaction: %s", e)
            raise PostgresConnectionError(f"Failed to rollback transaction: {e}") from e
        finally:
            await self._pool.putconn(transaction)

    @property
    def pool(self) -> AsyncConnectionPool | None:
        """Get the underlying connection pool."""
        return self._pool

    @property
    def pool_status(self) -> dict[str, Any]:
        """Get connection pool statistics."""
        if not self._pool:
            return {"status": "not_initialized"}

        stats = self._pool.get_stats()
        return {
            "status": "active",
            "min_size": self._pool.min_size,
            "max_size": self._pool.max_size,
            "pool_size": stats.get("pool_size", 0),
            "available": stats.get("pool_available", 0),
            "waiting": stats.get("requests_waiting", 0),
        }
