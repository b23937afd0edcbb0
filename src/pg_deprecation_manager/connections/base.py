"""Base connection class for database connections."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from pg_deprecation_manager.config import DeprecationConfig
from pg_deprecation_manager.exceptions import (
    ConnectionError,
    OperationTimeoutError,
    RetryExhaustedError,
)
from pg_deprecation_manager.models.types import ConnectionState

logger = logging.getLogger(__name__)


class BaseConnection(ABC):
    """Abstract base class for database connections.

    Subclasses provide ``connect``/``disconnect``/``health_check`` and the
    query primitives; this class adds reconnect with exponential backoff,
    a circuit breaker and per-operation timeouts.
    """

    def __init__(self, config: DeprecationConfig):
        """Initialize base connection.

        Args:
            config: Engine configuration holding connection settings
        """
        self.config = config
        self._state = ConnectionState.DISCONNECTED
        self._connection: Any | None = None
        self._retry_count = 0
        self._breaker_opened_at: datetime | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if connection is active."""
        return self._state == ConnectionState.CONNECTED

    @property
    def circuit_open(self) -> bool:
        return self._breaker_opened_at is not None

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the database."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the database."""

    @abstractmethod
    async def health_check(self) -> tuple[bool, float]:
        """Perform health check on the connection.

        Returns:
            Tuple of (is_healthy, latency_ms)
        """

    async def ensure_connected(self) -> None:
        """Ensure connection is established, reconnecting if necessary."""
        if not self.is_connected:
            await self.connect_with_retry()

    async def connect_with_retry(self) -> None:
        """Connect, backing off exponentially between failed attempts."""
        last_error: Exception | None = None
        attempts = self.config.max_retry_attempts + 1

        for attempt in range(attempts):
            if self.circuit_open:
                if not self._breaker_cooled_down():
                    raise ConnectionError("Circuit breaker is open")
                self._breaker_opened_at = None

            try:
                await self.connect()
            except Exception as e:
                last_error = e
                self._retry_count = attempt + 1
                if attempt == attempts - 1:
                    self._trip_breaker()
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Connection attempt %d failed: %s. Retrying in %.1fs...",
                    attempt + 1, e, delay
                )
                await asyncio.sleep(delay)
            else:
                self._retry_count = 0
                return

        raise RetryExhaustedError(
            f"Failed to connect after {attempts} attempts",
            last_error
        )

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff delay in seconds for a 0-indexed attempt."""
        return min(
            self.config.retry_backoff_factor ** attempt,
            self.config.retry_max_delay
        )

    def _trip_breaker(self) -> None:
        self._breaker_opened_at = datetime.now()
        self._state = ConnectionState.FAILED
        logger.error("Circuit breaker opened due to consecutive failures")

    def _breaker_cooled_down(self) -> bool:
        if self._breaker_opened_at is None:
            return True
        elapsed = (datetime.now() - self._breaker_opened_at).total_seconds()
        return elapsed >= self.config.retry_max_delay

    async def execute_with_timeout(
        self,
        coro: Awaitable[Any],
        timeout: float | None = None
    ) -> Any:
        """Await ``coro`` with a timeout.

        Raises:
            OperationTimeoutError: If execution times out
        """
        timeout = timeout or self.config.timeout_seconds

        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except TimeoutError as e:
            raise OperationTimeoutError(f"Operation timed out after {timeout} seconds") from e

    @asynccontextmanager
    async def acquire_connection(self) -> AsyncIterator[Any]:
        """Acquire the underlying connection object.

        Yields:
            Connection object
        """
        async with self._lock:
            await self.ensure_connected()
            yield self._connection

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect_with_retry()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()
