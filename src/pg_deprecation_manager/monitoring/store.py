"""Persistence for recorded access events."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime

from pg_deprecation_manager.metadata.models import (
    AccessEvent,
    AccessSource,
    ElementType,
    QueryType,
    SourceType,
)

logger = logging.getLogger(__name__)


class AccessStore(ABC):
    """Store of access events with an explicit lifecycle.

    ``initialize`` is called once at startup and ``close`` at shutdown.
    """

    async def initialize(self) -> None:
        """Prepare the store."""

    async def close(self) -> None:
        """Release resources held by the store."""

    @abstractmethod
    async def save_events(self, events: list[AccessEvent]) -> int:
        """Persist a batch of events, returning how many were written."""

    @abstractmethod
    async def query_events(
        self,
        element_name: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AccessEvent]:
        """Events ordered by timestamp, optionally filtered."""

    @abstractmethod
    async def delete_before(self, cutoff: datetime) -> int:
        """Delete events older than ``cutoff``, returning how many were removed."""


class InMemoryAccessStore(AccessStore):
    """Keeps events in a list; for tests and single-process use."""

    def __init__(self):
        self._events: list[AccessEvent] = []
        self._lock = asyncio.Lock()

    async def save_events(self, events: list[AccessEvent]) -> int:
        async with self._lock:
            self._events.extend(events)
            self._events.sort(key=lambda e: e.timestamp)
        return len(events)

    async def query_events(self, element_name=None, since=None, until=None) -> list[AccessEvent]:
        return [
            e for e in self._events
            if (element_name is None or e.element_name == element_name)
            and (since is None or e.timestamp >= since)
            and (until is None or e.timestamp <= until)
        ]

    async def delete_before(self, cutoff: datetime) -> int:
        async with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.timestamp >= cutoff]
            return before - len(self._events)

    def __len__(self) -> int:
        return len(self._events)


class PostgresAccessStore(AccessStore):
    """Stores events in ``<metadata_schema>.access_events``."""

    def __init__(self, connection, schema: str = "_deprecation_metadata"):
        """Initialize the store.

        Args:
            connection: PostgreSQL connection instance
            schema: Schema holding the metadata tables
        """
        self.connection = connection
        self.schema = schema

    @property
    def table(self) -> str:
        return f"{self.schema}.access_events"

    async def initialize(self) -> None:
        await self.connection.execute(f"CREATE SCHEMA IF NOT EXISTS {self.schema}")
        await self.connection.execute(f"""
        CREATE TABLE IF NOT EXISTS {self.table} (
            id BIGSERIAL PRIMARY KEY,
            element_name VARCHAR(255) NOT NULL,
            element_type VARCHAR(20) NOT NULL,
            source_type VARCHAR(20) NOT NULL,
            source_identifier VARCHAR(255),
            source_origin VARCHAR(255),
            query_type VARCHAR(10) NOT NULL,
            execution_time_ms DOUBLE PRECISION,
            accessed_at TIMESTAMPTZ NOT NULL
        )
        """)
        await self.connection.execute(
            f"CREATE INDEX IF NOT EXISTS idx_access_events_element ON {self.table} (element_name, accessed_at)"
        )
        logger.info("Access event store ready in %s", self.table)

    async def save_events(self, events: list[AccessEvent]) -> int:
        if not events:
            return 0
        rows = [
            {
                "element_name": e.element_name,
                "element_type": e.element_type.value,
                "source_type": e.source.type.value,
                "source_identifier": e.source.identifier,
                "source_origin": e.source.origin,
                "query_type": e.query_type.value,
                "execution_time_ms": e.execution_time_ms,
                "accessed_at": e.timestamp,
            }
            for e in events
        ]
        await self.connection.execute_many(
            f"""
            INSERT INTO {self.table}
            (element_name, element_type, source_type, source_identifier, source_origin,
             query_type, execution_time_ms, accessed_at)
            VALUES (%(element_name)s, %(element_type)s, %(source_type)s, %(source_identifier)s,
                    %(source_origin)s, %(query_type)s, %(execution_time_ms)s, %(accessed_at)s)
            """,
            rows,
        )
        return len(rows)

    async def query_events(self, element_name=None, since=None, until=None) -> list[AccessEvent]:
        conditions = []
        params: list = []
        if element_name is not None:
            conditions.append("element_name = %s")
            params.append(element_name)
        if since is not None:
            conditions.append("accessed_at >= %s")
            params.append(since)
        if until is not None:
            conditions.append("accessed_at <= %s")
            params.append(until)

        query = f"""
        SELECT element_name, element_type, source_type, source_identifier, source_origin,
               query_type, execution_time_ms, accessed_at
        FROM {self.table}
        """
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY accessed_at"

        rows = await self.connection.fetch_all(query, tuple(params))
        return [
            AccessEvent(
                element_name=row["element_name"],
                element_type=ElementType(row["element_type"]),
                source=AccessSource(
                    type=SourceType(row["source_type"]),
                    identifier=row["source_identifier"] or "",
                    origin=row["source_origin"] or "",
                ),
                query_type=QueryType(row["query_type"]),
                timestamp=row["accessed_at"],
                execution_time_ms=row["execution_time_ms"],
            )
            for row in rows
        ]

    async def delete_before(self, cutoff: datetime) -> int:
        before = await self.connection.fetch_one(
            f"SELECT COUNT(*) AS count FROM {self.table} WHERE accessed_at < %s", (cutoff,)
        )
        await self.connection.execute(f"DELETE FROM {self.table} WHERE accessed_at < %s", (cutoff,))
        return int(before["count"]) if before else 0
