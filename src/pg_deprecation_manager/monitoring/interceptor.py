"""Detects deprecated identifiers in SQL text and records the access."""

import logging
import re
import time
from typing import Any

from pg_deprecation_manager.metadata.models import AccessSource, QueryType, SourceType
from pg_deprecation_manager.monitoring.monitor import AccessMonitor
from pg_deprecation_manager.naming import DEPRECATED_IDENTIFIER_IN_TEXT

logger = logging.getLogger(__name__)

_QUERY_TYPES = {
    "SELECT": QueryType.SELECT,
    "WITH": QueryType.SELECT,
    "INSERT": QueryType.INSERT,
    "UPDATE": QueryType.UPDATE,
    "DELETE": QueryType.DELETE,
    "CREATE": QueryType.DDL,
    "ALTER": QueryType.DDL,
    "DROP": QueryType.DDL,
    "TRUNCATE": QueryType.DDL,
}
_LEADING_WORD = re.compile(r"^\s*(?:--[^\n]*\n\s*)*(\w+)")


def classify_query(sql: str) -> QueryType:
    match = _LEADING_WORD.match(sql or "")
    if not match:
        return QueryType.OTHER
    return _QUERY_TYPES.get(match.group(1).upper(), QueryType.OTHER)


def find_deprecated_identifiers(sql: str) -> list[str]:
    """Distinct deprecated identifiers mentioned in ``sql``, in order of appearance."""
    seen: list[str] = []
    for name in DEPRECATED_IDENTIFIER_IN_TEXT.findall(sql or ""):
        if name not in seen:
            seen.append(name)
    return seen


class QueryInterceptor:
    """Feeds queries that touch deprecated identifiers into the access monitor."""

    def __init__(self, monitor: AccessMonitor, source: AccessSource | None = None):
        self.monitor = monitor
        self.source = source or AccessSource(type=SourceType.APPLICATION)

    def inspect(
        self,
        sql: str,
        source: AccessSource | None = None,
        execution_time_ms: float | None = None,
    ) -> list[str]:
        """Record an access for every deprecated identifier in ``sql``.

        Returns:
            The identifiers found
        """
        names = find_deprecated_identifiers(sql)
        if not names:
            return names
        query_type = classify_query(sql)
        for name in names:
            self.monitor.record_access(
                name,
                self.monitor.element_type_of(name),
                source or self.source,
                query_type,
                execution_time_ms=execution_time_ms,
            )
        logger.debug("Query touched deprecated identifiers: %s", ", ".join(names))
        return names

    def wrap(self, connection, source: AccessSource | None = None) -> "InterceptedConnection":
        return InterceptedConnection(connection, self, source)


class InterceptedConnection:
    """Connection proxy that inspects every statement after running it."""

    def __init__(self, connection, interceptor: QueryInterceptor, source: AccessSource | None = None):
        self._connection = connection
        self._interceptor = interceptor
        self._source = source

    async def _timed(self, method: str, query: str, *args: Any, **kwargs: Any) -> Any:
        start = time.monotonic()
        try:
            return await getattr(self._connection, method)(query, *args, **kwargs)
        finally:
            self._interceptor.inspect(
                query, self._source, execution_time_ms=(time.monotonic() - start) * 1000
            )

    async def fetch_all(self, query: str, parameters=None) -> list[dict[str, Any]]:
        return await self._timed("fetch_all", query, parameters)

    async def fetch_one(self, query: str, parameters=None) -> dict[str, Any] | None:
        return await self._timed("fetch_one", query, parameters)

    async def execute(self, query: str, parameters=None, **kwargs: Any) -> list[dict[str, Any]]:
        return await self._timed("execute", query, parameters, **kwargs)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._connection, name)
