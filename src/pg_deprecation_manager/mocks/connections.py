"""Mock PostgreSQL connection.

This module provides a connection class that understands the statements
the deprecation engine issues (renames, restore statements, catalog
probes, audit-log writes) and applies them to an :class:`InMemoryCatalog`
without an external database.
"""

import asyncio
import itertools
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from pg_deprecation_manager.exceptions import PostgresConnectionError
from pg_deprecation_manager.metadata.models import ElementType
from pg_deprecation_manager.metadata.strategies import (
    RESTORE_CONSTRAINT_RE,
    RESTORE_INDEX_RE,
    parse_rename,
)
from pg_deprecation_manager.models.types import ConnectionState

from .catalog import InMemoryCatalog, MockDatabaseError

logger = logging.getLogger(__name__)

_FILTER_RE = re.compile(r"(\w+) = %s")
_LITERAL_FILTER_RE = re.compile(r"(\w+) = '((?:[^']|'')*)'")
_PROBE_RE = re.compile(r"FROM ([\w.]+) WHERE (.+)$", re.DOTALL)
_SUBSELECT_RE = re.compile(r"\(SELECT COUNT\(\*\) FROM ([\w.]+) WHERE (.+?)\) AS (\w+)", re.DOTALL)
_QUOTED_TABLE_RE = re.compile(r'FROM "(\w+)"\."(\w+)"')


@dataclass
class MockTransaction:
    """Transaction handle returned by :meth:`MockPostgresConnection.begin_transaction`."""
    id: int
    snapshot: dict[str, Any]
    savepoints: dict[str, dict[str, Any]] = field(default_factory=dict)
    aborted: bool = False
    done: bool = False


@dataclass
class _Failure:
    pattern: re.Pattern[str]
    error: Exception
    remaining: int | None


def _like(value: str, pattern: str) -> bool:
    regex = "".join(
        ".*" if ch == "%" else "." if ch == "_" else re.escape(ch)
        for ch in pattern
    )
    return re.fullmatch(regex, value, re.DOTALL) is not None


class MockPostgresConnection:
    """Mock implementation of the PostgreSQL connection.

    Transactions snapshot the catalog and restore it on rollback, so DDL is
    transactional the way it is in PostgreSQL. After an error inside a
    transaction every statement fails until the transaction is rolled back
    or returns to a savepoint.
    """

    def __init__(self, catalog: InMemoryCatalog | None = None, config: dict[str, Any] | None = None):
        """Initialize mock PostgreSQL connection.

        Args:
            catalog: Shared in-memory catalog
            config: Connection options (``postgres_latency`` in milliseconds)
        """
        self.catalog = catalog or InMemoryCatalog()
        self.config = config or {}
        self.state = ConnectionState.DISCONNECTED
        self._latency_ms = self.config.get("postgres_latency", 0)
        self._tx_ids = itertools.count(1)
        self._failures: list[_Failure] = []

        self.statements: list[str] = []
        self.transactions_begun = 0
        self.commits = 0
        self.rollbacks = 0
        self.ddl_statements = 0

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def history_rows(self) -> list[dict[str, Any]]:
        return self.catalog.history_rows

    @property
    def access_rows(self) -> list[dict[str, Any]]:
        return self.catalog.access_rows

    async def connect(self) -> None:
        self.state = ConnectionState.CONNECTED

    async def connect_with_retry(self) -> None:
        """Simulate connection with retry logic."""
        self.state = ConnectionState.CONNECTING
        await asyncio.sleep(self._latency_ms / 1000)
        self.state = ConnectionState.CONNECTED

    async def disconnect(self) -> None:
        """Simulate disconnection."""
        await asyncio.sleep(self._latency_ms / 1000)
        self.state = ConnectionState.CLOSED

    async def health_check(self) -> tuple[bool, float]:
        """Perform health check.

        Returns:
            Tuple of (is_healthy, latency_ms)
        """
        start_time = time.time()
        await asyncio.sleep(self._latency_ms / 1000)
        latency = (time.time() - start_time) * 1000
        return self.is_connected, latency

    @property
    def pool_status(self) -> dict[str, Any]:
        return {"status": "mock" if self.is_connected else "not_initialized"}

    def fail_on(self, pattern: str, error: Exception | None = None, times: int | None = 1) -> None:
        """Make statements matching ``pattern`` fail.

        Args:
            pattern: Regular expression searched in each statement
            error: Exception to raise, a PostgresConnectionError by default
            times: Number of failures before the rule expires, None for always
        """
        self._failures.append(_Failure(
            re.compile(pattern, re.IGNORECASE | re.DOTALL),
            error or PostgresConnectionError(f"Simulated failure for /{pattern}/"),
            times,
        ))

    def reset_stats(self) -> None:
        self.statements.clear()
        self.transactions_begun = self.commits = self.rollbacks = self.ddl_statements = 0

    # Query API

    async def fetch_all(self, query: str, parameters: Any = None) -> list[dict[str, Any]]:
        return await self._dispatch(query, parameters, None)

    async def fetch_one(self, query: str, parameters: Any = None) -> dict[str, Any] | None:
        rows = await self.fetch_all(query, parameters)
        return rows[0] if rows else None

    async def execute(
        self,
        query: str,
        parameters: Any = None,
        transaction: MockTransaction | None = None,
    ) -> list[dict[str, Any]]:
        return await self._dispatch(query, parameters, transaction)

    async def execute_many(self, query: str, data: list[dict[str, Any]]) -> int:
        for params in data:
            await self._dispatch(query, params, None)
        return len(data)

    async def begin_transaction(self) -> MockTransaction:
        self._require_connected()
        self.transactions_begun += 1
        return MockTransaction(next(self._tx_ids), self.catalog.snapshot())

    async def commit_transaction(self, transaction: MockTransaction | None) -> None:
        if transaction is None:
            return
        transaction.done = True
        if transaction.aborted:
            self.catalog.restore(transaction.snapshot)
            self.rollbacks += 1
            raise PostgresConnectionError("current transaction is aborted, commit rolled back")
        self.commits += 1

    async def rollback_transaction(self, transaction: MockTransaction | None) -> None:
        if transaction is None:
            return
        transaction.done = True
        self.catalog.restore(transaction.snapshot)
        self.rollbacks += 1

    # Dispatch

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise PostgresConnectionError("Not connected to PostgreSQL")

    def _injected_failure(self, query: str) -> Exception | None:
        for failure in self._failures:
            if failure.remaining == 0 or not failure.pattern.search(query):
                continue
            if failure.remaining is not None:
                failure.remaining -= 1
            return failure.error
        return None

    async def _dispatch(
        self, query: str, parameters: Any, transaction: MockTransaction | None
    ) -> list[dict[str, Any]]:
        self._require_connected()
        await asyncio.sleep(self._latency_ms / 1000)
        statement = query.strip().rstrip(";").strip()
        self.statements.append(statement)

        if transaction is not None:
            savepoint = re.match(r"^(SAVEPOINT|ROLLBACK TO SAVEPOINT|RELEASE SAVEPOINT) (\w+)$", statement)
            if savepoint:
                return self._savepoint(transaction, savepoint.group(1), savepoint.group(2))
            if transaction.aborted:
                raise PostgresConnectionError(
                    "current transaction is aborted, commands ignored until end of transaction block"
                )

        error = self._injected_failure(statement)
        try:
            if error is not None:
                raise error
            return self._run(statement, parameters)
        except MockDatabaseError as e:
            if transaction is not None:
                transaction.aborted = True
            raise PostgresConnectionError(f"Query execution failed: {e}") from e
        except Exception:
            if transaction is not None:
                transaction.aborted = True
            raise

    def _savepoint(self, transaction: MockTransaction, command: str, name: str) -> list[dict[str, Any]]:
        if command == "SAVEPOINT":
            if transaction.aborted:
                raise PostgresConnectionError("current transaction is aborted")
            transaction.savepoints[name] = self.catalog.snapshot()
        elif command == "ROLLBACK TO SAVEPOINT":
            if name not in transaction.savepoints:
                raise PostgresConnectionError(f'savepoint "{name}" does not exist')
            self.catalog.restore(transaction.savepoints[name])
            transaction.aborted = False
        else:
            if transaction.aborted:
                raise PostgresConnectionError("current transaction is aborted")
            transaction.savepoints.pop(name, None)
        return []

    def _run(self, statement: str, parameters: Any) -> list[dict[str, Any]]:
        upper = statement.upper()

        if upper.startswith("EXPLAIN "):
            target = statement[len("EXPLAIN "):].lstrip()
            if not target.upper().startswith("SELECT"):
                raise MockDatabaseError(f"syntax error at or near {target.split()[0]!r}")
            return [{"QUERY PLAN": "Result  (cost=0.00..0.01 rows=1 width=16)"}]

        if "MIGRATION_HISTORY" in upper:
            return self._history(statement, upper, parameters)
        if "ACCESS_EVENTS" in upper:
            return self._access_events(statement, upper, parameters)
        if upper.startswith("CREATE SCHEMA"):
            return []

        restore_constraint = RESTORE_CONSTRAINT_RE.match(statement)
        if restore_constraint:
            self.ddl_statements += 1
            schema, table, name = restore_constraint.groups()[:3]
            if self.catalog.constraint(schema, table, name) is None:
                self.catalog.add_constraint_from_definition(
                    schema, table, name, restore_constraint.group("definition")
                )
            return []

        restore_index = RESTORE_INDEX_RE.match(statement)
        if restore_index:
            self.ddl_statements += 1
            unique, name, schema, table = restore_index.groups()[:4]
            columns = [c.strip() for c in restore_index.group("rest").strip("()").split(",")]
            self.catalog.create_index_if_missing(schema, name, table, columns, bool(unique))
            return []

        rename = parse_rename(statement)
        if rename:
            self.ddl_statements += 1
            self._rename(rename)
            return []

        if upper.startswith("ALTER ") or upper.startswith("DROP ") or upper.startswith("CREATE "):
            raise MockDatabaseError(f"unsupported statement: {statement.splitlines()[0]}")

        return self._select(statement, upper, tuple(parameters or ()))

    def _rename(self, rename) -> None:
        if rename.kind == ElementType.TABLE:
            self.catalog.rename_table(rename.schema, rename.source, rename.target)
        elif rename.kind == ElementType.COLUMN:
            self.catalog.rename_column(rename.schema, rename.relation, rename.source, rename.target)
        elif rename.kind == ElementType.INDEX:
            self.catalog.rename_index(rename.schema, rename.source, rename.target)
        else:
            self.catalog.rename_constraint(rename.schema, rename.relation, rename.source, rename.target)

    # Catalog reads

    def _select(self, statement: str, upper: str, params: tuple) -> list[dict[str, Any]]:
        catalog = self.catalog

        if "CON.CONTYPE = 'F'" in upper:
            return self._foreign_keys(statement, params)

        if "VIEW_COLUMN_USAGE" in upper:
            schema, table, column = params
            return [
                {"name": v.name} for v in catalog.views
                if v.schema == schema and column in v.uses.get(table, [])
            ]
        if "VIEW_TABLE_USAGE" in upper:
            schema, table = params
            return [{"name": v.name} for v in catalog.views if v.schema == schema and table in v.uses]
        if "INFORMATION_SCHEMA.TRIGGERS" in upper:
            schema, table = params
            return [{"name": t.name} for t in catalog.triggers if t.schema == schema and t.table == table]

        if "FROM PG_INDEX IDX" in upper:
            schema, table, column = params
            return [
                {"name": i.name, "definition": catalog.indexdef(i)}
                for i in catalog.indexes.values()
                if i.schema == schema and i.table == table and column in i.columns and not i.primary
            ]
        if "FK.CONINDID" in upper:
            schema, table, name = params
            unique = catalog.constraint(schema, table, name)
            if unique is None or unique.kind not in ("p", "u"):
                return []
            return [
                {"name": c.name, "owner_table": c.table, "definition": catalog.constraintdef(c)}
                for c in catalog.constraints
                if c.schema == schema and c.kind == "f" and c.index == unique.index
            ]
        if "CON.CONINDID" in upper:
            schema, index = params
            return [
                {"name": c.name, "owner_table": c.table}
                for c in catalog.constraints
                if c.schema == schema and c.index == index and c.kind in ("p", "u")
            ]

        if "PG_STAT_USER_TABLES" in upper:
            table = catalog.tables.get(params)
            if table is None:
                return []
            return [{"scan_count": table.scans, "live_rows": table.rows}]
        if "PG_STAT_USER_INDEXES" in upper:
            index = catalog.indexes.get(params)
            return [{"scan_count": index.scans}] if index else []

        if "UNION ALL" in upper:
            return self._deprecated_objects(params)

        if "MD5(" in upper:
            match = _QUOTED_TABLE_RE.search(statement)
            return [{"checksum": catalog.table_checksum(*match.groups())}]

        subselects = _SUBSELECT_RE.findall(statement)
        if subselects:
            row = {}
            for view, where, alias in subselects:
                filters = {k: v.replace("''", "'") for k, v in _LITERAL_FILTER_RE.findall(where)}
                row[alias] = catalog.count(view, filters)
            return [row]

        if upper.startswith("SELECT COUNT(*) AS COUNT FROM"):
            quoted = _QUOTED_TABLE_RE.search(statement)
            if quoted:
                table = catalog.tables.get(quoted.groups())
                if table is None:
                    raise MockDatabaseError(f'relation "{quoted.group(1)}.{quoted.group(2)}" does not exist')
                return [{"count": table.rows}]
            probe = _PROBE_RE.search(statement)
            if probe:
                view, where = probe.groups()
                filters = dict(zip(_FILTER_RE.findall(where), (str(p) for p in params), strict=False))
                return [{"count": catalog.count(view, filters)}]

        if upper == "SELECT 1":
            return [{"?column?": 1}]

        logger.debug("Mock connection ignoring statement: %s", statement.splitlines()[0])
        return []

    def _foreign_keys(self, statement: str, params: tuple) -> list[dict[str, Any]]:
        catalog = self.catalog
        if "a.attnum = ANY(con.conkey)" in statement:
            schema, table, column = params[0], params[1], params[2]
            matches = [
                c for c in catalog.constraints
                if c.schema == schema and c.kind == "f" and (
                    (c.table == table and column in c.columns)
                    or (c.ref_table == table and column in c.ref_columns)
                )
            ]
        elif "src.relname <> tgt.relname" in statement:
            schema, table = params
            matches = [
                c for c in catalog.constraints
                if c.schema == schema and c.kind == "f" and c.ref_table == table and c.table != table
            ]
        else:
            schema, table = params
            matches = [
                c for c in catalog.constraints
                if c.schema == schema and c.kind == "f" and c.table == table
            ]
        return [
            {
                "name": c.name,
                "owner_table": c.table,
                "referenced_table": c.ref_table,
                "definition": catalog.constraintdef(c),
            }
            for c in matches
        ]

    def _deprecated_objects(self, params: tuple) -> list[dict[str, Any]]:
        schema, pattern = params[0], params[1]
        rows = []
        for table in self.catalog.tables.values():
            if table.schema != schema:
                continue
            if _like(table.name, pattern):
                rows.append({"element_type": "table", "table_name": table.name, "name": table.name})
            rows.extend(
                {"element_type": "column", "table_name": table.name, "name": column}
                for column in table.columns if _like(column, pattern)
            )
        rows.extend(
            {"element_type": "index", "table_name": i.table, "name": i.name}
            for i in self.catalog.indexes.values() if i.schema == schema and _like(i.name, pattern)
        )
        rows.extend(
            {"element_type": "constraint", "table_name": c.table, "name": c.name}
            for c in self.catalog.constraints if c.schema == schema and _like(c.name, pattern)
        )
        return sorted(rows, key=lambda r: (r["element_type"], r["table_name"], r["name"]))

    # Metadata tables

    def _history(self, statement: str, upper: str, params: Any) -> list[dict[str, Any]]:
        if upper.startswith("CREATE"):
            return []
        if upper.startswith("INSERT"):
            columns = (
                "plan_id", "checksum", "status", "principal", "risk_level", "elements",
                "started_at", "finished_at", "execution_time_ms", "error_message",
            )
            row = dict(zip(columns, params, strict=True))
            row.update(
                id=len(self.history_rows) + 1,
                rolled_back_at=None,
                rolled_back_by=None,
                rollback_error=None,
                rollback_details=None,
                resolved_at=None,
                resolved_by=None,
            )
            self.history_rows.append(row)
            return []
        if upper.startswith("UPDATE"):
            clauses = re.search(r"\bSET\b(?P<set>.*)\bWHERE\b(?P<where>.*)", statement, re.S | re.I)
            assigned = re.findall(r"(\w+) = %s", clauses.group("set"))
            filtered = re.findall(r"(\w+) = %s", clauses.group("where"))
            values = dict(zip(assigned, params[:len(assigned)], strict=True))
            filters = dict(zip(filtered, params[len(assigned):], strict=True))
            for row in self.history_rows:
                if all(row.get(column) == value for column, value in filters.items()):
                    row.update(values)
            return []
        rows = sorted(self.history_rows, key=lambda r: (r["started_at"], r["id"]), reverse=True)
        limit = re.search(r"LIMIT (\d+)", upper)
        if limit:
            rows = rows[:int(limit.group(1))]
        return [dict(r) for r in rows]

    def _access_events(self, statement: str, upper: str, params: Any) -> list[dict[str, Any]]:
        if upper.startswith("CREATE"):
            return []
        if upper.startswith("INSERT"):
            self.access_rows.append(dict(params))
            return []
        if upper.startswith("DELETE"):
            (cutoff,) = params
            self.access_rows[:] = [r for r in self.access_rows if r["accessed_at"] >= cutoff]
            return []
        if "COUNT(*)" in upper:
            (cutoff,) = params
            return [{"count": sum(1 for r in self.access_rows if r["accessed_at"] < cutoff)}]

        conditions = re.findall(r"(element_name = %s|accessed_at >= %s|accessed_at <= %s)", statement)
        rows = self.access_rows
        for condition, value in zip(conditions, params or (), strict=True):
            if condition.startswith("element_name"):
                rows = [r for r in rows if r["element_name"] == value]
            elif ">=" in condition:
                rows = [r for r in rows if r["accessed_at"] >= value]
            else:
                rows = [r for r in rows if r["accessed_at"] <= value]
        return [dict(r) for r in sorted(rows, key=lambda r: r["accessed_at"])]
