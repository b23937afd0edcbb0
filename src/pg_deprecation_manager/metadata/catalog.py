"""Read-only catalog introspection for deprecation candidates."""

import logging
from typing import Any

from pg_deprecation_manager.metadata.models import (
    DependencyType,
    ElementDependency,
    ElementType,
    Impact,
)
from pg_deprecation_manager.metadata.strategies import quote_ident, strategy_for
from pg_deprecation_manager.naming import DEPRECATION_MARKER

logger = logging.getLogger(__name__)

_FOREIGN_KEY_SELECT = """
SELECT
    con.conname AS name,
    src.relname AS owner_table,
    tgt.relname AS referenced_table,
    pg_get_constraintdef(con.oid) AS definition
FROM pg_constraint con
JOIN pg_class src ON src.oid = con.conrelid
JOIN pg_class tgt ON tgt.oid = con.confrelid
JOIN pg_namespace n ON n.oid = src.relnamespace
WHERE con.contype = 'f' AND n.nspname = %s
"""

INBOUND_FOREIGN_KEYS_QUERY = _FOREIGN_KEY_SELECT + " AND tgt.relname = %s AND src.relname <> tgt.relname"
OUTBOUND_FOREIGN_KEYS_QUERY = _FOREIGN_KEY_SELECT + " AND src.relname = %s"
COLUMN_FOREIGN_KEYS_QUERY = _FOREIGN_KEY_SELECT + """
  AND (
    (src.relname = %s AND EXISTS (
        SELECT 1 FROM pg_attribute a
        WHERE a.attrelid = con.conrelid AND a.attnum = ANY(con.conkey) AND a.attname = %s))
    OR (tgt.relname = %s AND EXISTS (
        SELECT 1 FROM pg_attribute a
        WHERE a.attrelid = con.confrelid AND a.attnum = ANY(con.confkey) AND a.attname = %s))
  )
"""

TABLE_VIEWS_QUERY = """
SELECT DISTINCT view_name AS name
FROM information_schema.view_table_usage
WHERE table_schema = %s AND table_name = %s
"""

COLUMN_VIEWS_QUERY = """
SELECT DISTINCT view_name AS name
FROM information_schema.view_column_usage
WHERE table_schema = %s AND table_name = %s AND column_name = %s
"""

TABLE_TRIGGERS_QUERY = """
SELECT DISTINCT trigger_name AS name
FROM information_schema.triggers
WHERE event_object_schema = %s AND event_object_table = %s
"""

COLUMN_INDEXES_QUERY = """
SELECT i.relname AS name, pg_get_indexdef(i.oid) AS definition
FROM pg_index idx
JOIN pg_class i ON i.oid = idx.indexrelid
JOIN pg_class t ON t.oid = idx.indrelid
JOIN pg_namespace n ON n.oid = t.relnamespace
JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(idx.indkey)
WHERE n.nspname = %s AND t.relname = %s AND a.attname = %s AND NOT idx.indisprimary
"""

INDEX_CONSTRAINTS_QUERY = """
SELECT con.conname AS name, t.relname AS owner_table
FROM pg_constraint con
JOIN pg_class i ON i.oid = con.conindid
JOIN pg_class t ON t.oid = con.conrelid
JOIN pg_namespace n ON n.oid = i.relnamespace
WHERE n.nspname = %s AND i.relname = %s AND con.contype IN ('p', 'u', 'x')
"""

CONSTRAINT_REFERENCES_QUERY = """
SELECT fk.conname AS name, src.relname AS owner_table, pg_get_constraintdef(fk.oid) AS definition
FROM pg_constraint uc
JOIN pg_class ut ON ut.oid = uc.conrelid
JOIN pg_namespace n ON n.oid = ut.relnamespace
JOIN pg_constraint fk ON fk.contype = 'f' AND fk.conindid = uc.conindid
JOIN pg_class src ON src.oid = fk.conrelid
WHERE n.nspname = %s AND ut.relname = %s AND uc.conname = %s AND uc.contype IN ('p', 'u')
"""

TABLE_SCANS_QUERY = """
SELECT COALESCE(seq_scan, 0) + COALESCE(idx_scan, 0) AS scan_count, n_live_tup AS live_rows
FROM pg_stat_user_tables
WHERE schemaname = %s AND relname = %s
"""

INDEX_SCANS_QUERY = """
SELECT COALESCE(idx_scan, 0) AS scan_count
FROM pg_stat_user_indexes
WHERE schemaname = %s AND indexrelname = %s
"""

DEPRECATED_OBJECTS_QUERY = """
SELECT 'table' AS element_type, table_name AS table_name, table_name AS name
FROM information_schema.tables
WHERE table_schema = %s AND table_name LIKE %s
UNION ALL
SELECT 'column', table_name, column_name
FROM information_schema.columns
WHERE table_schema = %s AND column_name LIKE %s
UNION ALL
SELECT 'index', tablename, indexname
FROM pg_indexes
WHERE schemaname = %s AND indexname LIKE %s
UNION ALL
SELECT 'constraint', table_name, constraint_name
FROM information_schema.table_constraints
WHERE table_schema = %s AND constraint_name LIKE %s
ORDER BY 1, 2, 3
"""


class CatalogInspector:
    """Introspects information_schema and pg_catalog through a connection.

    Every method issues SELECTs only.
    """

    def __init__(self, connection):
        """Initialize the inspector.

        Args:
            connection: Object exposing ``fetch_all``/``fetch_one``
        """
        self.connection = connection

    async def element_exists(
        self,
        element_type: ElementType,
        schema: str,
        name: str,
        identifier: str | None = None,
    ) -> bool:
        """Check whether an element called ``identifier`` exists.

        Args:
            element_type: Kind of element
            schema: Schema name
            name: Element name (``table.member`` for columns and constraints)
            identifier: Identifier to look for, the element's own when omitted

        Returns:
            True if the catalog has a matching object
        """
        strategy = strategy_for(element_type)
        identifier = identifier or strategy.target_identifier(name)
        query, params = strategy.probe(schema, name, identifier).count_query()
        row = await self.connection.fetch_one(query, params)
        return bool(row and row["count"])

    async def get_row_count(self, schema: str, table: str) -> int:
        """Exact row count of a table."""
        row = await self.connection.fetch_one(
            f"SELECT COUNT(*) AS count FROM {quote_ident(schema)}.{quote_ident(table)}"
        )
        return int(row["count"]) if row else 0

    async def get_scan_baseline(self, element_type: ElementType, schema: str, name: str) -> int | None:
        """Cumulative scans recorded by the statistics collector, None if unknown."""
        if element_type == ElementType.INDEX:
            row = await self.connection.fetch_one(INDEX_SCANS_QUERY, (schema, name))
        else:
            table = name.split(".", 1)[0]
            row = await self.connection.fetch_one(TABLE_SCANS_QUERY, (schema, table))
        return int(row["scan_count"]) if row and row.get("scan_count") is not None else None

    async def get_dependencies(
        self, element_type: ElementType, schema: str, name: str
    ) -> list[ElementDependency]:
        """Collect catalog objects that reference the element.

        Impact classification: objects that break or change meaning when the
        element disappears (incoming foreign keys, views, constraints relying
        on the element) are high; objects that travel with the element
        (its own outgoing foreign keys, triggers) are medium; indexes are low.
        """
        lookups = {
            ElementType.TABLE: self._table_dependencies,
            ElementType.COLUMN: self._column_dependencies,
            ElementType.INDEX: self._index_dependencies,
            ElementType.CONSTRAINT: self._constraint_dependencies,
        }
        dependencies = await lookups[ElementType(element_type)](schema, name)
        logger.debug("%s %s.%s has %d dependencies", element_type, schema, name, len(dependencies))
        return dependencies

    async def _table_dependencies(self, schema: str, table: str) -> list[ElementDependency]:
        dependencies = []

        for row in await self.connection.fetch_all(INBOUND_FOREIGN_KEYS_QUERY, (schema, table)):
            dependencies.append(ElementDependency(
                type=DependencyType.FOREIGN_KEY,
                name=row["name"],
                dependent_object=row["owner_table"],
                impact=Impact.HIGH,
                definition=row.get("definition"),
                owner_table=row["owner_table"],
            ))

        for row in await self.connection.fetch_all(OUTBOUND_FOREIGN_KEYS_QUERY, (schema, table)):
            dependencies.append(ElementDependency(
                type=DependencyType.FOREIGN_KEY,
                name=row["name"],
                dependent_object=row["referenced_table"],
                impact=Impact.MEDIUM,
                definition=row.get("definition"),
                owner_table=row["owner_table"],
            ))

        for row in await self.connection.fetch_all(TABLE_VIEWS_QUERY, (schema, table)):
            dependencies.append(ElementDependency(
                type=DependencyType.VIEW,
                name=row["name"],
                dependent_object=row["name"],
                impact=Impact.HIGH,
            ))

        for row in await self.connection.fetch_all(TABLE_TRIGGERS_QUERY, (schema, table)):
            dependencies.append(ElementDependency(
                type=DependencyType.TRIGGER,
                name=row["name"],
                dependent_object=table,
                impact=Impact.MEDIUM,
            ))

        return dependencies

    async def _column_dependencies(self, schema: str, name: str) -> list[ElementDependency]:
        table, column = name.split(".", 1)
        dependencies = []

        rows = await self.connection.fetch_all(
            COLUMN_FOREIGN_KEYS_QUERY, (schema, table, column, table, column)
        )
        for row in rows:
            inbound = row["owner_table"] != table
            dependencies.append(ElementDependency(
                type=DependencyType.FOREIGN_KEY,
                name=row["name"],
                dependent_object=row["owner_table"] if inbound else row["referenced_table"],
                impact=Impact.HIGH,
                definition=row.get("definition"),
                owner_table=row["owner_table"],
            ))

        for row in await self.connection.fetch_all(COLUMN_VIEWS_QUERY, (schema, table, column)):
            dependencies.append(ElementDependency(
                type=DependencyType.VIEW,
                name=row["name"],
                dependent_object=row["name"],
                impact=Impact.HIGH,
            ))

        for row in await self.connection.fetch_all(COLUMN_INDEXES_QUERY, (schema, table, column)):
            dependencies.append(ElementDependency(
                type=DependencyType.INDEX,
                name=row["name"],
                dependent_object=table,
                impact=Impact.LOW,
                definition=row.get("definition"),
                owner_table=table,
            ))

        return dependencies

    async def _index_dependencies(self, schema: str, index: str) -> list[ElementDependency]:
        rows = await self.connection.fetch_all(INDEX_CONSTRAINTS_QUERY, (schema, index))
        return [
            ElementDependency(
                type=DependencyType.CONSTRAINT,
                name=row["name"],
                dependent_object=row["owner_table"],
                impact=Impact.MEDIUM,
                owner_table=row["owner_table"],
            )
            for row in rows
        ]

    async def _constraint_dependencies(self, schema: str, name: str) -> list[ElementDependency]:
        table, constraint = name.split(".", 1)
        rows = await self.connection.fetch_all(
            CONSTRAINT_REFERENCES_QUERY, (schema, table, constraint)
        )
        return [
            ElementDependency(
                type=DependencyType.FOREIGN_KEY,
                name=row["name"],
                dependent_object=row["owner_table"],
                impact=Impact.HIGH,
                definition=row.get("definition"),
                owner_table=row["owner_table"],
            )
            for row in rows
        ]

    async def get_foreign_keys(self, schema: str, table: str) -> list[dict[str, Any]]:
        """Foreign keys touching ``table`` in either direction, sorted by name."""
        inbound = await self.connection.fetch_all(INBOUND_FOREIGN_KEYS_QUERY, (schema, table))
        outbound = await self.connection.fetch_all(OUTBOUND_FOREIGN_KEYS_QUERY, (schema, table))
        return sorted((dict(r) for r in [*inbound, *outbound]), key=lambda r: r["name"])

    async def find_deprecated_objects(self, schema: str = "public") -> list[dict[str, Any]]:
        """List catalog objects whose names carry the deprecation marker."""
        pattern = f"%{DEPRECATION_MARKER}%"
        rows = await self.connection.fetch_all(
            DEPRECATED_OBJECTS_QUERY,
            (schema, pattern, schema, pattern, schema, pattern, schema, pattern),
        )
        return [dict(row) for row in rows]
