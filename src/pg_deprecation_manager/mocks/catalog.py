"""In-memory schema catalog for mock implementations.

This module provides a zero-dependency, in-memory model of the parts of a
PostgreSQL catalog the deprecation engine reads and renames: tables,
columns, indexes, constraints, views and triggers.
"""

import copy
import hashlib
import re
from dataclasses import dataclass, field
from typing import Any


class MockDatabaseError(Exception):
    """Raised by the mock catalog where PostgreSQL would report an error."""


@dataclass
class MockTable:
    schema: str
    name: str
    columns: list[str]
    rows: int = 0
    scans: int = 0


@dataclass
class MockIndex:
    schema: str
    name: str
    table: str
    columns: list[str]
    unique: bool = False
    primary: bool = False
    scans: int = 0


@dataclass
class MockConstraint:
    schema: str
    name: str
    table: str
    # p (primary key), u (unique), f (foreign key), c (check)
    kind: str
    columns: list[str]
    ref_table: str | None = None
    ref_columns: list[str] = field(default_factory=list)
    index: str | None = None
    on_delete: str | None = None
    check: str | None = None


@dataclass
class MockView:
    schema: str
    name: str
    # table -> columns read by the view
    uses: dict[str, list[str]]


@dataclass
class MockTrigger:
    schema: str
    name: str
    table: str


class InMemoryCatalog:
    """Mutable catalog model with rename semantics matching PostgreSQL."""

    def __init__(self):
        self.tables: dict[tuple[str, str], MockTable] = {}
        self.indexes: dict[tuple[str, str], MockIndex] = {}
        self.constraints: list[MockConstraint] = []
        self.views: list[MockView] = []
        self.triggers: list[MockTrigger] = []
        # metadata tables live outside snapshots, like rows written on another connection
        self.history_rows: list[dict[str, Any]] = []
        self.access_rows: list[dict[str, Any]] = []

    def clear(self) -> None:
        """Clear all objects (for test isolation)."""
        self.__init__()

    # Building

    def add_table(
        self,
        name: str,
        columns: list[str] | tuple[str, ...] = ("id",),
        schema: str = "public",
        rows: int = 0,
        primary_key: str | None = "id",
    ) -> MockTable:
        table = MockTable(schema, name, list(columns), rows=rows)
        self.tables[(schema, name)] = table
        if primary_key:
            index = f"{name}_pkey"
            self.indexes[(schema, index)] = MockIndex(schema, index, name, [primary_key], unique=True, primary=True)
            self.constraints.append(MockConstraint(schema, index, name, "p", [primary_key], index=index))
        return table

    def add_index(
        self,
        name: str,
        table: str,
        columns: list[str] | tuple[str, ...],
        schema: str = "public",
        unique: bool = False,
    ) -> MockIndex:
        self._require_table(schema, table)
        index = MockIndex(schema, name, table, list(columns), unique=unique)
        self.indexes[(schema, name)] = index
        return index

    def add_unique(self, name: str, table: str, columns: list[str] | tuple[str, ...], schema: str = "public"):
        self.add_index(name, table, columns, schema=schema, unique=True)
        constraint = MockConstraint(schema, name, table, "u", list(columns), index=name)
        self.constraints.append(constraint)
        return constraint

    def add_foreign_key(
        self,
        name: str,
        table: str,
        columns: list[str] | tuple[str, ...],
        ref_table: str,
        ref_columns: list[str] | tuple[str, ...] = ("id",),
        schema: str = "public",
        on_delete: str | None = None,
    ) -> MockConstraint:
        self._require_table(schema, table)
        self._require_table(schema, ref_table)
        referenced = self._unique_index_on(schema, ref_table, list(ref_columns))
        constraint = MockConstraint(
            schema, name, table, "f", list(columns),
            ref_table=ref_table, ref_columns=list(ref_columns),
            index=referenced, on_delete=on_delete,
        )
        self.constraints.append(constraint)
        return constraint

    def add_check(self, name: str, table: str, expression: str, schema: str = "public") -> MockConstraint:
        constraint = MockConstraint(schema, name, table, "c", [], check=expression)
        self.constraints.append(constraint)
        return constraint

    def add_view(self, name: str, uses: dict[str, list[str]], schema: str = "public") -> MockView:
        view = MockView(schema, name, {t: list(c) for t, c in uses.items()})
        self.views.append(view)
        return view

    def add_trigger(self, name: str, table: str, schema: str = "public") -> MockTrigger:
        trigger = MockTrigger(schema, name, table)
        self.triggers.append(trigger)
        return trigger

    def _require_table(self, schema: str, table: str) -> MockTable:
        found = self.tables.get((schema, table))
        if found is None:
            raise MockDatabaseError(f'relation "{schema}.{table}" does not exist')
        return found

    def _unique_index_on(self, schema: str, table: str, columns: list[str]) -> str | None:
        for index in self.indexes.values():
            if index.schema == schema and index.table == table and index.unique and index.columns == columns:
                return index.name
        return None

    # Snapshots

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy({
            "tables": self.tables,
            "indexes": self.indexes,
            "constraints": self.constraints,
            "views": self.views,
            "triggers": self.triggers,
        })

    def restore(self, snapshot: dict[str, Any]) -> None:
        state = copy.deepcopy(snapshot)
        self.tables = state["tables"]
        self.indexes = state["indexes"]
        self.constraints = state["constraints"]
        self.views = state["views"]
        self.triggers = state["triggers"]

    def structure(self, schema: str = "public") -> dict[str, Any]:
        """Canonical description of a schema, for structural comparisons."""
        return {
            "tables": sorted(
                (t.name, tuple(t.columns)) for t in self.tables.values() if t.schema == schema
            ),
            "indexes": sorted(
                (i.name, i.table, tuple(i.columns), i.unique) for i in self.indexes.values() if i.schema == schema
            ),
            "constraints": sorted(
                (c.name, c.table, c.kind, tuple(c.columns), c.ref_table or "", tuple(c.ref_columns))
                for c in self.constraints if c.schema == schema
            ),
            "views": sorted(
                (v.name, tuple(sorted((t, tuple(c)) for t, c in v.uses.items())))
                for v in self.views if v.schema == schema
            ),
            "triggers": sorted((t.name, t.table) for t in self.triggers if t.schema == schema),
        }

    # Catalog views

    def view_rows(self, view: str) -> list[dict[str, Any]]:
        """Rows of the information_schema / pg_catalog view the engine probes."""
        if view == "information_schema.tables":
            return [{"table_schema": t.schema, "table_name": t.name} for t in self.tables.values()]
        if view == "information_schema.columns":
            return [
                {"table_schema": t.schema, "table_name": t.name, "column_name": c}
                for t in self.tables.values() for c in t.columns
            ]
        if view == "pg_indexes":
            return [
                {"schemaname": i.schema, "tablename": i.table, "indexname": i.name}
                for i in self.indexes.values()
            ]
        if view == "information_schema.table_constraints":
            return [
                {"table_schema": c.schema, "table_name": c.table, "constraint_name": c.name}
                for c in self.constraints
            ]
        raise MockDatabaseError(f'relation "{view}" does not exist')

    def count(self, view: str, filters: dict[str, str]) -> int:
        return sum(
            1 for row in self.view_rows(view)
            if all(str(row.get(k)) == v for k, v in filters.items())
        )

    def constraint(self, schema: str, table: str, name: str) -> MockConstraint | None:
        return next(
            (c for c in self.constraints if c.schema == schema and c.table == table and c.name == name),
            None,
        )

    def constraint_named(self, schema: str, name: str) -> MockConstraint | None:
        return next((c for c in self.constraints if c.schema == schema and c.name == name), None)

    def constraintdef(self, constraint: MockConstraint) -> str:
        """Text in the format of ``pg_get_constraintdef``."""
        cols = ", ".join(constraint.columns)
        if constraint.kind == "p":
            return f"PRIMARY KEY ({cols})"
        if constraint.kind == "u":
            return f"UNIQUE ({cols})"
        if constraint.kind == "c":
            return f"CHECK ({constraint.check})"
        definition = f"FOREIGN KEY ({cols}) REFERENCES {constraint.ref_table}({', '.join(constraint.ref_columns)})"
        if constraint.on_delete:
            definition += f" ON DELETE {constraint.on_delete}"
        return definition

    def indexdef(self, index: MockIndex) -> str:
        """Text in the format of ``pg_get_indexdef``."""
        unique = "UNIQUE " if index.unique else ""
        return (
            f"CREATE {unique}INDEX {index.name} ON {index.schema}.{index.table} "
            f"USING btree ({', '.join(index.columns)})"
        )

    def table_checksum(self, schema: str, table: str) -> str:
        found = self._require_table(schema, table)
        return hashlib.md5(f"{found.name}:{found.columns}:{found.rows}".encode()).hexdigest()

    # Renames

    def rename_table(self, schema: str, source: str, target: str) -> None:
        table = self._require_table(schema, source)
        if (schema, target) in self.tables:
            raise MockDatabaseError(f'relation "{target}" already exists')
        del self.tables[(schema, source)]
        table.name = target
        self.tables[(schema, target)] = table

        for index in self.indexes.values():
            if index.schema == schema and index.table == source:
                index.table = target
        for constraint in self.constraints:
            if constraint.schema != schema:
                continue
            if constraint.table == source:
                constraint.table = target
            if constraint.ref_table == source:
                constraint.ref_table = target
        for view in self.views:
            if view.schema == schema and source in view.uses:
                view.uses[target] = view.uses.pop(source)
        for trigger in self.triggers:
            if trigger.schema == schema and trigger.table == source:
                trigger.table = target

    def rename_column(self, schema: str, table: str, source: str, target: str) -> None:
        found = self._require_table(schema, table)
        if source not in found.columns:
            raise MockDatabaseError(f'column "{source}" does not exist')
        if target in found.columns:
            raise MockDatabaseError(f'column "{target}" of relation "{table}" already exists')
        found.columns[found.columns.index(source)] = target

        def swap(columns: list[str]) -> list[str]:
            return [target if c == source else c for c in columns]

        for index in self.indexes.values():
            if index.schema == schema and index.table == table:
                index.columns = swap(index.columns)
        for constraint in self.constraints:
            if constraint.schema != schema:
                continue
            if constraint.table == table:
                constraint.columns = swap(constraint.columns)
            if constraint.ref_table == table:
                constraint.ref_columns = swap(constraint.ref_columns)
        for view in self.views:
            if view.schema == schema and table in view.uses:
                view.uses[table] = swap(view.uses[table])

    def rename_index(self, schema: str, source: str, target: str) -> None:
        index = self.indexes.get((schema, source))
        if index is None:
            raise MockDatabaseError(f'relation "{schema}.{source}" does not exist')
        if (schema, target) in self.indexes:
            raise MockDatabaseError(f'relation "{target}" already exists')
        del self.indexes[(schema, source)]
        index.name = target
        self.indexes[(schema, target)] = index
        for constraint in self.constraints:
            if constraint.schema != schema or constraint.index != source:
                continue
            constraint.index = target
            # renaming a constraint's index renames the constraint too
            if constraint.kind in ("p", "u") and constraint.name == source:
                constraint.name = target

    def rename_constraint(self, schema: str, table: str, source: str, target: str) -> None:
        constraint = self.constraint(schema, table, source)
        if constraint is None:
            raise MockDatabaseError(f'constraint "{source}" for table "{table}" does not exist')
        if self.constraint(schema, table, target) is not None:
            raise MockDatabaseError(f'constraint "{target}" for relation "{table}" already exists')
        constraint.name = target
        if constraint.kind in ("p", "u") and constraint.index == source:
            self.rename_index(schema, source, target)

    # Re-creation

    def create_index_if_missing(
        self, schema: str, name: str, table: str, columns: list[str], unique: bool
    ) -> bool:
        if (schema, name) in self.indexes:
            return False
        self.add_index(name, table, columns, schema=schema, unique=unique)
        return True

    def add_constraint_from_definition(self, schema: str, table: str, name: str, definition: str) -> None:
        """Parse a ``pg_get_constraintdef`` string back into a constraint."""
        fk = re.match(
            r"^FOREIGN KEY \((?P<cols>[^)]+)\) REFERENCES (?P<ref>\w+)\((?P<refcols>[^)]+)\)"
            r"(?: ON DELETE (?P<on_delete>[A-Z ]+))?$",
            definition.strip(),
        )
        if fk:
            self.add_foreign_key(
                name, table,
                [c.strip() for c in fk.group("cols").split(",")],
                fk.group("ref"),
                [c.strip() for c in fk.group("refcols").split(",")],
                schema=schema,
                on_delete=fk.group("on_delete"),
            )
            return
        unique = re.match(r"^UNIQUE \((?P<cols>[^)]+)\)$", definition.strip())
        if unique:
            self.add_unique(name, table, [c.strip() for c in unique.group("cols").split(",")], schema=schema)
            return
        raise MockDatabaseError(f"syntax error in constraint definition: {definition}")
