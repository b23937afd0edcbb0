"""Per-kind SQL strategies for deprecating schema elements.

Each element kind has one strategy producing its rename (migration) SQL,
the structural inverse (rollback) SQL and the catalog probes used to
validate that a rename took effect. The module also holds the grammar of
every statement the engine emits so plans can be syntax checked without
touching the database.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

from pg_deprecation_manager.exceptions import ValidationError
from pg_deprecation_manager.metadata.models import DeprecatedElement, ElementType, StepSqlType

_IDENT = r"[A-Za-z0-9_]+"
_IDENT_RE = re.compile(rf"^{_IDENT}$")


def quote_ident(name: str) -> str:
    """Double-quote an identifier."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def check_identifier(name: str, what: str = "identifier") -> str:
    if not name or not _IDENT_RE.match(name):
        raise ValidationError(f"Invalid {what}: {name!r}")
    return name


@dataclass(frozen=True)
class CatalogProbe:
    """A count over a catalog view filtered by equality on string columns."""
    view: str
    filters: tuple[tuple[str, str], ...]

    def count_query(self) -> tuple[str, tuple[str, ...]]:
        """Parameterized ``SELECT COUNT(*) AS count`` form."""
        where = " AND ".join(f"{column} = %s" for column, _ in self.filters)
        return (
            f"SELECT COUNT(*) AS count FROM {self.view} WHERE {where}",
            tuple(value for _, value in self.filters),
        )

    def count_expression(self) -> str:
        """Literal scalar subquery, embeddable in stored validation SQL."""
        where = " AND ".join(f"{column} = {quote_literal(value)}" for column, value in self.filters)
        return f"(SELECT COUNT(*) FROM {self.view} WHERE {where})"


def presence_validation_sql(present: CatalogProbe, absent: CatalogProbe | None = None) -> str:
    """Validation query returning ``target_count`` (must be > 0) and ``source_count`` (must be 0)."""
    sql = f"SELECT {present.count_expression()} AS target_count"
    if absent is not None:
        sql += f", {absent.count_expression()} AS source_count"
    return sql


def validation_passed(row: dict | None) -> bool:
    """Evaluate a row returned by a validation query."""
    if not row:
        return False
    if int(row.get("target_count") or 0) <= 0:
        return False
    return int(row.get("source_count") or 0) == 0


@dataclass(frozen=True)
class RenameStatement:
    """Parsed form of a rename statement."""
    kind: ElementType
    schema: str
    relation: str | None
    source: str
    target: str

    def inverse(self) -> "RenameStatement":
        return RenameStatement(self.kind, self.schema, self.relation, self.target, self.source)


class ElementStrategy(ABC):
    """SQL generation for one element kind."""

    element_type: ElementType
    estimated_seconds: int = 5

    def split(self, name: str) -> tuple[str | None, str]:
        """Split an element name into (owning table, renamed identifier)."""
        return None, check_identifier(name, f"{self.element_type.value} name")

    def target_identifier(self, name: str) -> str:
        """The identifier the rename actually changes."""
        return self.split(name)[1]

    def qualified(self, schema: str, name: str, identifier: str) -> str:
        table, _ = self.split(name)
        return f"{schema}.{table}.{identifier}" if table else f"{schema}.{identifier}"

    @abstractmethod
    def rename_sql(self, schema: str, name: str, source: str, target: str) -> str:
        """Rename ``source`` to ``target`` for the element named ``name``."""

    @abstractmethod
    def probe(self, schema: str, name: str, identifier: str) -> CatalogProbe:
        """Catalog probe counting objects of this kind called ``identifier``."""

    def migration_sql(self, element: DeprecatedElement) -> str:
        source = self.target_identifier(element.original_name)
        return self.rename_sql(element.schema, element.original_name, source, element.deprecated_name)

    def rollback_sql(self, element: DeprecatedElement) -> str:
        source = self.target_identifier(element.original_name)
        return self.rename_sql(element.schema, element.original_name, element.deprecated_name, source)

    def migration_validation_sql(self, element: DeprecatedElement) -> str:
        original = self.target_identifier(element.original_name)
        return presence_validation_sql(
            self.probe(element.schema, element.original_name, element.deprecated_name),
            self.probe(element.schema, element.original_name, original),
        )

    def rollback_validation_sql(self, element: DeprecatedElement) -> str:
        original = self.target_identifier(element.original_name)
        return presence_validation_sql(
            self.probe(element.schema, element.original_name, original),
            self.probe(element.schema, element.original_name, element.deprecated_name),
        )


class _TableMemberStrategy(ElementStrategy):
    """Columns and constraints are named ``table.member``."""

    def split(self, name: str) -> tuple[str | None, str]:
        table, sep, member = (name or "").partition(".")
        if not sep:
            raise ValidationError(
                f"{self.element_type.value} name must be 'table.{self.element_type.value}', got {name!r}"
            )
        return check_identifier(table, "table name"), check_identifier(member, f"{self.element_type.value} name")


class TableStrategy(ElementStrategy):
    element_type = ElementType.TABLE
    estimated_seconds = 30

    def rename_sql(self, schema: str, name: str, source: str, target: str) -> str:
        return f"ALTER TABLE {quote_ident(schema)}.{quote_ident(source)} RENAME TO {quote_ident(target)}"

    def probe(self, schema: str, name: str, identifier: str) -> CatalogProbe:
        return CatalogProbe(
            "information_schema.tables",
            (("table_schema", schema), ("table_name", identifier)),
        )


class ColumnStrategy(_TableMemberStrategy):
    element_type = ElementType.COLUMN

    def rename_sql(self, schema: str, name: str, source: str, target: str) -> str:
        table, _ = self.split(name)
        return (
            f"ALTER TABLE {quote_ident(schema)}.{quote_ident(table)} "
            f"RENAME COLUMN {quote_ident(source)} TO {quote_ident(target)}"
        )

    def probe(self, schema: str, name: str, identifier: str) -> CatalogProbe:
        table, _ = self.split(name)
        return CatalogProbe(
            "information_schema.columns",
            (("table_schema", schema), ("table_name", table), ("column_name", identifier)),
        )


class IndexStrategy(ElementStrategy):
    element_type = ElementType.INDEX
    estimated_seconds = 10

    def rename_sql(self, schema: str, name: str, source: str, target: str) -> str:
        return f"ALTER INDEX {quote_ident(schema)}.{quote_ident(source)} RENAME TO {quote_ident(target)}"

    def probe(self, schema: str, name: str, identifier: str) -> CatalogProbe:
        return CatalogProbe("pg_indexes", (("schemaname", schema), ("indexname", identifier)))


class ConstraintStrategy(_TableMemberStrategy):
    element_type = ElementType.CONSTRAINT

    def rename_sql(self, schema: str, name: str, source: str, target: str) -> str:
        table, _ = self.split(name)
        return (
            f"ALTER TABLE {quote_ident(schema)}.{quote_ident(table)} "
            f"RENAME CONSTRAINT {quote_ident(source)} TO {quote_ident(target)}"
        )

    def probe(self, schema: str, name: str, identifier: str) -> CatalogProbe:
        table, _ = self.split(name)
        return CatalogProbe(
            "information_schema.table_constraints",
            (("table_schema", schema), ("table_name", table), ("constraint_name", identifier)),
        )


STRATEGIES: dict[ElementType, ElementStrategy] = {
    strategy.element_type: strategy
    for strategy in (TableStrategy(), ColumnStrategy(), IndexStrategy(), ConstraintStrategy())
}


def strategy_for(element_type: ElementType | str) -> ElementStrategy:
    try:
        return STRATEGIES[ElementType(element_type)]
    except ValueError as e:
        raise ValidationError(f"Unsupported element type: {element_type!r}") from e


# Dependency restoration

def constraint_probe(schema: str, table: str, constraint: str) -> CatalogProbe:
    return STRATEGIES[ElementType.CONSTRAINT].probe(schema, f"{table}.{constraint}", constraint)


def index_probe(schema: str, index: str) -> CatalogProbe:
    return STRATEGIES[ElementType.INDEX].probe(schema, index, index)


def restore_constraint_sql(schema: str, table: str, constraint: str, definition: str) -> str:
    """Re-create a captured constraint only when it no longer exists."""
    exists = constraint_probe(schema, table, constraint).count_expression()
    return (
        "DO $$\n"
        "BEGIN\n"
        f"    IF {exists} = 0 THEN\n"
        f"        ALTER TABLE {quote_ident(schema)}.{quote_ident(table)} "
        f"ADD CONSTRAINT {quote_ident(constraint)} {definition.rstrip(';')};\n"
        "    END IF;\n"
        "END\n"
        "$$"
    )


def restore_index_sql(definition: str) -> str:
    """Turn a ``pg_get_indexdef`` statement into an idempotent one."""
    if re.search(r"\bIF NOT EXISTS\b", definition, re.IGNORECASE):
        return definition.rstrip(";")
    return re.sub(
        r"^CREATE (UNIQUE )?INDEX ",
        lambda m: f"CREATE {m.group(1) or ''}INDEX IF NOT EXISTS ",
        definition.strip().rstrip(";"),
        count=1,
        flags=re.IGNORECASE,
    )


# Statement grammar

_Q = rf'"({_IDENT})"'
_RENAME_PATTERNS: list[tuple[ElementType, re.Pattern[str]]] = [
    (ElementType.COLUMN, re.compile(rf"^ALTER TABLE {_Q}\.{_Q} RENAME COLUMN {_Q} TO {_Q}$")),
    (ElementType.CONSTRAINT, re.compile(rf"^ALTER TABLE {_Q}\.{_Q} RENAME CONSTRAINT {_Q} TO {_Q}$")),
    (ElementType.TABLE, re.compile(rf"^ALTER TABLE {_Q}\.{_Q} RENAME TO {_Q}$")),
    (ElementType.INDEX, re.compile(rf"^ALTER INDEX {_Q}\.{_Q} RENAME TO {_Q}$")),
]
RESTORE_CONSTRAINT_RE = re.compile(
    r"^DO \$\$\s+BEGIN\s+IF \(SELECT COUNT\(\*\) FROM information_schema\.table_constraints "
    r"WHERE .+?\) = 0 THEN\s+"
    rf"ALTER TABLE {_Q}\.{_Q} ADD CONSTRAINT {_Q} (?P<definition>.+?);\s+"
    r"END IF;\s+END\s+\$\$$",
    re.DOTALL,
)
RESTORE_INDEX_RE = re.compile(
    rf"^CREATE (UNIQUE )?INDEX IF NOT EXISTS \"?({_IDENT})\"? ON \"?({_IDENT})\"?\.\"?({_IDENT})\"?"
    r"(?: USING \w+)? (?P<rest>\(.+)$",
)
FORBIDDEN_STATEMENT_RE = re.compile(
    r"\b(?:DROP\s+(?:TABLE|COLUMN|INDEX|CONSTRAINT|SCHEMA|VIEW)|TRUNCATE|DELETE\s+FROM)\b", re.IGNORECASE
)


def parse_rename(sql: str) -> RenameStatement | None:
    """Parse a rename statement produced by a strategy, or None."""
    statement = sql.strip().rstrip(";")
    for kind, pattern in _RENAME_PATTERNS:
        match = pattern.match(statement)
        if not match:
            continue
        groups = match.groups()
        if kind in (ElementType.COLUMN, ElementType.CONSTRAINT):
            schema, table, source, target = groups
            return RenameStatement(kind, schema, table, source, target)
        schema, source, target = groups
        return RenameStatement(kind, schema, None, source, target)
    return None


def classify_statement(sql: str) -> StepSqlType | None:
    """Grammar check: which step type ``sql`` is, or None if unrecognized."""
    statement = sql.strip().rstrip(";")
    if parse_rename(statement):
        return StepSqlType.RENAME
    if RESTORE_CONSTRAINT_RE.match(statement):
        return StepSqlType.CREATE_CONSTRAINT
    if RESTORE_INDEX_RE.match(statement):
        return StepSqlType.CREATE_INDEX
    return None


def is_structural_inverse(migration_sql: str, rollback_sql: str) -> bool:
    """True when ``rollback_sql`` undoes exactly the rename in ``migration_sql``."""
    forward = parse_rename(migration_sql)
    backward = parse_rename(rollback_sql)
    if forward is None or backward is None:
        return False
    return backward == forward.inverse()
