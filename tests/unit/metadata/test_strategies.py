"""Tests for per-kind SQL strategies and the statement grammar."""

from datetime import UTC, datetime

import pytest

from pg_deprecation_manager.exceptions import ValidationError
from pg_deprecation_manager.metadata.models import (
    DeprecatedElement,
    ElementType,
    StepSqlType,
    UsageData,
)
from pg_deprecation_manager.metadata.strategies import (
    FORBIDDEN_STATEMENT_RE,
    CatalogProbe,
    classify_statement,
    constraint_probe,
    is_structural_inverse,
    parse_rename,
    presence_validation_sql,
    quote_ident,
    quote_literal,
    restore_constraint_sql,
    restore_index_sql,
    strategy_for,
    validation_passed,
)
from pg_deprecation_manager.naming import DeprecationReason


def make_element(element_type: ElementType, name: str, deprecated: str, schema: str = "public") -> DeprecatedElement:
    element = DeprecatedElement(
        type=element_type,
        original_name=name,
        deprecated_name=deprecated,
        schema=schema,
        deprecation_date=datetime(2025, 9, 28, tzinfo=UTC),
        reason=DeprecationReason.UNUSED,
        usage_data=UsageData(confidence_score=0.9),
        migration_sql="",
        rollback_sql="",
    )
    strategy = strategy_for(element_type)
    element.migration_sql = strategy.migration_sql(element)
    element.rollback_sql = strategy.rollback_sql(element)
    return element


class TestStrategies:
    """One strategy per element kind"""

    def test_table(self):
        element = make_element(ElementType.TABLE, "user_preferences", "user_preferences_deprecated_20250928_unu")

        assert element.migration_sql == (
            'ALTER TABLE "public"."user_preferences" RENAME TO "user_preferences_deprecated_20250928_unu"'
        )
        assert element.rollback_sql == (
            'ALTER TABLE "public"."user_preferences_deprecated_20250928_unu" RENAME TO "user_preferences"'
        )

    def test_column(self):
        element = make_element(ElementType.COLUMN, "users.legacy_flag", "legacy_flag_deprecated_20250928_unu")

        assert element.migration_sql == (
            'ALTER TABLE "public"."users" RENAME COLUMN "legacy_flag" TO "legacy_flag_deprecated_20250928_unu"'
        )
        assert element.rollback_sql == (
            'ALTER TABLE "public"."users" RENAME COLUMN "legacy_flag_deprecated_20250928_unu" TO "legacy_flag"'
        )

    def test_index(self):
        element = make_element(ElementType.INDEX, "idx_users_legacy_flag", "idx_users_legacy_flag_deprecated_20250928_perf")

        assert element.migration_sql.startswith('ALTER INDEX "public"."idx_users_legacy_flag" RENAME TO')
        assert parse_rename(element.rollback_sql).target == "idx_users_legacy_flag"

    def test_constraint(self):
        element = make_element(ElementType.CONSTRAINT, "users.users_email_key", "users_email_key_deprecated_20250928_refa")

        assert element.migration_sql == (
            'ALTER TABLE "public"."users" RENAME CONSTRAINT "users_email_key" '
            'TO "users_email_key_deprecated_20250928_refa"'
        )

    def test_migration_validation_sql(self):
        """Validation counts the new name as target and the old one as source."""
        element = make_element(ElementType.COLUMN, "users.legacy_flag", "legacy_flag_deprecated_20250928_unu")
        sql = strategy_for(ElementType.COLUMN).migration_validation_sql(element)

        assert sql == (
            "SELECT (SELECT COUNT(*) FROM information_schema.columns WHERE table_schema = 'public' "
            "AND table_name = 'users' AND column_name = 'legacy_flag_deprecated_20250928_unu') AS target_count, "
            "(SELECT COUNT(*) FROM information_schema.columns WHERE table_schema = 'public' "
            "AND table_name = 'users' AND column_name = 'legacy_flag') AS source_count"
        )

    def test_member_names_require_table(self):
        with pytest.raises(ValidationError, match="must be 'table.column'"):
            strategy_for(ElementType.COLUMN).split("legacy_flag")
        with pytest.raises(ValidationError, match="Invalid table name"):
            strategy_for("constraint").split('us"ers.users_email_key')

    def test_unsupported_type(self):
        with pytest.raises(ValidationError, match="Unsupported element type"):
            strategy_for("view")


class TestProbesAndValidation:
    """Catalog probes, quoting and validation rows"""

    def test_count_query_is_parameterized(self):
        probe = CatalogProbe("information_schema.tables", (("table_schema", "public"), ("table_name", "orders")))

        query, params = probe.count_query()

        assert query == (
            "SELECT COUNT(*) AS count FROM information_schema.tables WHERE table_schema = %s AND table_name = %s"
        )
        assert params == ("public", "orders")

    def test_quoting(self):
        assert quote_ident('we"ird') == '"we""ird"'
        assert quote_literal("o'brien") == "'o''brien'"

    def test_presence_without_absent_probe(self):
        sql = presence_validation_sql(constraint_probe("public", "orders", "orders_user_id_fkey"))
        assert sql.endswith("AS target_count")
        assert "source_count" not in sql

    @pytest.mark.parametrize("row,expected", [
        (None, False),
        ({}, False),
        ({"target_count": 1, "source_count": 0}, True),
        ({"target_count": 1}, True),
        ({"target_count": 0, "source_count": 0}, False),
        ({"target_count": 1, "source_count": 1}, False),
    ])
    def test_validation_passed(self, row, expected):
        assert validation_passed(row) is expected


class TestGrammar:
    """Statement grammar used to syntax check plans"""

    FK_DEF = "FOREIGN KEY (order_id) REFERENCES orders(id) ON DELETE CASCADE"

    def test_restore_constraint_is_guarded(self):
        sql = restore_constraint_sql("public", "order_items", "order_items_order_id_fkey", self.FK_DEF)

        assert sql.startswith("DO $$")
        assert "IF (SELECT COUNT(*) FROM information_schema.table_constraints" in sql
        assert (
            'ALTER TABLE "public"."order_items" ADD CONSTRAINT "order_items_order_id_fkey" ' + self.FK_DEF + ";"
        ) in sql
        assert classify_statement(sql) == StepSqlType.CREATE_CONSTRAINT
        assert not FORBIDDEN_STATEMENT_RE.search(sql)

    def test_restore_index_is_idempotent(self):
        sql = restore_index_sql("CREATE UNIQUE INDEX users_email_key ON public.users USING btree (email)")

        assert sql == "CREATE UNIQUE INDEX IF NOT EXISTS users_email_key ON public.users USING btree (email)"
        assert classify_statement(sql) == StepSqlType.CREATE_INDEX
        assert restore_index_sql(sql + ";") == sql

    def test_classify_rename(self):
        element = make_element(ElementType.TABLE, "orders", "orders_deprecated_20250928_unu")
        assert classify_statement(element.migration_sql) == StepSqlType.RENAME
        assert classify_statement("UPDATE orders SET total = 0") is None

    @pytest.mark.parametrize("sql", [
        "DROP TABLE users",
        "drop   column legacy_flag",
        "TRUNCATE orders",
        "DELETE FROM orders",
        "ALTER TABLE users DROP CONSTRAINT users_email_key",
    ])
    def test_forbidden_statements(self, sql):
        assert FORBIDDEN_STATEMENT_RE.search(sql)

    def test_structural_inverse(self):
        element = make_element(ElementType.INDEX, "idx_users_legacy_flag", "idx_users_legacy_flag_deprecated_20250928_unu")
        other = make_element(ElementType.INDEX, "idx_other", "idx_other_deprecated_20250928_unu")

        assert is_structural_inverse(element.migration_sql, element.rollback_sql)
        assert not is_structural_inverse(element.migration_sql, element.migration_sql)
        assert not is_structural_inverse(element.migration_sql, other.rollback_sql)
        assert not is_structural_inverse(element.migration_sql, "SELECT 1")
