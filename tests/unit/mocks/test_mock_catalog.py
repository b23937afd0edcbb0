"""Tests for InMemoryCatalog."""

import pytest

from pg_deprecation_manager.mocks import InMemoryCatalog, MockDatabaseError


class TestBuilding:
    def test_table_gets_primary_key(self, shop_catalog):
        assert shop_catalog.indexes[("public", "orders_pkey")].primary
        pkey = shop_catalog.constraint("public", "orders", "orders_pkey")
        assert pkey.kind == "p"
        assert pkey.index == "orders_pkey"

    def test_foreign_key_links_referenced_index(self, shop_catalog):
        fk = shop_catalog.constraint("public", "order_items", "order_items_order_id_fkey")

        assert fk.index == "orders_pkey"
        assert shop_catalog.constraintdef(fk) == "FOREIGN KEY (order_id) REFERENCES orders(id) ON DELETE CASCADE"

    def test_foreign_key_requires_both_tables(self):
        catalog = InMemoryCatalog()
        catalog.add_table("orders")

        with pytest.raises(MockDatabaseError, match='relation "public.users" does not exist'):
            catalog.add_foreign_key("orders_user_id_fkey", "orders", ["user_id"], "users")

    def test_definitions(self, shop_catalog):
        unique = shop_catalog.constraint("public", "users", "users_email_key")
        shop_catalog.add_check("orders_total_check", "orders", "total >= 0")

        assert shop_catalog.constraintdef(unique) == "UNIQUE (email)"
        assert shop_catalog.constraintdef(
            shop_catalog.constraint("public", "orders", "orders_total_check")
        ) == "CHECK (total >= 0)"
        assert shop_catalog.indexdef(shop_catalog.indexes[("public", "users_email_key")]) == (
            "CREATE UNIQUE INDEX users_email_key ON public.users USING btree (email)"
        )

    def test_clear(self, shop_catalog):
        shop_catalog.clear()
        assert shop_catalog.structure() == {
            "tables": [], "indexes": [], "constraints": [], "views": [], "triggers": []
        }


class TestCatalogViews:
    def test_count_probes(self, shop_catalog):
        assert shop_catalog.count("information_schema.tables", {"table_name": "orders"}) == 1
        assert shop_catalog.count(
            "information_schema.columns", {"table_name": "users", "column_name": "legacy_flag"}
        ) == 1
        assert shop_catalog.count("pg_indexes", {"indexname": "idx_users_legacy_flag"}) == 1
        assert shop_catalog.count(
            "information_schema.table_constraints", {"constraint_name": "orders_user_id_fkey"}
        ) == 1

    def test_unknown_view(self, shop_catalog):
        with pytest.raises(MockDatabaseError, match='relation "pg_locks" does not exist'):
            shop_catalog.view_rows("pg_locks")


class TestRenames:
    """Renames follow PostgreSQL's OID-based references"""

    def test_rename_table_carries_dependents(self, shop_catalog):
        shop_catalog.rename_table("public", "orders", "orders_old")

        assert shop_catalog.constraint("public", "orders_old", "orders_user_id_fkey") is not None
        assert shop_catalog.constraint("public", "order_items", "order_items_order_id_fkey").ref_table == "orders_old"
        assert shop_catalog.indexes[("public", "orders_pkey")].table == "orders_old"
        assert ("audit_orders", "orders_old") in shop_catalog.structure()["triggers"]

    def test_rename_table_updates_views(self, shop_catalog):
        shop_catalog.rename_table("public", "users", "users_old")
        (view,) = shop_catalog.views
        assert view.uses == {"users_old": ["id", "email"]}

    def test_rename_table_collision(self, shop_catalog):
        with pytest.raises(MockDatabaseError, match='relation "users" already exists'):
            shop_catalog.rename_table("public", "orders", "users")

    def test_rename_column(self, shop_catalog):
        shop_catalog.rename_column("public", "users", "email", "email_old")

        assert shop_catalog.tables[("public", "users")].columns == ["id", "email_old", "name", "legacy_flag"]
        assert shop_catalog.indexes[("public", "users_email_key")].columns == ["email_old"]
        assert shop_catalog.constraint("public", "users", "users_email_key").columns == ["email_old"]
        assert shop_catalog.views[0].uses["users"] == ["id", "email_old"]

    def test_rename_referenced_column(self, shop_catalog):
        shop_catalog.rename_column("public", "orders", "id", "order_id_old")

        fk = shop_catalog.constraint("public", "order_items", "order_items_order_id_fkey")
        assert fk.ref_columns == ["order_id_old"]

    @pytest.mark.parametrize("source,target,message", [
        ("missing", "x", 'column "missing" does not exist'),
        ("email", "name", 'column "name" of relation "users" already exists'),
    ])
    def test_rename_column_errors(self, shop_catalog, source, target, message):
        with pytest.raises(MockDatabaseError, match=message):
            shop_catalog.rename_column("public", "users", source, target)

    def test_rename_index_renames_owning_constraint(self, shop_catalog):
        shop_catalog.rename_index("public", "users_email_key", "users_email_key_old")

        assert shop_catalog.constraint("public", "users", "users_email_key_old").index == "users_email_key_old"
        assert shop_catalog.constraint("public", "users", "users_email_key") is None

    def test_rename_constraint_renames_index(self, shop_catalog):
        shop_catalog.rename_constraint("public", "orders", "orders_pkey", "orders_pkey_old")

        assert ("public", "orders_pkey_old") in shop_catalog.indexes
        fk = shop_catalog.constraint("public", "order_items", "order_items_order_id_fkey")
        assert fk.index == "orders_pkey_old"

    def test_rename_missing_objects(self, shop_catalog):
        with pytest.raises(MockDatabaseError, match="does not exist"):
            shop_catalog.rename_index("public", "idx_missing", "x")
        with pytest.raises(MockDatabaseError, match='constraint "missing" for table "users" does not exist'):
            shop_catalog.rename_constraint("public", "users", "missing", "x")


class TestSnapshotsAndRecreation:
    def test_snapshot_restore(self, shop_catalog):
        before = shop_catalog.structure()
        snapshot = shop_catalog.snapshot()

        shop_catalog.rename_table("public", "orders", "orders_old")
        shop_catalog.restore(snapshot)

        assert shop_catalog.structure() == before

    def test_snapshot_is_independent(self, shop_catalog):
        snapshot = shop_catalog.snapshot()
        shop_catalog.restore(snapshot)
        shop_catalog.rename_column("public", "users", "email", "email_old")

        shop_catalog.restore(snapshot)
        assert "email" in shop_catalog.tables[("public", "users")].columns

    def test_create_index_if_missing(self, shop_catalog):
        assert not shop_catalog.create_index_if_missing("public", "idx_users_legacy_flag", "users", ["legacy_flag"], False)
        assert shop_catalog.create_index_if_missing("public", "idx_orders_total", "orders", ["total"], False)

    def test_constraint_from_definition(self, shop_catalog):
        shop_catalog.add_constraint_from_definition(
            "public", "orders", "orders_user_fk2", "FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE SET NULL"
        )
        shop_catalog.add_constraint_from_definition("public", "orders", "orders_total_key", "UNIQUE (total)")

        fk = shop_catalog.constraint("public", "orders", "orders_user_fk2")
        assert fk.on_delete == "SET NULL"
        assert fk.ref_table == "users"
        assert shop_catalog.constraint("public", "orders", "orders_total_key").kind == "u"

        with pytest.raises(MockDatabaseError, match="syntax error"):
            shop_catalog.add_constraint_from_definition("public", "orders", "bad", "EXCLUDE USING gist (x WITH &&)")

    def test_table_checksum_changes_with_structure(self, shop_catalog):
        before = shop_catalog.table_checksum("public", "users")
        shop_catalog.rename_column("public", "users", "name", "full_name")
        assert shop_catalog.table_checksum("public", "users") != before
