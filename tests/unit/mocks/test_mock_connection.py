"""Tests for MockPostgresConnection."""

import pytest
import pytest_asyncio

from pg_deprecation_manager.exceptions import PostgresConnectionError
from pg_deprecation_manager.mocks import MockPostgresConnection
from pg_deprecation_manager.models.types import ConnectionState

RENAME = 'ALTER TABLE "public"."orders" RENAME TO "orders_old"'


@pytest_asyncio.fixture
async def connection(shop_catalog):
    connection = MockPostgresConnection(shop_catalog)
    await connection.connect()
    return connection


class TestConnectionState:
    """接続状態"""

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, shop_catalog):
        connection = MockPostgresConnection(shop_catalog)
        assert connection.pool_status == {"status": "not_initialized"}

        await connection.connect_with_retry()
        assert connection.state == ConnectionState.CONNECTED
        assert await connection.health_check() == (True, pytest.approx(0, abs=50))

        await connection.disconnect()
        assert connection.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_queries_require_connection(self, shop_catalog):
        connection = MockPostgresConnection(shop_catalog)

        with pytest.raises(PostgresConnectionError, match="Not connected"):
            await connection.fetch_all("SELECT 1")
        with pytest.raises(PostgresConnectionError, match="Not connected"):
            await connection.begin_transaction()


class TestStatements:
    """文の解釈"""

    @pytest.mark.asyncio
    async def test_rename_applies_to_catalog(self, connection, shop_catalog):
        await connection.execute(RENAME)

        assert ("public", "orders_old") in shop_catalog.tables
        assert connection.ddl_statements == 1
        assert connection.statements == [RENAME]

    @pytest.mark.asyncio
    async def test_rename_collision_surfaces_as_connection_error(self, connection):
        with pytest.raises(PostgresConnectionError, match='Query execution failed: relation "users" already exists'):
            await connection.execute('ALTER TABLE "public"."orders" RENAME TO "users"')

    @pytest.mark.asyncio
    async def test_destructive_ddl_is_rejected(self, connection):
        with pytest.raises(PostgresConnectionError, match="unsupported statement: DROP TABLE users"):
            await connection.execute("DROP TABLE users")

    @pytest.mark.asyncio
    async def test_explain_accepts_only_select(self, connection):
        (row,) = await connection.fetch_all("EXPLAIN SELECT 1")
        assert "QUERY PLAN" in row

        with pytest.raises(PostgresConnectionError, match="syntax error"):
            await connection.fetch_all("EXPLAIN DROP TABLE users")

    @pytest.mark.asyncio
    async def test_count_probe(self, connection):
        row = await connection.fetch_one(
            "SELECT COUNT(*) AS count FROM information_schema.tables WHERE table_schema = %s AND table_name = %s",
            ("public", "orders"),
        )
        assert row == {"count": 1}

    @pytest.mark.asyncio
    async def test_row_count_of_missing_table(self, connection):
        assert await connection.fetch_one('SELECT COUNT(*) AS count FROM "public"."users"') == {"count": 100}

        with pytest.raises(PostgresConnectionError, match='relation "public.ghost" does not exist'):
            await connection.fetch_one('SELECT COUNT(*) AS count FROM "public"."ghost"')

    @pytest.mark.asyncio
    async def test_restore_index_is_idempotent(self, connection, shop_catalog):
        sql = "CREATE INDEX IF NOT EXISTS idx_orders_total ON public.orders USING btree (total)"

        await connection.execute(sql)
        await connection.execute(sql)

        assert shop_catalog.indexes[("public", "idx_orders_total")].columns == ["total"]
        assert connection.ddl_statements == 2

    @pytest.mark.asyncio
    async def test_execute_many(self, connection):
        count = await connection.execute_many(
            "INSERT INTO audit.access_events (element_name, accessed_at) VALUES (%(element_name)s, %(accessed_at)s)",
            [{"element_name": "a", "accessed_at": 1}, {"element_name": "b", "accessed_at": 2}],
        )
        assert count == 2
        assert [r["element_name"] for r in connection.access_rows] == ["a", "b"]


class TestFailureInjection:
    @pytest.mark.asyncio
    async def test_fail_once(self, connection):
        connection.fail_on(r"RENAME TO")

        with pytest.raises(PostgresConnectionError, match="Simulated failure for /RENAME TO/"):
            await connection.execute(RENAME)
        await connection.execute(RENAME)

    @pytest.mark.asyncio
    async def test_custom_error_always(self, connection):
        connection.fail_on(r"^select 1$", error=TimeoutError("slow"), times=None)

        for _ in range(3):
            with pytest.raises(TimeoutError):
                await connection.fetch_all("SELECT 1")

    @pytest.mark.asyncio
    async def test_reset_stats(self, connection):
        await connection.execute(RENAME)
        connection.reset_stats()

        assert connection.statements == []
        assert connection.ddl_statements == 0


class TestTransactions:
    """トランザクションはカタログのスナップショット"""

    @pytest.mark.asyncio
    async def test_commit(self, connection, shop_catalog):
        tx = await connection.begin_transaction()
        await connection.execute(RENAME, transaction=tx)
        await connection.commit_transaction(tx)

        assert ("public", "orders_old") in shop_catalog.tables
        assert connection.commits == 1

    @pytest.mark.asyncio
    async def test_rollback_restores_catalog(self, connection, shop_catalog):
        before = shop_catalog.structure()
        tx = await connection.begin_transaction()
        await connection.execute(RENAME, transaction=tx)
        await connection.rollback_transaction(tx)

        assert shop_catalog.structure() == before
        assert connection.rollbacks == 1

    @pytest.mark.asyncio
    async def test_error_aborts_transaction(self, connection, shop_catalog):
        before = shop_catalog.structure()
        tx = await connection.begin_transaction()
        await connection.execute(RENAME, transaction=tx)
        with pytest.raises(PostgresConnectionError):
            await connection.execute("DROP TABLE users", transaction=tx)

        with pytest.raises(PostgresConnectionError, match="current transaction is aborted"):
            await connection.execute("SELECT 1", transaction=tx)
        with pytest.raises(PostgresConnectionError, match="commit rolled back"):
            await connection.commit_transaction(tx)

        assert shop_catalog.structure() == before

    @pytest.mark.asyncio
    async def test_savepoint_recovers_aborted_transaction(self, connection, shop_catalog):
        tx = await connection.begin_transaction()
        await connection.execute(RENAME, transaction=tx)
        await connection.execute("SAVEPOINT sp_1", transaction=tx)
        await connection.execute('ALTER TABLE "public"."users" RENAME TO "users_old"', transaction=tx)
        with pytest.raises(PostgresConnectionError):
            await connection.execute("DROP TABLE users", transaction=tx)

        await connection.execute("ROLLBACK TO SAVEPOINT sp_1", transaction=tx)
        await connection.commit_transaction(tx)

        assert ("public", "orders_old") in shop_catalog.tables
        assert ("public", "users") in shop_catalog.tables

    @pytest.mark.asyncio
    async def test_unknown_savepoint(self, connection):
        tx = await connection.begin_transaction()
        with pytest.raises(PostgresConnectionError, match='savepoint "sp_9" does not exist'):
            await connection.execute("ROLLBACK TO SAVEPOINT sp_9", transaction=tx)

    @pytest.mark.asyncio
    async def test_none_transaction_is_a_no_op(self, connection):
        await connection.commit_transaction(None)
        await connection.rollback_transaction(None)
        assert connection.commits == connection.rollbacks == 0
