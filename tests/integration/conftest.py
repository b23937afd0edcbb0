"""
統合テスト用のフィクスチャとヘルパー関数

DEPRECATION_TEST_DSN が設定されている場合のみ実行する。各テストは
専用スキーマを作成し、終了時に削除する。
"""
import asyncio
import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from psycopg import AsyncConnection

from pg_deprecation_manager import DeprecationManager
from pg_deprecation_manager.config import BackupConfig, DeprecationConfig, RollbackConfig

TEST_SCHEMA = "deprecation_it"
METADATA_SCHEMA = "deprecation_it_meta"


def load_test_env():
    """Load .env.test file if it exists"""
    env_file = Path(__file__).parent.parent.parent / ".env.test"
    if env_file.exists():
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    os.environ[key] = value


# Load test environment variables at module import
load_test_env()


def pytest_collection_modifyitems(config, items):
    """DSNが無い場合は統合テストをスキップ"""
    if os.getenv("DEPRECATION_TEST_DSN"):
        return
    skip = pytest.mark.skip(reason="DEPRECATION_TEST_DSN is not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


def get_test_config() -> DeprecationConfig:
    """テスト用の設定を取得"""
    return DeprecationConfig(
        postgres_dsn=os.environ["DEPRECATION_TEST_DSN"],
        environment="test",
        metadata_schema=METADATA_SCHEMA,
        retry_backoff_factor=1.0,
        retry_max_delay=1,
        backup=BackupConfig(enabled=False),
        rollback=RollbackConfig(create_backup_before_rollback=False),
    )


async def wait_for_postgres(dsn: str, max_retries: int = 30) -> bool:
    """PostgreSQLが利用可能になるまで待機"""
    for i in range(max_retries):
        try:
            conn = await AsyncConnection.connect(dsn)
            await conn.execute("SELECT 1")
            await conn.close()
            return True
        except Exception:
            if i < max_retries - 1:
                await asyncio.sleep(1)
    return False


SHOP_SCHEMA = f"""
CREATE SCHEMA {TEST_SCHEMA};
CREATE TABLE {TEST_SCHEMA}.users (
    id SERIAL PRIMARY KEY,
    email TEXT UNIQUE,
    legacy_flag BOOLEAN
);
CREATE INDEX idx_users_legacy_flag ON {TEST_SCHEMA}.users (legacy_flag);
CREATE TABLE {TEST_SCHEMA}.orders (
    id SERIAL PRIMARY KEY,
    user_id INTEGER REFERENCES {TEST_SCHEMA}.users(id),
    total NUMERIC
);
CREATE TABLE {TEST_SCHEMA}.order_items (
    id SERIAL PRIMARY KEY,
    order_id INTEGER,
    CONSTRAINT order_items_order_id_fkey FOREIGN KEY (order_id)
        REFERENCES {TEST_SCHEMA}.orders(id) ON DELETE CASCADE
);
CREATE TABLE {TEST_SCHEMA}.user_preferences (id SERIAL PRIMARY KEY, theme TEXT);
INSERT INTO {TEST_SCHEMA}.users (email, legacy_flag)
SELECT 'user' || g || '@example.com', g % 2 = 0 FROM generate_series(1, 10) g;
"""


async def _admin_execute(dsn: str, sql: str) -> None:
    async with await AsyncConnection.connect(dsn, autocommit=True) as conn:
        await conn.execute(sql)


@pytest_asyncio.fixture
async def shop_schema() -> AsyncGenerator[str, None]:
    """テスト用スキーマを作成し、テスト後に削除"""
    dsn = os.environ["DEPRECATION_TEST_DSN"]
    if not await wait_for_postgres(dsn):
        pytest.fail("PostgreSQL service is not available")

    cleanup = f"DROP SCHEMA IF EXISTS {TEST_SCHEMA} CASCADE; DROP SCHEMA IF EXISTS {METADATA_SCHEMA} CASCADE"
    await _admin_execute(dsn, cleanup)
    await _admin_execute(dsn, SHOP_SCHEMA)
    yield TEST_SCHEMA
    await _admin_execute(dsn, cleanup)


@pytest_asyncio.fixture
async def manager(shop_schema) -> AsyncGenerator[DeprecationManager, None]:
    """DeprecationManagerのインスタンスを提供"""
    manager = DeprecationManager(get_test_config())
    async with manager:
        yield manager
