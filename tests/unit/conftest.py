"""Shared fixtures for unit tests."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from pg_deprecation_manager import DeprecationManager
from pg_deprecation_manager.mocks import InMemoryCatalog, create_mock_manager

FIXED_NOW = datetime(2025, 9, 28, 12, 0, tzinfo=UTC)


class FakeClock:
    """Controllable clock passed as ``clock=`` to engine components."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def shop_catalog() -> InMemoryCatalog:
    """Small shop schema.

    - users: 100 rows, unique email, index on legacy_flag, read by view active_users
    - orders: 50 rows, references users, referenced by order_items, has a trigger
    - user_preferences: empty, nothing depends on it
    - legacy_reports: empty, referenced by two other tables
    """
    catalog = InMemoryCatalog()
    catalog.add_table("users", ["id", "email", "name", "legacy_flag"], rows=100)
    catalog.add_unique("users_email_key", "users", ["email"])
    catalog.add_index("idx_users_legacy_flag", "users", ["legacy_flag"])
    catalog.add_view("active_users", {"users": ["id", "email"]})

    catalog.add_table("orders", ["id", "user_id", "total"], rows=50)
    catalog.add_foreign_key("orders_user_id_fkey", "orders", ["user_id"], "users")
    catalog.add_table("order_items", ["id", "order_id", "quantity"], rows=200)
    catalog.add_foreign_key(
        "order_items_order_id_fkey", "order_items", ["order_id"], "orders", on_delete="CASCADE"
    )
    catalog.add_trigger("audit_orders", "orders")

    catalog.add_table("user_preferences", ["id", "theme"])

    catalog.add_table("legacy_reports", ["id", "body"])
    catalog.add_table("report_exports", ["id", "report_id"])
    catalog.add_foreign_key("report_exports_report_id_fkey", "report_exports", ["report_id"], "legacy_reports")
    catalog.add_table("report_subscriptions", ["id", "report_id"])
    catalog.add_foreign_key(
        "report_subscriptions_report_id_fkey", "report_subscriptions", ["report_id"], "legacy_reports"
    )
    return catalog


@pytest_asyncio.fixture
async def manager(shop_catalog, clock) -> AsyncGenerator[DeprecationManager, None]:
    """Initialized manager over the shop schema."""
    manager = create_mock_manager(shop_catalog, clock=clock)
    async with manager:
        yield manager
