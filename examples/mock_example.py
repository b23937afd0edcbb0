"""Example usage of the mock deprecation manager.

This example demonstrates the plan / execute / monitor / rollback cycle
on an in-memory catalog, without requiring a database.
"""

import asyncio

from pg_deprecation_manager import SafetyCheckFailure
from pg_deprecation_manager.mocks import InMemoryCatalog, create_mock_manager


def build_catalog() -> InMemoryCatalog:
    catalog = InMemoryCatalog()
    catalog.add_table("users", ["id", "email", "legacy_flag"], rows=100)
    catalog.add_index("idx_users_legacy_flag", "users", ["legacy_flag"])
    catalog.add_table("orders", ["id", "user_id", "total"], rows=50)
    catalog.add_foreign_key("orders_user_id_fkey", "orders", ["user_id"], "users")
    catalog.add_table("user_preferences", ["id", "theme"])
    return catalog


async def example_deprecate_and_rollback():
    """Deprecate an unused table, then restore it."""
    print("=== Deprecate and Roll Back ===")

    catalog = build_catalog()
    async with create_mock_manager(catalog) as manager:
        plan = await manager.plan([
            {"type": "table", "name": "user_preferences", "reason": "unused", "confidence_score": 0.95}
        ])
        print(f"Plan {plan.id}: risk {plan.metadata.risk_level.value}")

        result = await manager.execute(plan, principal="example")
        element = plan.elements[0]
        print(f"Renamed {element.qualified_name} -> {element.deprecated_name} ({result.duration_ms}ms)")

        rollback = await manager.rollback(plan, principal="example")
        print(f"Rolled back {rollback.completed_steps}/{rollback.total_steps} steps")
        print(f"Original name restored: {('public', 'user_preferences') in catalog.tables}")


async def example_safety_gate():
    """A referenced table is rejected before any DDL runs."""
    print("\n=== Safety Gate ===")

    async with create_mock_manager(build_catalog()) as manager:
        try:
            await manager.plan([{"type": "table", "name": "users", "reason": "unused", "confidence_score": 0.9}])
        except SafetyCheckFailure as e:
            for failure in e.failures:
                print(f"Blocked: {failure.check} ({failure.severity.value}) {failure.message}")


async def example_access_monitoring():
    """Accesses to a deprecated column show up on the dashboard."""
    print("\n=== Access Monitoring ===")

    async with create_mock_manager(build_catalog()) as manager:
        plan = await manager.plan([
            {"type": "column", "name": "users.legacy_flag", "reason": "unused", "confidence_score": 0.95}
        ])
        manager.approve(plan, "reviewer")
        await manager.execute(plan)

        deprecated = plan.elements[0].deprecated_name
        for _ in range(3):
            manager.record_access(deprecated, source="application")
        await manager.monitor.flush()

        for row in manager.get_dashboard_data()["elements"]:
            print(f"{row['element_name']}: {row['access_count']} accesses, status {row['status']}")
        print(f"Alerts raised: {manager.alerts.get_stats()['total']}")


async def main():
    """Run all examples."""
    await example_deprecate_and_rollback()
    await example_safety_gate()
    await example_access_monitoring()


if __name__ == "__main__":
    asyncio.run(main())
