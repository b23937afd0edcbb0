"""Safety checks run before a deprecation plan is materialized."""

from pg_deprecation_manager.safety.checks import (
    ALL_CHECKS,
    SafetyCheckEngine,
    SafetyCheckOptions,
    blocking_failures,
    summarize_safety_checks,
)

__all__ = [
    "ALL_CHECKS",
    "SafetyCheckEngine",
    "SafetyCheckOptions",
    "blocking_failures",
    "summarize_safety_checks",
]
