"""Tests for the deprecated identifier naming convention."""

import re
from datetime import date

import pytest

from pg_deprecation_manager import naming
from pg_deprecation_manager.exceptions import ValidationError
from pg_deprecation_manager.naming import DeprecationReason


class TestGenerate:
    """generate()"""

    def test_unused_table(self):
        """Deprecating user_preferences on 2025-09-28 as unused."""
        name = naming.generate("user_preferences", DeprecationReason.UNUSED, date(2025, 9, 28))

        assert re.fullmatch(r"user_preferences_deprecated_20250928_unu", name)

    @pytest.mark.parametrize("reason,code", [
        ("unused", "unu"),
        ("performance", "perf"),
        ("migration", "migr"),
        ("refactor", "refa"),
        ("security", "secu"),
        ("optimization", "opti"),
    ])
    def test_reason_codes(self, reason, code):
        assert naming.generate("orders", reason, date(2025, 1, 2)) == f"orders_deprecated_20250102_{code}"

    def test_long_names_are_truncated_from_the_tail(self):
        """The suffix always survives; the original portion is cut to fit 63 characters."""
        original = "a" * 40 + "_tail_that_will_be_cut"
        name = naming.generate(original, "performance", date(2025, 9, 28))

        suffix = "_deprecated_20250928_perf"
        assert len(name) == naming.MAX_IDENTIFIER_LENGTH
        assert name == original[:naming.MAX_IDENTIFIER_LENGTH - len(suffix)] + suffix
        assert naming.validate(name)
        assert naming.parse(name).original == "a" * 38

    def test_short_names_are_not_padded(self):
        name = naming.generate("t", "unused", date(2025, 9, 28))
        assert name == "t_deprecated_20250928_unu"

    @pytest.mark.parametrize("bad", ["", "has space", "semi;colon", 'quo"te', "dash-name"])
    def test_invalid_identifier(self, bad):
        with pytest.raises(ValidationError, match="Invalid identifier"):
            naming.generate(bad, "unused", date(2025, 9, 28))

    def test_unknown_reason(self):
        with pytest.raises(ValidationError, match="Unknown deprecation reason"):
            naming.generate("orders", "boredom", date(2025, 9, 28))


class TestValidateAndParse:
    """validate() / parse()"""

    def test_parse_inverts_generate(self):
        name = naming.generate("user_preferences", "security", date(2024, 2, 29))
        parsed = naming.parse(name)

        assert parsed.is_valid
        assert parsed.original == "user_preferences"
        assert parsed.deprecated_on == date(2024, 2, 29)
        assert parsed.reason_code == "secu"
        assert parsed.reason == DeprecationReason.SECURITY

    def test_parse_keeps_inner_markers_in_original(self):
        """The original portion is everything before the last marker."""
        parsed = naming.parse("a_deprecated_b_deprecated_20250101_unu")
        assert parsed.is_valid
        assert parsed.original == "a_deprecated_b"

    @pytest.mark.parametrize("bad", [
        "",
        "orders",
        "orders_deprecated_2025928_unu",
        "orders_deprecated_20250928_xyz",
        "orders_deprecated_20251301_unu",
        "orders_deprecated_20250230_unu",
        "orders_deprecated_20250928_unu_extra",
        "x" * 60 + "_deprecated_20250928_unu",
    ])
    def test_malformed_names(self, bad):
        assert naming.validate(bad) is False
        assert naming.parse(bad).is_valid is False
        assert naming.parse(bad).reason is None

    def test_is_deprecated_name_is_a_weak_check(self):
        assert naming.is_deprecated_name("orders_deprecated_bogus")
        assert not naming.is_deprecated_name("orders")
        assert not naming.is_deprecated_name(None)

    def test_deprecated_name_pattern(self):
        pattern = naming.deprecated_name_pattern("user_preferences")
        assert pattern.match("user_preferences_deprecated_20250928_unu")
        assert not pattern.match("other_deprecated_20250928_unu")


class TestValidateCanDeprecate:
    """validate_can_deprecate()"""

    def test_clean_name(self):
        assert naming.validate_can_deprecate("user_preferences") == []

    def test_empty(self):
        assert naming.validate_can_deprecate("") == ["Element name cannot be empty"]

    def test_already_deprecated(self):
        issues = naming.validate_can_deprecate("orders_deprecated_20250928_unu")
        assert any("already deprecated" in i for i in issues)

    def test_bad_characters_and_reserved_prefix(self):
        assert any("characters outside" in i for i in naming.validate_can_deprecate("bad name"))
        assert any("reserved system prefix" in i for i in naming.validate_can_deprecate("pg_stats_copy"))


class TestStatsAndReport:
    """get_deprecation_stats() / generate_deprecation_report()"""

    NAMES = [
        "orders_deprecated_20250901_unu",
        "users_deprecated_20250911_perf",
        "idx_x_deprecated_20250921_unu",
        "not_a_deprecated_name",
    ]

    def test_stats(self):
        stats = naming.get_deprecation_stats(self.NAMES, today=date(2025, 9, 28))

        assert stats["total"] == 3
        assert stats["invalid"] == 1
        assert stats["by_reason"] == {"unused": 2, "performance": 1}
        assert stats["oldest"] == "2025-09-01"
        assert stats["newest"] == "2025-09-21"
        assert stats["average_age_days"] == 17.0

    def test_stats_empty(self):
        stats = naming.get_deprecation_stats([], today=date(2025, 9, 28))
        assert stats["total"] == 0
        assert stats["oldest"] is None
        assert stats["average_age_days"] == 0.0

    def test_report(self):
        report = naming.generate_deprecation_report(self.NAMES, today=date(2025, 9, 28))

        assert "Total: 3" in report
        assert "Unparseable names: 1" in report
        assert "  unused: 2" in report
        assert "orders_deprecated_20250901_unu  (original: orders, 27 days)" in report
