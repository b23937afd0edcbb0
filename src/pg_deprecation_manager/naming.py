"""Deprecated identifier naming convention.

Deprecated elements are renamed to ``{name}_deprecated_{YYYYMMDD}_{code}``.
The shape is a stable contract read by external tooling and operators, so
``generate`` and ``parse`` must stay exact inverses and the date/reason
suffix is never truncated.
"""

import re
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum

from .exceptions import ValidationError

MAX_IDENTIFIER_LENGTH = 63
DEPRECATION_MARKER = "_deprecated_"
RESERVED_PREFIXES = ("pg_",)


class DeprecationReason(str, Enum):
    """Why an element is being deprecated."""
    UNUSED = "unused"
    PERFORMANCE = "performance"
    MIGRATION = "migration"
    REFACTOR = "refactor"
    SECURITY = "security"
    OPTIMIZATION = "optimization"


REASON_CODES: dict[DeprecationReason, str] = {
    DeprecationReason.UNUSED: "unu",
    DeprecationReason.PERFORMANCE: "perf",
    DeprecationReason.MIGRATION: "migr",
    DeprecationReason.REFACTOR: "refa",
    DeprecationReason.SECURITY: "secu",
    DeprecationReason.OPTIMIZATION: "opti",
}
CODE_REASONS: dict[str, DeprecationReason] = {code: reason for reason, code in REASON_CODES.items()}

_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")
_DEPRECATED_NAME = re.compile(
    r"^(?P<original>[A-Za-z0-9_]+?)_deprecated_(?P<date>\d{8})_(?P<code>"
    + "|".join(CODE_REASONS)
    + r")$"
)
DEPRECATED_IDENTIFIER_IN_TEXT = re.compile(
    r"\b([A-Za-z0-9_]+_deprecated_\d{8}_(?:" + "|".join(CODE_REASONS) + r"))\b"
)


@dataclass(frozen=True)
class ParsedName:
    """Result of parsing a deprecated identifier."""
    is_valid: bool
    original: str | None = None
    deprecated_on: date | None = None
    reason_code: str | None = None

    @property
    def reason(self) -> DeprecationReason | None:
        return CODE_REASONS.get(self.reason_code) if self.reason_code else None


def reason_code(reason: DeprecationReason | str) -> str:
    """Map a reason to its fixed short code."""
    try:
        return REASON_CODES[DeprecationReason(reason)]
    except ValueError as e:
        raise ValidationError(f"Unknown deprecation reason: {reason!r}") from e


def _suffix(reason: DeprecationReason | str, on: date) -> str:
    return f"{DEPRECATION_MARKER}{on:%Y%m%d}_{reason_code(reason)}"


def generate(
    original_name: str,
    reason: DeprecationReason | str,
    on: date | None = None,
) -> str:
    """Generate the deprecated identifier for ``original_name``.

    When the result would exceed the identifier ceiling the original-name
    portion is cut from the tail, keeping the suffix intact.

    Args:
        original_name: Bare identifier (no schema or table qualifier)
        reason: Deprecation reason
        on: Deprecation date, today (UTC) when omitted

    Returns:
        Deprecated identifier of at most 63 characters

    Raises:
        ValidationError: If the name or reason is malformed
    """
    if not original_name or not _IDENTIFIER.match(original_name):
        raise ValidationError(f"Invalid identifier: {original_name!r}")

    suffix = _suffix(reason, on or datetime.now(UTC).date())
    room = MAX_IDENTIFIER_LENGTH - len(suffix)
    return original_name[:room] + suffix


def validate(name: str) -> bool:
    """Check ``name`` against the full deprecated-name grammar."""
    if not name or len(name) > MAX_IDENTIFIER_LENGTH:
        return False
    match = _DEPRECATED_NAME.match(name)
    if not match:
        return False
    return _parse_date(match.group("date")) is not None


def is_deprecated_name(name: str) -> bool:
    """Weak check: the name carries the deprecation marker."""
    return DEPRECATION_MARKER in (name or "")


def parse(name: str) -> ParsedName:
    """Recover original name, date and reason code from a deprecated identifier.

    The original portion is the truncated form when ``generate`` had to
    shorten it. Malformed names yield ``ParsedName(is_valid=False)``.
    """
    if not name or len(name) > MAX_IDENTIFIER_LENGTH:
        return ParsedName(is_valid=False)
    match = _DEPRECATED_NAME.match(name)
    if not match:
        return ParsedName(is_valid=False)
    parsed_date = _parse_date(match.group("date"))
    if parsed_date is None:
        return ParsedName(is_valid=False)
    return ParsedName(
        is_valid=True,
        original=match.group("original"),
        deprecated_on=parsed_date,
        reason_code=match.group("code"),
    )


def _parse_date(value: str) -> date | None:
    try:
        return datetime.strptime(value, "%Y%m%d").date()
    except ValueError:
        return None


def deprecated_name_pattern(original_name: str) -> re.Pattern[str]:
    """Regex matching any deprecated identifier produced for ``original_name``."""
    return re.compile(
        "^" + re.escape(original_name) + r"_deprecated_\d{8}_(?:" + "|".join(CODE_REASONS) + ")$"
    )


def validate_can_deprecate(name: str) -> list[str]:
    """List the reasons ``name`` cannot be deprecated; empty when it can."""
    issues = []
    if not name:
        return ["Element name cannot be empty"]
    if is_deprecated_name(name):
        issues.append(f"{name} is already deprecated")
    if not _IDENTIFIER.match(name):
        issues.append(f"{name} contains characters outside [A-Za-z0-9_]")
    if name.startswith(RESERVED_PREFIXES):
        issues.append(f"{name} uses a reserved system prefix")
    return issues


def get_deprecation_stats(names: list[str], today: date | None = None) -> dict:
    """Summarize deprecated identifiers by reason and age."""
    today = today or datetime.now(UTC).date()
    parsed = [p for p in (parse(n) for n in names) if p.is_valid]
    by_reason = Counter(p.reason.value for p in parsed)
    dates = sorted(p.deprecated_on for p in parsed)
    ages = [(today - d).days for d in dates]

    return {
        "total": len(parsed),
        "invalid": len(names) - len(parsed),
        "by_reason": dict(by_reason),
        "oldest": dates[0].isoformat() if dates else None,
        "newest": dates[-1].isoformat() if dates else None,
        "average_age_days": round(sum(ages) / len(ages), 1) if ages else 0.0,
    }


def generate_deprecation_report(names: list[str], today: date | None = None) -> str:
    """Render a plain-text report of deprecated identifiers."""
    today = today or datetime.now(UTC).date()
    stats = get_deprecation_stats(names, today)
    lines = [
        "Deprecated schema elements",
        "==========================",
        f"Total: {stats['total']}",
    ]
    if stats["invalid"]:
        lines.append(f"Unparseable names: {stats['invalid']}")
    if stats["total"]:
        lines.append(f"Oldest: {stats['oldest']}  Newest: {stats['newest']}")
        lines.append(f"Average age: {stats['average_age_days']} days")
        lines.append("")
        lines.append("By reason:")
        for reason, count in sorted(stats["by_reason"].items()):
            lines.append(f"  {reason}: {count}")
        lines.append("")
        lines.append("Elements:")
        for name in sorted(names):
            parsed = parse(name)
            if parsed.is_valid:
                age = (today - parsed.deprecated_on).days
                lines.append(f"  {name}  (original: {parsed.original}, {age} days)")
    return "\n".join(lines)
