"""Access monitoring for deprecated schema elements."""

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pg_deprecation_manager.config import DeprecationConfig
from pg_deprecation_manager.metadata.models import (
    AccessEvent,
    AccessSource,
    DeprecatedElement,
    ElementType,
    QueryType,
    SourceType,
    utcnow,
)
from pg_deprecation_manager.monitoring.alerts import AlertSystem
from pg_deprecation_manager.monitoring.store import AccessStore
from pg_deprecation_manager.monitoring.telemetry import TelemetryCollector

logger = logging.getLogger(__name__)

SAFE_AFTER = timedelta(days=7)
ACTIVE_WITHIN = timedelta(hours=24)


@dataclass
class ElementAccessStats:
    """Rolling access statistics for one element."""
    element_name: str
    element_type: ElementType
    access_count: int = 0
    last_accessed: datetime | None = None
    # accesses that count against removal candidacy (not from migrations)
    last_qualifying_access: datetime | None = None
    sources: Counter = field(default_factory=Counter)
    query_types: Counter = field(default_factory=Counter)
    hours: Counter = field(default_factory=Counter)

    @property
    def peak_hour(self) -> int | None:
        return self.hours.most_common(1)[0][0] if self.hours else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "element_name": self.element_name,
            "element_type": self.element_type.value,
            "access_count": self.access_count,
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
            "sources": dict(self.sources),
            "query_types": dict(self.query_types),
            "peak_hour": self.peak_hour,
        }


class AccessMonitor:
    """Tracks accesses to deprecated elements after migration.

    ``record_access`` is synchronous and never raises: it updates in-memory
    statistics and hands the event to the telemetry queue. Persistence and
    alerting happen on the collector's background task.
    """

    def __init__(
        self,
        store: AccessStore,
        telemetry: TelemetryCollector,
        alerts: AlertSystem | None = None,
        config: DeprecationConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.telemetry = telemetry
        self.alerts = alerts
        self.config = config or DeprecationConfig()
        self.clock = clock
        self._monitored: dict[str, DeprecatedElement] = {}
        self._aliases: dict[str, str] = {}
        self._stats: dict[str, ElementAccessStats] = {}
        self._recording_failures = 0
        if alerts is not None:
            telemetry.add_handler(alerts.alert_access)

    @property
    def enabled(self) -> bool:
        return self.config.monitoring.enabled

    @property
    def monitored_elements(self) -> list[DeprecatedElement]:
        return list(self._monitored.values())

    async def start(self) -> None:
        await self.store.initialize()
        if self.enabled:
            await self.telemetry.start()

    async def close(self) -> None:
        await self.telemetry.stop()
        await self.store.close()

    async def flush(self) -> int:
        return await self.telemetry.flush()

    def start_monitoring(self, element: DeprecatedElement) -> None:
        """Begin tracking accesses to a freshly deprecated element."""
        key = element.qualified_name
        self._monitored[key] = element
        table = element.table_name
        for alias in (
            key,
            element.deprecated_name,
            f"{element.schema}.{element.deprecated_name}",
            f"{table}.{element.deprecated_name}" if table and table != element.original_name else None,
        ):
            if alias:
                self._aliases[alias] = key
        self._stats.setdefault(key, ElementAccessStats(key, element.type))
        logger.info("Monitoring %s as %s", key, element.deprecated_name)

    def stop_monitoring(self, qualified_name: str) -> DeprecatedElement | None:
        element = self._monitored.pop(qualified_name, None)
        self._aliases = {a: k for a, k in self._aliases.items() if k != qualified_name}
        if element is not None:
            logger.info("Stopped monitoring %s", qualified_name)
        return element

    def is_monitored(self, name: str) -> bool:
        return self._resolve(name) in self._monitored

    def element_type_of(self, name: str, default: ElementType = ElementType.TABLE) -> ElementType:
        element = self._monitored.get(self._resolve(name))
        return element.type if element else default

    def _resolve(self, name: str) -> str:
        return self._aliases.get(name, name)

    def record_access(
        self,
        element_name: str,
        element_type: ElementType | str,
        source: AccessSource | SourceType | str,
        query_type: QueryType | str,
        execution_time_ms: float | None = None,
    ) -> None:
        """Record one access. Failures are logged and swallowed."""
        if not self.enabled:
            return
        try:
            if not isinstance(source, AccessSource):
                source = AccessSource(type=SourceType(source))
            event = AccessEvent(
                element_name=self._resolve(element_name),
                element_type=ElementType(element_type),
                source=source,
                query_type=QueryType(query_type),
                timestamp=self.clock(),
                execution_time_ms=execution_time_ms,
            )
            self._update(event)
            self.telemetry.submit(event)
        except Exception as e:
            self._recording_failures += 1
            logger.error("Failed to record access to %s: %s", element_name, e)

    def _update(self, event: AccessEvent) -> None:
        stats = self._stats.get(event.element_name)
        if stats is None:
            stats = self._stats[event.element_name] = ElementAccessStats(event.element_name, event.element_type)
        stats.access_count += 1
        stats.last_accessed = event.timestamp
        if event.source.type != SourceType.MIGRATION:
            stats.last_qualifying_access = event.timestamp
        stats.sources[str(event.source)] += 1
        stats.query_types[event.query_type.value] += 1
        stats.hours[event.timestamp.hour] += 1

        element = self._monitored.get(event.element_name)
        if element is not None:
            usage = element.usage_data
            usage.access_count += 1
            usage.last_accessed = event.timestamp
            if str(event.source) not in usage.access_sources:
                usage.access_sources.append(str(event.source))

    def get_stats(self, element_name: str) -> ElementAccessStats | None:
        return self._stats.get(self._resolve(element_name))

    def is_removal_candidate(self, qualified_name: str, now: datetime | None = None) -> bool:
        """True once the element has sat out a full soak window without qualifying access."""
        element = self._monitored.get(qualified_name)
        if element is None:
            return False
        now = now or self.clock()
        window_start = now - timedelta(days=self.config.soak_window_days)
        if element.deprecation_date > window_start:
            return False
        stats = self._stats.get(qualified_name)
        last = stats.last_qualifying_access if stats else None
        return last is None or last < window_start

    def get_removal_candidates(self, now: datetime | None = None) -> list[DeprecatedElement]:
        now = now or self.clock()
        return [e for key, e in self._monitored.items() if self.is_removal_candidate(key, now)]

    def _status(self, stats: ElementAccessStats | None, now: datetime) -> str:
        last = stats.last_accessed if stats else None
        if last is None or now - last >= SAFE_AFTER:
            return "safe"
        if now - last < ACTIVE_WITHIN:
            return "active"
        return "warning"

    async def get_access_statistics(self, element_name: str) -> dict[str, Any]:
        """Frequency buckets, sources and peak hour from the persisted events.

        ``daily`` holds 30 counts, ``weekly`` 4 and ``monthly`` 12, each
        indexed by age (0 is the most recent bucket).
        """
        name = self._resolve(element_name)
        now = self.clock()
        events = await self.store.query_events(name, since=now - timedelta(days=365))
        daily, weekly, monthly = [0] * 30, [0] * 4, [0] * 12
        for event in events:
            age_days = (now - event.timestamp).days
            if age_days < 30:
                daily[age_days] += 1
            if age_days // 7 < 4:
                weekly[age_days // 7] += 1
            if age_days // 30 < 12:
                monthly[age_days // 30] += 1
        hours = Counter(e.timestamp.hour for e in events)
        return {
            "element_name": name,
            "total_accesses": len(events),
            "access_frequency": {"daily": daily, "weekly": weekly, "monthly": monthly},
            "sources": dict(Counter(str(e.source) for e in events)),
            "query_types": dict(Counter(e.query_type.value for e in events)),
            "peak_access_hour": hours.most_common(1)[0][0] if hours else None,
            "last_accessed": events[-1].timestamp.isoformat() if events else None,
        }

    def get_dashboard_data(self, now: datetime | None = None) -> dict[str, Any]:
        """Per-element status and totals for operator dashboards."""
        now = now or self.clock()
        elements = []
        for key, element in sorted(self._monitored.items()):
            stats = self._stats.get(key)
            elements.append({
                "element_name": key,
                "deprecated_name": element.deprecated_name,
                "type": element.type.value,
                "deprecated_at": element.deprecation_date.isoformat(),
                "days_deprecated": (now - element.deprecation_date).days,
                "access_count": stats.access_count if stats else 0,
                "last_accessed": stats.last_accessed.isoformat() if stats and stats.last_accessed else None,
                "status": self._status(stats, now),
                "removal_candidate": self.is_removal_candidate(key, now),
            })
        statuses = Counter(e["status"] for e in elements)
        return {
            "generated_at": now.isoformat(),
            "summary": {
                "monitored": len(elements),
                "safe": statuses.get("safe", 0),
                "warning": statuses.get("warning", 0),
                "active": statuses.get("active", 0),
                "removal_candidates": sum(1 for e in elements if e["removal_candidate"]),
                "total_accesses": sum(e["access_count"] for e in elements),
                "pending_events": self.telemetry.pending,
                "dropped_events": self.telemetry.dropped,
                "recording_failures": self._recording_failures,
            },
            "elements": elements,
        }

    async def check_usage_trends(self, days: int = 14) -> list[str]:
        """Raise usage-spike alerts for monitored elements whose access is rising."""
        rising = []
        for key in list(self._monitored):
            trend = await self.telemetry.get_trend(key, days)
            if trend["trend"] == "increasing":
                rising.append(key)
                if self.alerts is not None:
                    await self.alerts.usage_spike(key, trend)
        return rising

    async def cleanup(self, now: datetime | None = None) -> int:
        """Delete persisted events past the retention period."""
        now = now or self.clock()
        cutoff = now - timedelta(days=self.config.monitoring.retention_days)
        removed = await self.store.delete_before(cutoff)
        logger.info("Removed %d access events older than %s", removed, cutoff.isoformat())
        return removed
