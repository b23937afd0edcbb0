"""Telemetry collection for accesses to deprecated elements.

Producers hand events to a bounded queue and return immediately; a
background task drains the queue in batches into an :class:`AccessStore`
and fans each event out to registered handlers (the alert system).
"""

import asyncio
import csv
import io
import json
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta
from typing import Any

from pg_deprecation_manager.config import MonitoringConfig
from pg_deprecation_manager.metadata.models import AccessEvent, utcnow
from pg_deprecation_manager.monitoring.store import AccessStore

logger = logging.getLogger(__name__)

EventHandler = Callable[[AccessEvent], Awaitable[Any]]

STABLE_SLOPE = 0.1
HIGH_RISK_ACCESSES = 100
MEDIUM_RISK_ACCESSES = 10


def regression_slope(values: list[float]) -> float:
    """Least-squares slope of ``values`` against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = n * (n - 1) / 2
    sum_y = sum(values)
    sum_xy = sum(i * y for i, y in enumerate(values))
    sum_x2 = sum(i * i for i in range(n))
    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


def classify_trend(slope: float) -> str:
    if abs(slope) < STABLE_SLOPE:
        return "stable"
    return "increasing" if slope > 0 else "decreasing"


def classify_risk(access_count: int) -> str:
    if access_count > HIGH_RISK_ACCESSES:
        return "high"
    if access_count > MEDIUM_RISK_ACCESSES:
        return "medium"
    return "low"


class TelemetryCollector:
    """Bounded-queue collector with a background consumer task."""

    def __init__(
        self,
        store: AccessStore,
        config: MonitoringConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or MonitoringConfig()
        self.clock = clock
        self._queue: asyncio.Queue[AccessEvent | None] = asyncio.Queue(maxsize=self.config.queue_size)
        self._task: asyncio.Task | None = None
        self._handlers: list[EventHandler] = []
        self._processed = 0
        self._dropped = 0
        self._store_failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def dropped(self) -> int:
        return self._dropped

    def add_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def submit(self, event: AccessEvent) -> bool:
        """Enqueue an event without waiting.

        Returns:
            False when the queue is full and the event was dropped
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "Telemetry queue full (%d), dropped access event for %s",
                self.config.queue_size, event.element_name
            )
            return False
        return True

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._consume(), name="telemetry-consumer")
        logger.info("Telemetry collector started")

    async def stop(self) -> None:
        """Drain everything queued so far, then stop the consumer."""
        if self.running:
            await self._queue.put(None)
            await self._task
        self._task = None
        await self.flush()
        logger.info("Telemetry collector stopped (%d processed, %d dropped)", self._processed, self._dropped)

    async def flush(self) -> int:
        """Process every queued event now. Returns the number processed."""
        count = 0
        batch: list[AccessEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is None:
                continue
            batch.append(item)
            if len(batch) >= self.config.batch_size:
                count += await self._process(batch)
                batch = []
        if batch:
            count += await self._process(batch)
        return count

    async def _consume(self) -> None:
        loop = asyncio.get_running_loop()
        stopping = False
        while not stopping:
            item = await self._queue.get()
            if item is None:
                break
            batch = [item]
            deadline = loop.time() + self.config.flush_interval_seconds
            while len(batch) < self.config.batch_size:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    item = await asyncio.wait_for(self._queue.get(), remaining)
                except TimeoutError:
                    break
                if item is None:
                    stopping = True
                    break
                batch.append(item)
            await self._process(batch)

    async def _process(self, batch: list[AccessEvent]) -> int:
        try:
            await self.store.save_events(batch)
        except Exception as e:
            self._store_failures += len(batch)
            logger.error("Failed to persist %d access events: %s", len(batch), e)

        for event in batch:
            for handler in self._handlers:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error("Telemetry handler failed for %s: %s", event.element_name, e)
        self._processed += len(batch)
        return len(batch)

    # Aggregation

    def _daily_counts(self, events: list[AccessEvent], start: date, days: int) -> list[int]:
        counts = Counter(e.timestamp.date() for e in events)
        return [counts.get(start + timedelta(days=i), 0) for i in range(days)]

    async def get_element_metrics(self, element_name: str, days: int = 30) -> dict[str, Any]:
        """Access metrics for one element over the last ``days`` days."""
        now = self.clock()
        events = await self.store.query_events(element_name, since=now - timedelta(days=days))
        timings = [e.execution_time_ms for e in events if e.execution_time_ms is not None]
        start = (now - timedelta(days=days - 1)).date()
        return {
            "element_name": element_name,
            "period_days": days,
            "total_accesses": len(events),
            "daily": dict(zip(
                [(start + timedelta(days=i)).isoformat() for i in range(days)],
                self._daily_counts(events, start, days),
                strict=True,
            )),
            "sources": dict(Counter(str(e.source) for e in events)),
            "query_types": dict(Counter(e.query_type.value for e in events)),
            "average_execution_time_ms": sum(timings) / len(timings) if timings else None,
            "first_access": events[0].timestamp.isoformat() if events else None,
            "last_access": events[-1].timestamp.isoformat() if events else None,
        }

    async def get_summary(self) -> dict[str, Any]:
        """Current collector state and the last 24 hours of traffic."""
        now = self.clock()
        events = await self.store.query_events(since=now - timedelta(hours=24))
        per_element = Counter(e.element_name for e in events)
        return {
            "running": self.running,
            "pending": self.pending,
            "processed": self._processed,
            "dropped": self._dropped,
            "store_failures": self._store_failures,
            "accesses_last_24h": len(events),
            "elements_accessed_last_24h": len(per_element),
            "top_elements": per_element.most_common(10),
        }

    async def get_trend(self, element_name: str, days: int = 14) -> dict[str, Any]:
        """Linear trend of daily access counts."""
        now = self.clock()
        start = (now - timedelta(days=days - 1)).date()
        events = await self.store.query_events(element_name, since=now - timedelta(days=days))
        counts = self._daily_counts(events, start, days)
        slope = regression_slope(counts)
        return {
            "element_name": element_name,
            "days": days,
            "daily_counts": counts,
            "slope": slope,
            "trend": classify_trend(slope),
        }

    async def analyze_trends(self, days: int = 14) -> dict[str, Any]:
        """Trend of every element accessed in the window."""
        now = self.clock()
        events = await self.store.query_events(since=now - timedelta(days=days))
        names = sorted({e.element_name for e in events})
        trends = {name: await self.get_trend(name, days) for name in names}
        by_label = Counter(t["trend"] for t in trends.values())
        return {
            "period_days": days,
            "elements": {name: t["trend"] for name, t in trends.items()},
            "risk_elements": [name for name, t in trends.items() if t["trend"] == "increasing"],
            "summary": dict(by_label),
        }

    async def export(self, fmt: str | None = None, days: int = 30) -> dict[str, str]:
        """Render per-element access counts as JSON and/or CSV text.

        Args:
            fmt: json, csv or both; the configured format when omitted
            days: Window to export

        Returns:
            Mapping of format to rendered document
        """
        fmt = fmt or self.config.export_format
        now = self.clock()
        events = await self.store.query_events(since=now - timedelta(days=days))
        counts = Counter(e.element_name for e in events)
        last_seen: dict[str, datetime] = {}
        for event in events:
            last_seen[event.element_name] = event.timestamp

        rows = [
            {
                "element_name": name,
                "access_count": count,
                "last_access": last_seen[name].isoformat(),
                "risk": classify_risk(count),
            }
            for name, count in sorted(counts.items())
        ]
        high = [r["element_name"] for r in rows if r["risk"] == "high"]

        output: dict[str, str] = {}
        if fmt in ("json", "both"):
            output["json"] = json.dumps({
                "generated_at": now.isoformat(),
                "period_days": days,
                "total_accesses": len(events),
                "elements": rows,
                "risk_assessment": {r["element_name"]: r["risk"] for r in rows},
                "recommendations": (
                    [f"Review high-risk elements: {', '.join(high)}"] if high else []
                ),
            }, indent=2)
        if fmt in ("csv", "both"):
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=["element_name", "access_count", "last_access", "risk"])
            writer.writeheader()
            writer.writerows(rows)
            output["csv"] = buffer.getvalue()
        return output
