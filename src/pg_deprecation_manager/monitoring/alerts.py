"""Alerts raised when deprecated elements are accessed."""

import inspect
import itertools
import logging
from abc import ABC, abstractmethod
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pg_deprecation_manager.config import AlertConfig
from pg_deprecation_manager.metadata.models import AccessEvent, utcnow

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity, ordered info < warning < error < critical."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _ALERT_RANK[self]


_ALERT_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.CRITICAL: 3,
}

_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


class AlertType(str, Enum):
    """Alert categories."""
    DEPRECATED_ELEMENT_ACCESS = "deprecated_element_access"
    THRESHOLD_EXCEEDED = "threshold_exceeded"
    USAGE_SPIKE = "usage_spike"
    SYSTEM_ERROR = "system_error"
    ESCALATION = "escalation"
    MANUAL_INTERVENTION = "manual_intervention"


@dataclass
class Alert:
    """A single alert event."""
    id: str
    type: AlertType
    severity: AlertSeverity
    element_name: str
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    access_event: AccessEvent | None = None
    details: dict[str, Any] = field(default_factory=dict)
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.resolved_at is None

    def to_payload(self) -> dict[str, Any]:
        """Channel payload: element, severity, triggering access and time."""
        return {
            "element_name": self.element_name,
            "severity": self.severity.value,
            "access_event": self.access_event.to_dict() if self.access_event else None,
            "timestamp": self.timestamp.isoformat(),
            "id": self.id,
            "type": self.type.value,
            "message": self.message,
            "details": self.details,
        }


class AlertChannel(ABC):
    """Delivery target for alerts above a minimum severity."""

    def __init__(self, name: str, min_severity: AlertSeverity = AlertSeverity.INFO):
        self.name = name
        self.min_severity = AlertSeverity(min_severity)

    def accepts(self, alert: Alert) -> bool:
        return alert.severity.rank >= self.min_severity.rank

    @abstractmethod
    async def send(self, alert: Alert) -> None:
        """Deliver one alert."""


class ConsoleChannel(AlertChannel):
    """Writes alerts through the ``logging`` module."""

    def __init__(self, min_severity: AlertSeverity = AlertSeverity.INFO, log: logging.Logger | None = None):
        super().__init__("console", min_severity)
        self._log = log or logger

    async def send(self, alert: Alert) -> None:
        self._log.log(
            _LOG_LEVELS[alert.severity],
            "[%s] %s: %s",
            alert.type.value, alert.element_name, alert.message,
        )


class CallbackChannel(AlertChannel):
    """Hands the alert payload to a plain or async callable.

    Email, Slack and webhook transports plug in here.
    """

    def __init__(
        self,
        callback: Callable[[dict[str, Any]], Any],
        name: str = "callback",
        min_severity: AlertSeverity = AlertSeverity.INFO,
    ):
        super().__init__(name, min_severity)
        self.callback = callback

    async def send(self, alert: Alert) -> None:
        outcome = self.callback(alert.to_payload())
        if inspect.isawaitable(outcome):
            await outcome


class AlertSystem:
    """Raises, throttles, escalates and dispatches alerts."""

    def __init__(
        self,
        config: AlertConfig | None = None,
        channels: list[AlertChannel] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the alert system.

        Args:
            config: Alert settings
            channels: Delivery channels; a console channel when omitted
            clock: Source of the current time
        """
        self.config = config or AlertConfig()
        self.channels: list[AlertChannel] = channels if channels is not None else [ConsoleChannel()]
        self.clock = clock
        self._ids = itertools.count(1)
        self._history: deque[Alert] = deque(maxlen=self.config.history_limit)
        self._access_times: dict[str, deque[datetime]] = {}
        # element -> (time, severity) of the last access alert sent
        self._last_sent: dict[str, tuple[datetime, AlertSeverity]] = {}
        self._sent_times: deque[datetime] = deque()
        self._throttled = 0
        self._rate_limited = 0
        self._delivery_failures = 0

    def add_channel(self, channel: AlertChannel) -> None:
        self.channels.append(channel)

    def remove_channel(self, name: str) -> None:
        self.channels = [c for c in self.channels if c.name != name]

    async def alert_access(self, event: AccessEvent) -> Alert | None:
        """Alert on an access to a deprecated element.

        Repeated accesses to the same element inside the throttle window are
        deduplicated unless the access rate has crossed an escalation rule.

        Returns:
            The dispatched alert, or None when it was throttled or disabled
        """
        if not self.config.enabled:
            return None

        now = self.clock()
        name = event.element_name
        times = self._access_times.setdefault(name, deque())
        times.append(event.timestamp)
        horizon = max((r.window_minutes for r in self.config.escalation_rules), default=0)
        while times and times[0] < now - timedelta(minutes=horizon):
            times.popleft()

        severity = AlertSeverity.WARNING
        matched_rule = None
        for rule in self.config.escalation_rules:
            recent = sum(1 for t in times if t >= now - timedelta(minutes=rule.window_minutes))
            rule_severity = AlertSeverity(rule.severity)
            if recent >= rule.access_count and rule_severity.rank > severity.rank:
                severity = rule_severity
                matched_rule = rule

        previous = self._last_sent.get(name)
        window = timedelta(minutes=self.config.throttle_window_minutes)
        if previous and now - previous[0] < window and severity.rank <= previous[1].rank:
            self._throttled += 1
            logger.warning("Throttled access alert for %s", name)
            return None

        escalated = previous is not None and severity.rank > previous[1].rank
        if matched_rule is not None:
            message = (
                f"{name} accessed {len(times)} times; "
                f"{matched_rule.access_count} within {matched_rule.window_minutes} minutes"
            )
        else:
            message = f"Deprecated element {name} was accessed ({event.query_type.value} from {event.source})"

        alert = await self.raise_alert(
            AlertType.ESCALATION if escalated else AlertType.DEPRECATED_ELEMENT_ACCESS,
            severity,
            name,
            message,
            access_event=event,
            details={"recent_accesses": len(times)},
        )
        if alert is not None:
            self._last_sent[name] = (now, severity)
        return alert

    async def check_threshold(self, element_name: str, access_count: int, threshold: int) -> Alert | None:
        """Alert when an element's access count exceeds ``threshold``."""
        if access_count <= threshold:
            return None
        return await self.raise_alert(
            AlertType.THRESHOLD_EXCEEDED,
            AlertSeverity.ERROR,
            element_name,
            f"{element_name} accessed {access_count} times (threshold {threshold})",
            details={"access_count": access_count, "threshold": threshold},
        )

    async def usage_spike(self, element_name: str, trend: dict[str, Any]) -> Alert | None:
        """Alert when the access trend of a deprecated element is rising."""
        if trend.get("trend") != "increasing":
            return None
        return await self.raise_alert(
            AlertType.USAGE_SPIKE,
            AlertSeverity.ERROR,
            element_name,
            f"Access to {element_name} is increasing (slope {trend.get('slope', 0):.2f}/day)",
            details=trend,
        )

    async def manual_intervention(self, plan_id: str, message: str, details: dict[str, Any] | None = None) -> Alert | None:
        return await self.raise_alert(
            AlertType.MANUAL_INTERVENTION, AlertSeverity.CRITICAL, plan_id, message, details=details
        )

    async def system_error(self, component: str, error: Exception) -> Alert | None:
        return await self.raise_alert(
            AlertType.SYSTEM_ERROR,
            AlertSeverity.ERROR,
            component,
            f"{component}: {error}",
            details={"error": type(error).__name__},
        )

    async def raise_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        element_name: str,
        message: str,
        access_event: AccessEvent | None = None,
        details: dict[str, Any] | None = None,
    ) -> Alert | None:
        """Create and dispatch an alert, subject to the hourly rate limit.

        Critical alerts bypass the rate limit.
        """
        if not self.config.enabled:
            return None

        now = self.clock()
        while self._sent_times and self._sent_times[0] < now - timedelta(hours=1):
            self._sent_times.popleft()
        if severity != AlertSeverity.CRITICAL and len(self._sent_times) >= self.config.max_alerts_per_hour:
            self._rate_limited += 1
            logger.warning("Alert rate limit reached, dropping %s alert for %s", alert_type.value, element_name)
            return None

        alert = Alert(
            id=f"alert_{next(self._ids)}",
            type=alert_type,
            severity=severity,
            element_name=element_name,
            message=message,
            timestamp=now,
            access_event=access_event,
            details=details or {},
        )
        self._history.append(alert)
        self._sent_times.append(now)
        await self._dispatch(alert)
        return alert

    async def _dispatch(self, alert: Alert) -> None:
        for channel in self.channels:
            if not channel.accepts(alert):
                continue
            try:
                await channel.send(alert)
            except Exception as e:
                # one broken transport must not stop the others
                self._delivery_failures += 1
                logger.error("Alert channel %s failed: %s", channel.name, e)

    def _find(self, alert_id: str) -> Alert | None:
        return next((a for a in self._history if a.id == alert_id), None)

    def acknowledge(self, alert_id: str, user: str) -> bool:
        alert = self._find(alert_id)
        if alert is None or alert.acknowledged_at is not None:
            return False
        alert.acknowledged_by = user
        alert.acknowledged_at = self.clock()
        return True

    def resolve(self, alert_id: str, user: str) -> bool:
        alert = self._find(alert_id)
        if alert is None or not alert.is_active:
            return False
        alert.resolved_by = user
        alert.resolved_at = self.clock()
        if alert.acknowledged_at is None:
            alert.acknowledged_by = user
            alert.acknowledged_at = alert.resolved_at
        return True

    def get_active_alerts(self, min_severity: AlertSeverity = AlertSeverity.INFO) -> list[Alert]:
        floor = AlertSeverity(min_severity).rank
        return [a for a in self._history if a.is_active and a.severity.rank >= floor]

    def get_alert_history(self, element_name: str | None = None, limit: int | None = None) -> list[Alert]:
        """Alerts newest first, optionally for one element."""
        alerts = [a for a in reversed(self._history) if element_name is None or a.element_name == element_name]
        return alerts[:limit] if limit else alerts

    def get_stats(self) -> dict[str, Any]:
        alerts = list(self._history)
        return {
            "total": len(alerts),
            "active": sum(1 for a in alerts if a.is_active),
            "acknowledged": sum(1 for a in alerts if a.acknowledged_at is not None),
            "resolved": sum(1 for a in alerts if a.resolved_at is not None),
            "by_severity": dict(Counter(a.severity.value for a in alerts)),
            "by_type": dict(Counter(a.type.value for a in alerts)),
            "throttled": self._throttled,
            "rate_limited": self._rate_limited,
            "delivery_failures": self._delivery_failures,
        }
