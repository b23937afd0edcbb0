"""Type definitions for connection state and health reporting."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ConnectionState(Enum):
    """Connection state enumeration."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class HealthStatus:
    """Health status of the engine and its database connection."""
    postgres_connected: bool
    postgres_latency_ms: float
    telemetry_running: bool = False
    pending_events: int = 0
    dropped_events: int = 0
    manual_interventions: int = 0
    timestamp: datetime = field(default_factory=datetime.now)
    postgres_error: str | None = None

    @property
    def is_healthy(self) -> bool:
        """Healthy when the database is reachable and nothing awaits an operator."""
        return self.postgres_connected and self.manual_interventions == 0
