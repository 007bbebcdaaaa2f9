"""Tunables of the soundsync server."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_PATH = "/soundsync"
SERVICE_TYPE = "_soundsync._tcp.local."


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Timers and limits used by SoundSyncServer."""

    host_grace: float = 10.0
    """Seconds a disconnected host keeps its session before a new host is elected."""
    follower_grace: float = 5.0
    """Seconds a disconnected follower keeps its session before it is removed."""
    probe_interval: float = 3.0
    """Seconds between a pong and the next latency probe."""
    probe_timeout: float = 10.0
    """Seconds to wait for a pong before probing again."""
    discovery_interval: float = 5.0
    """Seconds between auto-discovery broadcasts to network-inferred groups."""
    max_pending_messages: int = 512
    """Capacity of the outgoing queue of each connection."""
    volatile_backlog: int = 32
    """Pending messages above which best-effort messages are dropped."""
    path: str = DEFAULT_PATH
    """HTTP path of the WebSocket endpoint."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.host_grace < 0 or self.follower_grace < 0:
            raise ValueError("Grace periods must not be negative")
        if self.probe_interval <= 0 or self.probe_timeout <= 0:
            raise ValueError("Probe interval and timeout must be positive")
        if not 0 < self.volatile_backlog <= self.max_pending_messages:
            raise ValueError("volatile_backlog must be in range 1-max_pending_messages")
