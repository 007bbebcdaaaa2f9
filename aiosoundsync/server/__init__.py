"""
SoundSync server implementation to coordinate synchronized playback.

SoundSyncServer is the relay between clients, responsible for:
- Tracking sessions across reconnects
- Partitioning sessions into rooms and network-inferred groups
- Electing exactly one host per group and failing over when it disappears
- Relaying host timing, control and media to the rest of the group
"""

__all__ = [
    "ClientConnection",
    "ElectionState",
    "Group",
    "GroupDeletedEvent",
    "GroupKey",
    "GroupManager",
    "HostChange",
    "HostChangedEvent",
    "HostElection",
    "LatencyEstimator",
    "ServerConfig",
    "Session",
    "SessionAddedEvent",
    "SessionRemovedEvent",
    "SessionStore",
    "SoundSyncEvent",
    "SoundSyncServer",
    "StreamRelay",
]

from .config import ServerConfig
from .connection import ClientConnection
from .election import ElectionState, HostChange, HostElection
from .group import Group, GroupKey, GroupManager
from .latency import LatencyEstimator
from .relay import StreamRelay
from .server import (
    GroupDeletedEvent,
    HostChangedEvent,
    SessionAddedEvent,
    SessionRemovedEvent,
    SoundSyncEvent,
    SoundSyncServer,
)
from .session import Session, SessionStore
