"""SoundSync: synchronized group playback over WebSockets."""

from __future__ import annotations

# Re-export client library for easy import
from aiosoundsync.client import (
    BufferConfig,
    Capturer,
    ClockSyncEngine,
    Player,
    PredictiveSync,
    SoundSyncClient,
    StreamBuffer,
    SyncConfig,
    VirtualPlayer,
)
from aiosoundsync.models import PROTOCOL_VERSION

__all__ = [
    "PROTOCOL_VERSION",
    "BufferConfig",
    "Capturer",
    "ClockSyncEngine",
    "Player",
    "PredictiveSync",
    "SoundSyncClient",
    "StreamBuffer",
    "SyncConfig",
    "VirtualPlayer",
]
