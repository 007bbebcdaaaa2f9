"""Public interface for the SoundSync client package."""

from .buffer import (
    BufferConfig,
    BufferState,
    ChunkThrottle,
    StreamBuffer,
    StreamChunk,
    decode_pcm,
    encode_pcm,
)
from .client import (
    AudioChunkCallback,
    ControlCallback,
    HostStatusCallback,
    RoomCallback,
    SoundSyncClient,
    StreamEndCallback,
    StreamStartCallback,
    TransferCallback,
    UsersCallback,
)
from .clock_sync import (
    ClockSyncEngine,
    Correction,
    CorrectionAction,
    PredictiveSync,
    SyncConfig,
    SyncSample,
)
from .player import Capturer, Player, VirtualPlayer

__all__ = [
    "AudioChunkCallback",
    "BufferConfig",
    "BufferState",
    "Capturer",
    "ChunkThrottle",
    "ClockSyncEngine",
    "ControlCallback",
    "Correction",
    "CorrectionAction",
    "HostStatusCallback",
    "Player",
    "PredictiveSync",
    "RoomCallback",
    "SoundSyncClient",
    "StreamBuffer",
    "StreamChunk",
    "StreamEndCallback",
    "StreamStartCallback",
    "SyncConfig",
    "SyncSample",
    "TransferCallback",
    "UsersCallback",
    "VirtualPlayer",
    "decode_pcm",
    "encode_pcm",
]
