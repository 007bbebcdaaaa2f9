"""Models for the soundsync protocol."""

from __future__ import annotations

__all__ = [
    "PROTOCOL_VERSION",
    "ClientMessage",
    "ControlAction",
    "DeliveryClass",
    "GroupKind",
    "Role",
    "ServerMessage",
    "core",
    "is_volatile",
    "playback",
    "room",
    "types",
]

from . import core, playback, room, types
from .types import (
    PROTOCOL_VERSION,
    ClientMessage,
    ControlAction,
    DeliveryClass,
    GroupKind,
    Role,
    ServerMessage,
)

_VOLATILE_MESSAGES: tuple[type[ServerMessage], ...] = (
    playback.AudioTimeUpdateServerMessage,
    playback.AudioStreamServerMessage,
    playback.VideoTimeUpdateServerMessage,
)


def is_volatile(message: ServerMessage) -> bool:
    """Return True if the message belongs to the best-effort delivery class."""
    return isinstance(message, _VOLATILE_MESSAGES)
