"""Errors raised by the soundsync coordination service."""

from __future__ import annotations


class SoundSyncError(Exception):
    """Base class for all soundsync errors."""


class ProtocolError(SoundSyncError):
    """A client broke the message protocol (bad handshake, wrong version)."""


class NotAuthorizedError(SoundSyncError):
    """A non-host attempted a host-only action."""

    def __init__(self, identity: str, action: str) -> None:
        """Initialize the error for ``identity`` attempting ``action``."""
        super().__init__(f"{identity} is not the host and cannot {action}")
        self.identity = identity
        self.action = action


class RoomNotFoundError(SoundSyncError):
    """A join referenced a room code that does not exist."""

    def __init__(self, room_code: str) -> None:
        """Initialize the error for the unknown ``room_code``."""
        super().__init__("Room not found")
        self.room_code = room_code


class UnknownTargetError(SoundSyncError):
    """A transfer or auto-join targeted an identity without a live session."""

    def __init__(self, identity: str, message: str = "User not found") -> None:
        """Initialize the error for the missing ``identity``."""
        super().__init__(message)
        self.identity = identity


class CrossGroupTransferError(SoundSyncError):
    """A transfer targeted a member of a different group."""

    def __init__(self, identity: str) -> None:
        """Initialize the error for the foreign ``identity``."""
        super().__init__("Cannot transfer host to a user in a different group")
        self.identity = identity
