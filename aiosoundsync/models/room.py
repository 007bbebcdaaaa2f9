"""
Room and host messages for the soundsync protocol.

This module contains the messages used to create and join explicit rooms and to
move host authority between members of a group.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import ClientMessage, ServerMessage


# Client -> Server: create-room
@dataclass
class CreateRoomMessage(ClientMessage):
    """Message sent by the client to create a new room and become its host."""

    type: Literal["create-room"] = "create-room"


# Server -> Client: room-created
@dataclass
class RoomCreatedPayload(DataClassORJSONMixin):
    """The room that was created for the recipient."""

    room_code: str
    is_host: bool = True
    auto_created: bool = False
    """True when the room was created on behalf of the host by an auto-join request."""


@dataclass
class RoomCreatedMessage(ServerMessage):
    """Answer to create-room."""

    payload: RoomCreatedPayload
    type: Literal["room-created"] = "room-created"


# Client -> Server: join-room
@dataclass
class JoinRoomPayload(DataClassORJSONMixin):
    """Room to join."""

    room_code: str


@dataclass
class JoinRoomMessage(ClientMessage):
    """Message sent by the client to join an existing room."""

    payload: JoinRoomPayload
    type: Literal["join-room"] = "join-room"


@dataclass
class JoinResultPayload(DataClassORJSONMixin):
    """Outcome of a join request."""

    success: bool
    room_code: str | None = None
    error: str | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class RoomJoinResultMessage(ServerMessage):
    """Answer to join-room."""

    payload: JoinResultPayload
    type: Literal["room-join-result"] = "room-join-result"


# Client -> Server: auto-join-host
@dataclass
class AutoJoinHostPayload(DataClassORJSONMixin):
    """Host whose room should be joined."""

    host_identity: str


@dataclass
class AutoJoinHostMessage(ClientMessage):
    """Message sent by the client to join the room of a given host."""

    payload: AutoJoinHostPayload
    type: Literal["auto-join-host"] = "auto-join-host"


@dataclass
class AutoJoinResultMessage(ServerMessage):
    """Answer to auto-join-host."""

    payload: JoinResultPayload
    type: Literal["auto-join-result"] = "auto-join-result"


# Client -> Server: transfer-host
@dataclass
class TransferHostPayload(DataClassORJSONMixin):
    """Member that should become host."""

    new_host_identity: str


@dataclass
class TransferHostMessage(ClientMessage):
    """Message sent by the host to hand its authority to another member."""

    payload: TransferHostPayload
    type: Literal["transfer-host"] = "transfer-host"


@dataclass
class HostTransferResultPayload(DataClassORJSONMixin):
    """Outcome of a transfer request."""

    success: bool
    previous_host_identity: str
    new_host_identity: str | None = None
    error: str | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class HostTransferResultMessage(ServerMessage):
    """Answer to transfer-host, sent to the requester only."""

    payload: HostTransferResultPayload
    type: Literal["host-transfer-result"] = "host-transfer-result"


# Server -> Client: host-status
@dataclass
class HostStatusPayload(DataClassORJSONMixin):
    """Whether the recipient is the host of its group."""

    is_host: bool


@dataclass
class HostStatusMessage(ServerMessage):
    """Message sent whenever the recipient's host status is (re)established."""

    payload: HostStatusPayload
    type: Literal["host-status"] = "host-status"
