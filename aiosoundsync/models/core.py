"""Core messages for the soundsync protocol.

This module contains the messages that establish a session and keep it alive:
the handshake, the round-trip latency probe and the membership broadcasts that
tell every member of a group who else is there and who is the host.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import PROTOCOL_VERSION, ClientMessage, ServerMessage


# Client -> Server: hello
@dataclass
class HelloPayload(DataClassORJSONMixin):
    """Connect handshake sent as the first message of every connection."""

    identity: str
    """Durable identifier chosen by the client, stable across reconnects."""
    was_host: bool = False
    """True if this identity was host during its previous connection."""
    room_code: str | None = None
    """Room to rejoin, if the client was in a room before."""
    version: int = PROTOCOL_VERSION
    """Protocol version implemented by the client."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class HelloMessage(ClientMessage):
    """Message sent by the client to identify itself."""

    payload: HelloPayload
    type: Literal["hello"] = "hello"


# Server -> Client: ping / Client -> Server: pong
@dataclass
class PingPayload(DataClassORJSONMixin):
    """Latency probe."""

    timestamp: float
    """Server clock in milliseconds when the probe was sent."""


@dataclass
class PingMessage(ServerMessage):
    """Latency probe sent by the server."""

    payload: PingPayload
    type: Literal["ping"] = "ping"


@dataclass
class PongMessage(ClientMessage):
    """Answer to a ping, echoing its timestamp."""

    payload: PingPayload
    type: Literal["pong"] = "pong"


@dataclass
class PongResponsePayload(DataClassORJSONMixin):
    """Latency measured by the server for this client."""

    latency: float
    """One-way latency estimate in milliseconds."""


@dataclass
class PongResponseMessage(ServerMessage):
    """Message telling the client the latency just measured for it."""

    payload: PongResponsePayload
    type: Literal["pong-response"] = "pong-response"


# Server -> Client: users-update
@dataclass
class UserInfo(DataClassORJSONMixin):
    """Public view of one group member."""

    identity: str
    is_host: bool
    address_suffix: str
    """Last part of the member's address, the only part exposed to peers."""


@dataclass
class UsersUpdatePayload(DataClassORJSONMixin):
    """Membership of the recipient's group."""

    users: list[UserInfo]
    group_id: str


@dataclass
class UsersUpdateMessage(ServerMessage):
    """Broadcast on any membership or role change in a group."""

    payload: UsersUpdatePayload
    type: Literal["users-update"] = "users-update"


# Server -> Client: network-info
@dataclass
class NetworkInfoPayload(DataClassORJSONMixin):
    """Where the recipient is grouped."""

    network_id: str
    user_count: int
    room_code: str | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class NetworkInfoMessage(ServerMessage):
    """Message describing the network bucket and room of the recipient."""

    payload: NetworkInfoPayload
    type: Literal["network-info"] = "network-info"


# Server -> Client: auto-discovery
@dataclass
class AutoDiscoveryPayload(DataClassORJSONMixin):
    """Periodic list of the peers sharing the recipient's network bucket."""

    network_id: str
    users: list[UserInfo] = field(default_factory=list)


@dataclass
class AutoDiscoveryMessage(ServerMessage):
    """Periodic broadcast to network-inferred groups with more than one member."""

    payload: AutoDiscoveryPayload
    type: Literal["auto-discovery"] = "auto-discovery"
