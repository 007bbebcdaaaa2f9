"""Models for enum types and message base classes used by soundsync."""

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator

PROTOCOL_VERSION = 1
"""Version of the soundsync protocol implemented by this package."""


# Base message classes
@dataclass
class ClientMessage(DataClassORJSONMixin):
    """Base class for client messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


@dataclass
class ServerMessage(DataClassORJSONMixin):
    """Base class for server messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


# Enums


class Role(Enum):
    """Role of a session inside its group."""

    HOST = "host"
    """Authoritative playback position, the only member allowed to issue control commands."""
    FOLLOWER = "follower"
    """Receives timing updates and corrects its local playback to follow the host."""


class GroupKind(Enum):
    """How a group of sessions was formed."""

    ROOM = "room"
    """Explicit room created and joined by code."""
    NETWORK = "network"
    """Implicit group inferred from the origin address of the sessions."""


class ControlAction(Enum):
    """Playback commands the host can send to its group."""

    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"


class DeliveryClass(Enum):
    """Delivery guarantee requested for an outgoing server message."""

    GUARANTEED = "guaranteed"
    """Queued until sent; failure to queue marks the recipient as unresponsive."""
    VOLATILE = "volatile"
    """Best effort; dropped when the recipient has a send backlog."""
