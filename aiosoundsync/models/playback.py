"""
Playback messages for the soundsync protocol.

This module contains the host-originated messages that drive synchronized
playback: control commands, timing updates, streamed media chunks and the
lifecycle announcements of a live stream. The host sends the client variant of
each message, the server relays the server variant to the rest of the group.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import ClientMessage, ControlAction, ServerMessage


# audio-control
@dataclass
class AudioControlPayload(DataClassORJSONMixin):
    """Playback command issued by the host."""

    action: ControlAction
    file_url: str | None = None
    """Resolvable URL of the media to play, for play commands."""
    time: float | None = None
    """Target position in seconds, required for seek."""

    def __post_init__(self) -> None:
        """Validate field values and action consistency."""
        if self.action == ControlAction.SEEK and self.time is None:
            raise ValueError("Time must be provided when action is 'seek'")
        if self.time is not None and self.time < 0:
            raise ValueError(f"Time must not be negative, got {self.time}")

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class AudioControlClientMessage(ClientMessage):
    """Control command sent by the host."""

    payload: AudioControlPayload
    type: Literal["audio-control"] = "audio-control"


@dataclass
class AudioControlServerMessage(ServerMessage):
    """Control command relayed verbatim to the group."""

    payload: AudioControlPayload
    type: Literal["audio-control"] = "audio-control"


# audio-time-update
@dataclass
class AudioTimeUpdateClientPayload(DataClassORJSONMixin):
    """Playback position reported by the host."""

    current_time: float
    """Host playback position in seconds."""
    client_timestamp: float
    """Host wall clock in milliseconds when the position was sampled."""
    precision: bool = False
    """Set by hosts running the high-frequency sync loop."""


@dataclass
class AudioTimeUpdateClientMessage(ClientMessage):
    """Timing update sent by the host."""

    payload: AudioTimeUpdateClientPayload
    type: Literal["audio-time-update"] = "audio-time-update"


@dataclass
class AudioTimeUpdateServerPayload(DataClassORJSONMixin):
    """Host position as relayed to one specific follower."""

    current_time: float
    """Host playback position in seconds."""
    server_timestamp: float
    """Server wall clock in milliseconds when the update arrived."""
    latency: float
    """Latest one-way latency measured for the recipient, in milliseconds."""
    server_delay: float
    """Milliseconds between the host sampling the position and the server receiving it."""


@dataclass
class AudioTimeUpdateServerMessage(ServerMessage):
    """Timing update relayed to a follower."""

    payload: AudioTimeUpdateServerPayload
    type: Literal["audio-time-update"] = "audio-time-update"


# audio-stream
@dataclass
class AudioStreamClientPayload(DataClassORJSONMixin):
    """One captured media chunk."""

    audio_chunk_encoded: str
    """Base64 encoded 16-bit little endian PCM."""
    timestamp: float
    """Host wall clock in milliseconds when the chunk was captured."""


@dataclass
class AudioStreamClientMessage(ClientMessage):
    """Media chunk sent by the host."""

    payload: AudioStreamClientPayload
    type: Literal["audio-stream"] = "audio-stream"


@dataclass
class AudioStreamServerPayload(DataClassORJSONMixin):
    """Media chunk as relayed to the group."""

    audio_chunk_encoded: str
    timestamp: float
    server_timestamp: float
    server_delay: float


@dataclass
class AudioStreamServerMessage(ServerMessage):
    """Media chunk relayed to the group."""

    payload: AudioStreamServerPayload
    type: Literal["audio-stream"] = "audio-stream"


# tab-stream-start / tab-stream-stop
@dataclass
class TabStreamStartPayload(DataClassORJSONMixin):
    """Announcement of a live stream."""

    description: str = "Live stream"
    sample_rate: int = 48_000
    channel_count: int = 1


@dataclass
class TabStreamStartClientMessage(ClientMessage):
    """Live stream started by the host."""

    payload: TabStreamStartPayload
    type: Literal["tab-stream-start"] = "tab-stream-start"


@dataclass
class TabStreamStartServerMessage(ServerMessage):
    """Live stream announcement relayed to the group."""

    payload: TabStreamStartPayload
    type: Literal["tab-stream-start"] = "tab-stream-start"


@dataclass
class TabStreamStopClientMessage(ClientMessage):
    """Live stream stopped by the host."""

    type: Literal["tab-stream-stop"] = "tab-stream-stop"


@dataclass
class TabStreamStopServerMessage(ServerMessage):
    """Live stream stop relayed to the group."""

    type: Literal["tab-stream-stop"] = "tab-stream-stop"


# video-* messages for an embedded video source
@dataclass
class VideoStreamStartPayload(DataClassORJSONMixin):
    """Embedded video the host started."""

    video_id: str
    start_time: float = 0.0


@dataclass
class VideoStreamStartClientMessage(ClientMessage):
    """Embedded video started by the host."""

    payload: VideoStreamStartPayload
    type: Literal["video-stream-start"] = "video-stream-start"


@dataclass
class VideoStreamStartServerMessage(ServerMessage):
    """Embedded video start relayed to the group."""

    payload: VideoStreamStartPayload
    type: Literal["video-stream-start"] = "video-stream-start"


@dataclass
class VideoControlPayload(DataClassORJSONMixin):
    """Playback command for the embedded video."""

    action: ControlAction
    time: float | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class VideoControlClientMessage(ClientMessage):
    """Embedded video command sent by the host."""

    payload: VideoControlPayload
    type: Literal["video-control"] = "video-control"


@dataclass
class VideoControlServerMessage(ServerMessage):
    """Embedded video command relayed to the group."""

    payload: VideoControlPayload
    type: Literal["video-control"] = "video-control"


@dataclass
class VideoTimeUpdatePayload(DataClassORJSONMixin):
    """Embedded video position reported by the host."""

    current_time: float
    client_timestamp: float


@dataclass
class VideoTimeUpdateClientMessage(ClientMessage):
    """Embedded video position sent by the host."""

    payload: VideoTimeUpdatePayload
    type: Literal["video-time-update"] = "video-time-update"


@dataclass
class VideoTimeUpdateServerMessage(ServerMessage):
    """Embedded video position relayed to the group."""

    payload: VideoTimeUpdatePayload
    type: Literal["video-time-update"] = "video-time-update"


@dataclass
class VideoCloseClientMessage(ClientMessage):
    """Embedded video closed by the host."""

    type: Literal["video-close"] = "video-close"


@dataclass
class VideoCloseServerMessage(ServerMessage):
    """Embedded video close relayed to the group."""

    type: Literal["video-close"] = "video-close"
