"""Forwards host-originated playback events to the members of its group."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from aiosoundsync.exceptions import NotAuthorizedError
from aiosoundsync.models import ServerMessage
from aiosoundsync.models.playback import (
    AudioControlPayload,
    AudioControlServerMessage,
    AudioStreamClientPayload,
    AudioStreamServerMessage,
    AudioStreamServerPayload,
    AudioTimeUpdateClientPayload,
    AudioTimeUpdateServerMessage,
    AudioTimeUpdateServerPayload,
)

from .group import GroupManager
from .session import Session, SessionStore

logger = logging.getLogger(__name__)


class StreamRelay:
    """
    Relays control, timing and media events from a host to its group.

    Every relay checks that the sender is the host of its routing group and
    raises NotAuthorizedError otherwise. Recipients without a live connection
    are skipped; a recipient with a full send queue only loses that message.
    """

    def __init__(
        self,
        sessions: SessionStore,
        groups: GroupManager,
        *,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the relay over a session store and group manager."""
        self._sessions = sessions
        self._groups = groups
        self._wall_clock = wall_clock

    def now_ms(self) -> float:
        """Server wall clock in milliseconds, comparable with host timestamps."""
        return self._wall_clock() * 1_000

    def require_host(self, identity: str, action: str) -> Session:
        """Return the session of ``identity`` if it is a host, else raise NotAuthorizedError."""
        session = self._sessions.get(identity)
        if session is None or not session.is_host:
            raise NotAuthorizedError(identity, action)
        return session

    def relay(self, sender: str, message: ServerMessage, *, action: str) -> int:
        """Relay ``message`` verbatim to the group of ``sender`` minus the sender."""
        self.require_host(sender, action)
        return self._fan_out(sender, lambda _recipient: message)

    def relay_control(self, sender: str, payload: AudioControlPayload) -> int:
        """Relay a playback command."""
        self.require_host(sender, "send audio-control")
        logger.info("Host %s sent audio control: %s", sender, payload.action.value)
        message = AudioControlServerMessage(payload)
        return self._fan_out(sender, lambda _recipient: message)

    def relay_time_update(
        self,
        sender: str,
        payload: AudioTimeUpdateClientPayload,
        received_at_ms: float | None = None,
    ) -> int:
        """
        Relay a host position to every follower of its group.

        Each follower receives its own latency figure, and the delay observed
        between the host sampling its position and the server receiving it.
        """
        self.require_host(sender, "send audio-time-update")
        server_timestamp = received_at_ms if received_at_ms is not None else self.now_ms()
        server_delay = server_timestamp - payload.client_timestamp

        def build(recipient: Session) -> ServerMessage | None:
            if recipient.is_host:
                return None
            return AudioTimeUpdateServerMessage(
                AudioTimeUpdateServerPayload(
                    current_time=payload.current_time,
                    server_timestamp=server_timestamp,
                    latency=recipient.latency_ms,
                    server_delay=server_delay,
                )
            )

        return self._fan_out(sender, build)

    def relay_stream_chunk(
        self,
        sender: str,
        payload: AudioStreamClientPayload,
        received_at_ms: float | None = None,
    ) -> int:
        """Relay a captured media chunk with the server timestamps attached."""
        self.require_host(sender, "send audio-stream")
        server_timestamp = received_at_ms if received_at_ms is not None else self.now_ms()
        message = AudioStreamServerMessage(
            AudioStreamServerPayload(
                audio_chunk_encoded=payload.audio_chunk_encoded,
                timestamp=payload.timestamp,
                server_timestamp=server_timestamp,
                server_delay=server_timestamp - payload.timestamp,
            )
        )
        return self._fan_out(sender, lambda _recipient: message)

    def _fan_out(self, sender: str, build: Callable[[Session], ServerMessage | None]) -> int:
        delivered = 0
        for identity in self._groups.recipients_for(sender, exclude=(sender,)):
            connection = self._sessions.connection(identity)
            recipient = self._sessions.get(identity)
            if connection is None or recipient is None:
                continue
            message = build(recipient)
            if message is None:
                continue
            if connection.send_message(message):
                delivered += 1
        return delivered
