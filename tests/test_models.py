"""Tests for the wire message models."""

import orjson
import pytest
from mashumaro.exceptions import SuitableVariantNotFoundError

from aiosoundsync.models import (
    PROTOCOL_VERSION,
    ClientMessage,
    ControlAction,
    ServerMessage,
    is_volatile,
)
from aiosoundsync.models.core import (
    HelloMessage,
    PingMessage,
    PingPayload,
    UsersUpdateMessage,
    UsersUpdatePayload,
)
from aiosoundsync.models.playback import (
    AudioControlClientMessage,
    AudioControlPayload,
    AudioStreamServerMessage,
    AudioStreamServerPayload,
    AudioTimeUpdateServerMessage,
    AudioTimeUpdateServerPayload,
    TabStreamStopClientMessage,
    VideoTimeUpdateServerMessage,
    VideoTimeUpdatePayload,
)
from aiosoundsync.models.room import JoinResultPayload, RoomJoinResultMessage


class TestClientMessages:
    """Tests for parsing client messages."""

    def test_hello_defaults(self) -> None:
        """Test a minimal hello parses with default fields."""
        message = ClientMessage.from_json('{"type": "hello", "payload": {"identity": "abc"}}')
        assert isinstance(message, HelloMessage)
        assert message.payload.identity == "abc"
        assert message.payload.was_host is False
        assert message.payload.room_code is None
        assert message.payload.version == PROTOCOL_VERSION

    def test_hello_snake_case_fields(self) -> None:
        """Test hello fields are read under their snake_case names."""
        message = ClientMessage.from_json(
            '{"type": "hello", "payload": {"identity": "abc", "was_host": true, '
            '"room_code": "ABC123"}}'
        )
        assert isinstance(message, HelloMessage)
        assert message.payload.was_host is True
        assert message.payload.room_code == "ABC123"

    def test_audio_control(self) -> None:
        """Test an audio-control message parses into the closed union."""
        message = ClientMessage.from_json(
            '{"type": "audio-control", "payload": {"action": "seek", "time": 12.5}}'
        )
        assert isinstance(message, AudioControlClientMessage)
        assert message.payload.action is ControlAction.SEEK
        assert message.payload.time == 12.5

    def test_message_without_payload(self) -> None:
        """Test lifecycle messages without payload."""
        message = ClientMessage.from_json('{"type": "tab-stream-stop"}')
        assert isinstance(message, TabStreamStopClientMessage)

    def test_unknown_type_rejected(self) -> None:
        """Test an unknown message type is rejected at the boundary."""
        with pytest.raises(SuitableVariantNotFoundError):
            ClientMessage.from_json('{"type": "self-destruct", "payload": {}}')

    def test_server_only_type_rejected(self) -> None:
        """Test a server message type is not accepted from clients."""
        with pytest.raises(SuitableVariantNotFoundError):
            ClientMessage.from_json('{"type": "ping", "payload": {"timestamp": 1.0}}')


class TestAudioControlPayload:
    """Tests for audio-control validation."""

    def test_seek_requires_time(self) -> None:
        """Test seek without a target position is invalid."""
        with pytest.raises(ValueError, match="Time must be provided"):
            AudioControlPayload(action=ControlAction.SEEK)

    def test_negative_time_rejected(self) -> None:
        """Test a negative position is invalid."""
        with pytest.raises(ValueError, match="negative"):
            AudioControlPayload(action=ControlAction.PLAY, time=-1.0)

    def test_pause_without_time(self) -> None:
        """Test pause needs no position."""
        payload = AudioControlPayload(action=ControlAction.PAUSE)
        assert payload.time is None


class TestServerMessages:
    """Tests for serializing server messages."""

    def test_type_tag_serialized(self) -> None:
        """Test the type tag and payload envelope are written."""
        data = orjson.loads(PingMessage(PingPayload(timestamp=5.0)).to_json())
        assert data == {"type": "ping", "payload": {"timestamp": 5.0}}

    def test_optional_fields_omitted(self) -> None:
        """Test unset optional fields are left out of the payload."""
        message = RoomJoinResultMessage(JoinResultPayload(success=False, error="Room not found"))
        data = orjson.loads(message.to_json())
        assert data["payload"] == {"success": False, "error": "Room not found"}

    def test_field_names_are_snake_case(self) -> None:
        """Test payload fields are written under their Python names."""
        message = AudioTimeUpdateServerMessage(
            AudioTimeUpdateServerPayload(
                current_time=1.5, server_timestamp=1000.0, latency=20.0, server_delay=3.0
            )
        )
        data = orjson.loads(message.to_json())
        assert set(data["payload"]) == {
            "current_time",
            "server_timestamp",
            "latency",
            "server_delay",
        }

    def test_parse_users_update(self) -> None:
        """Test a users-update parses back through the server union."""
        message = ServerMessage.from_json(
            '{"type": "users-update", "payload": {"users": '
            '[{"identity": "a", "is_host": true, "address_suffix": "7"}], "group_id": "ABC123"}}'
        )
        assert isinstance(message, UsersUpdateMessage)
        assert message.payload.users[0].is_host is True
        assert message.payload.group_id == "ABC123"


class TestDeliveryClass:
    """Tests for the best-effort delivery class."""

    def test_timing_and_media_are_volatile(self) -> None:
        """Test time updates and stream chunks may be dropped."""
        assert is_volatile(
            AudioTimeUpdateServerMessage(
                AudioTimeUpdateServerPayload(
                    current_time=1.0, server_timestamp=2.0, latency=3.0, server_delay=4.0
                )
            )
        )
        assert is_volatile(
            AudioStreamServerMessage(
                AudioStreamServerPayload(
                    audio_chunk_encoded="", timestamp=1.0, server_timestamp=2.0, server_delay=1.0
                )
            )
        )
        assert is_volatile(
            VideoTimeUpdateServerMessage(
                VideoTimeUpdatePayload(current_time=1.0, client_timestamp=2.0)
            )
        )

    def test_control_and_membership_are_guaranteed(self) -> None:
        """Test control and membership messages are never dropped."""
        assert not is_volatile(PingMessage(PingPayload(timestamp=1.0)))
        assert not is_volatile(UsersUpdateMessage(UsersUpdatePayload(users=[], group_id="x")))
