"""SoundSync client implementation to connect to a SoundSync server."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from types import TracebackType
from typing import Any, Self

from aiohttp import ClientSession, ClientWebSocketResponse, WSMessage, WSMsgType

from aiosoundsync.models import PROTOCOL_VERSION, ClientMessage, ControlAction, ServerMessage
from aiosoundsync.models.core import (
    AutoDiscoveryMessage,
    AutoDiscoveryPayload,
    HelloMessage,
    HelloPayload,
    NetworkInfoMessage,
    NetworkInfoPayload,
    PingMessage,
    PingPayload,
    PongMessage,
    PongResponseMessage,
    UserInfo,
    UsersUpdateMessage,
    UsersUpdatePayload,
)
from aiosoundsync.models.playback import (
    AudioControlClientMessage,
    AudioControlPayload,
    AudioControlServerMessage,
    AudioStreamClientMessage,
    AudioStreamClientPayload,
    AudioStreamServerMessage,
    AudioTimeUpdateClientMessage,
    AudioTimeUpdateClientPayload,
    AudioTimeUpdateServerMessage,
    TabStreamStartClientMessage,
    TabStreamStartPayload,
    TabStreamStartServerMessage,
    TabStreamStopClientMessage,
    TabStreamStopServerMessage,
    VideoCloseClientMessage,
    VideoCloseServerMessage,
    VideoControlClientMessage,
    VideoControlPayload,
    VideoControlServerMessage,
    VideoStreamStartClientMessage,
    VideoStreamStartPayload,
    VideoStreamStartServerMessage,
    VideoTimeUpdateClientMessage,
    VideoTimeUpdatePayload,
    VideoTimeUpdateServerMessage,
)
from aiosoundsync.models.room import (
    AutoJoinHostMessage,
    AutoJoinHostPayload,
    AutoJoinResultMessage,
    CreateRoomMessage,
    HostStatusMessage,
    HostTransferResultMessage,
    HostTransferResultPayload,
    JoinResultPayload,
    JoinRoomMessage,
    JoinRoomPayload,
    RoomCreatedMessage,
    RoomCreatedPayload,
    RoomJoinResultMessage,
    TransferHostMessage,
    TransferHostPayload,
)

from .buffer import BufferConfig, ChunkThrottle, StreamBuffer, StreamChunk, encode_pcm
from .clock_sync import ClockSyncEngine, PredictiveSync, SyncConfig
from .player import Capturer, Player, VirtualPlayer

logger = logging.getLogger(__name__)

UsersCallback = Callable[[UsersUpdatePayload], Awaitable[None] | None]
HostStatusCallback = Callable[[bool], Awaitable[None] | None]
RoomCallback = Callable[[RoomCreatedPayload | JoinResultPayload], Awaitable[None] | None]
TransferCallback = Callable[[HostTransferResultPayload], Awaitable[None] | None]
ControlCallback = Callable[[AudioControlPayload], Awaitable[None] | None]
AudioChunkCallback = Callable[[StreamChunk], Awaitable[None] | None]
StreamStartCallback = Callable[[TabStreamStartPayload], Awaitable[None] | None]
StreamEndCallback = Callable[[], Awaitable[None] | None]


class SoundSyncClient:
    """
    Async SoundSync client that either drives or follows group playback.

    As host it reports its player position every ``time_update_interval``
    seconds and can stream live audio from a Capturer. As follower it feeds
    timing updates into the clock sync engines and streamed chunks into the
    jitter buffer.
    """

    def __init__(
        self,
        identity: str,
        *,
        player: Player | None = None,
        video_player: Player | None = None,
        was_host: bool = False,
        room_code: str | None = None,
        session: ClientSession | None = None,
        sync_config: SyncConfig | None = None,
        buffer_config: BufferConfig | None = None,
        time_update_interval: float = 0.2,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Create a new SoundSync client instance."""
        self._identity = identity
        self._player: Player = player or VirtualPlayer()
        self._video_player = video_player
        self._was_host = was_host
        self._room_code = room_code
        self._session = session
        self._owns_session = session is None
        self._time_update_interval = time_update_interval
        self._wall_clock = wall_clock
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws: ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._time_update_task: asyncio.Task[None] | None = None
        self._playout_task: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()
        self._handshake_event: asyncio.Event | None = None
        self._connected = False
        self._is_host = False
        self._latency_ms = 0.0
        self._users: UsersUpdatePayload | None = None
        self._network_info: NetworkInfoPayload | None = None
        self._discovered: AutoDiscoveryPayload | None = None
        self.sync = ClockSyncEngine(self._player, sync_config)
        self.predictive = PredictiveSync(self._video_player or self._player, sync_config)
        self.buffer = StreamBuffer(buffer_config, wall_clock=wall_clock)
        self._throttle = ChunkThrottle(self.buffer.config.send_interval_ms)
        self._users_callbacks: list[UsersCallback] = []
        self._host_status_callbacks: list[HostStatusCallback] = []
        self._room_callbacks: list[RoomCallback] = []
        self._transfer_callbacks: list[TransferCallback] = []
        self._control_callbacks: list[ControlCallback] = []
        self._audio_chunk_callbacks: list[AudioChunkCallback] = []
        self._stream_start_callbacks: list[StreamStartCallback] = []
        self._stream_end_callbacks: list[StreamEndCallback] = []

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    @property
    def identity(self) -> str:
        """Durable identity of this client."""
        return self._identity

    @property
    def player(self) -> Player:
        """Player this client drives or corrects."""
        return self._player

    @property
    def connected(self) -> bool:
        """Return True if the client currently has an active connection."""
        return self._connected and self._ws is not None and not self._ws.closed

    @property
    def is_host(self) -> bool:
        """Whether this client is host of its group."""
        return self._is_host

    @property
    def room_code(self) -> str | None:
        """Room this client is in, if any."""
        return self._room_code

    @property
    def latency_ms(self) -> float:
        """Latest one-way latency measured by the server."""
        return self._latency_ms

    @property
    def users(self) -> list[UserInfo]:
        """Members of the group from the latest membership update."""
        return list(self._users.users) if self._users is not None else []

    @property
    def group_id(self) -> str | None:
        """Id of the group from the latest membership update."""
        return self._users.group_id if self._users is not None else None

    @property
    def network_info(self) -> NetworkInfoPayload | None:
        """Latest network information sent by the server."""
        return self._network_info

    @property
    def discovered_users(self) -> list[UserInfo]:
        """Users on the same network from the latest auto-discovery broadcast."""
        return list(self._discovered.users) if self._discovered is not None else []

    async def connect(self, url: str) -> None:
        """Connect to a SoundSync server via WebSocket and perform the handshake."""
        if self.connected:
            logger.debug("Already connected")
            return

        self._loop = asyncio.get_running_loop()
        if self._session is None:
            self._session = ClientSession()
        self._handshake_event = asyncio.Event()

        logger.info("Connecting to SoundSync server at %s", url)
        self._ws = await self._session.ws_connect(url, heartbeat=30)
        self._connected = True
        self._reader_task = self._loop.create_task(self._reader_loop())
        await self._send_json(
            HelloMessage(
                HelloPayload(
                    identity=self._identity,
                    was_host=self._was_host,
                    room_code=self._room_code,
                    version=PROTOCOL_VERSION,
                )
            )
        )

        try:
            await asyncio.wait_for(self._handshake_event.wait(), timeout=10)
        except TimeoutError as err:
            await self.disconnect()
            raise TimeoutError("Timed out waiting for host-status after hello") from err
        if not self.connected:
            raise ConnectionError("Server closed the connection during the handshake")
        logger.info("Handshake with server complete, host: %s", self._is_host)

    async def disconnect(self) -> None:
        """Disconnect from the server and release resources."""
        was_connected = self._connected
        self._connected = False
        current_task = asyncio.current_task(loop=self._loop) if self._loop else None

        await self._stop_host_tasks()
        await self._stop_follower_tasks()
        if self._reader_task is not None:
            if self._reader_task is not current_task:
                _ = self._reader_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._reader_task
            self._reader_task = None
        if self._ws is not None:
            _ = await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        if self._handshake_event is not None:
            self._handshake_event.set()
        if was_connected:
            # Remember the role so a reconnect can restore host authority
            self._was_host = self._is_host
        self._is_host = False
        self._users = None

    async def create_room(self) -> None:
        """Ask the server for a new room with this client as host."""
        await self._send_json(CreateRoomMessage())

    async def join_room(self, room_code: str) -> None:
        """Ask to join the room ``room_code``."""
        await self._send_json(JoinRoomMessage(JoinRoomPayload(room_code=room_code.strip().upper())))

    async def auto_join_host(self, host_identity: str) -> None:
        """Ask to join the room of ``host_identity``."""
        await self._send_json(AutoJoinHostMessage(AutoJoinHostPayload(host_identity=host_identity)))

    async def transfer_host(self, new_host_identity: str) -> None:
        """Ask to hand host authority to ``new_host_identity``."""
        await self._send_json(
            TransferHostMessage(TransferHostPayload(new_host_identity=new_host_identity))
        )

    async def send_control(
        self,
        action: ControlAction,
        *,
        file_url: str | None = None,
        position: float | None = None,
    ) -> None:
        """Apply a playback command locally and send it to the group."""
        self._require_host()
        payload = AudioControlPayload(action=action, file_url=file_url, time=position)
        self._apply_control(payload)
        await self._send_json(AudioControlClientMessage(payload))
        if action is not ControlAction.PAUSE:
            await self._send_time_update()

    async def play(self, file_url: str | None = None) -> None:
        """Start playback on the whole group."""
        await self.send_control(
            ControlAction.PLAY, file_url=file_url, position=self._player.current_time
        )

    async def pause(self) -> None:
        """Pause playback on the whole group."""
        await self.send_control(ControlAction.PAUSE)

    async def seek(self, position: float) -> None:
        """Seek the whole group to ``position`` seconds."""
        await self.send_control(ControlAction.SEEK, position=position)

    async def start_video(self, video_id: str, start_time: float = 0.0) -> None:
        """Announce an embedded video to the group."""
        self._require_host()
        await self._send_json(
            VideoStreamStartClientMessage(
                VideoStreamStartPayload(video_id=video_id, start_time=start_time)
            )
        )

    async def control_video(self, action: ControlAction, position: float | None = None) -> None:
        """Send a playback command for the embedded video."""
        self._require_host()
        await self._send_json(
            VideoControlClientMessage(VideoControlPayload(action=action, time=position))
        )

    async def send_video_time(self, current_time: float) -> None:
        """Report the host position of the embedded video."""
        self._require_host()
        await self._send_json(
            VideoTimeUpdateClientMessage(
                VideoTimeUpdatePayload(current_time=current_time, client_timestamp=self._now_ms())
            )
        )

    async def close_video(self) -> None:
        """Close the embedded video on the group."""
        self._require_host()
        await self._send_json(VideoCloseClientMessage())

    async def stream_from(
        self,
        capturer: Capturer,
        *,
        description: str = "Live stream",
        sample_rate: int = 48_000,
    ) -> None:
        """
        Stream live audio from ``capturer`` to the group until it is exhausted.

        Frames are throttled to one per send interval; frames produced faster
        are skipped.
        """
        self._require_host()
        await self._send_json(
            TabStreamStartClientMessage(
                TabStreamStartPayload(
                    description=description, sample_rate=sample_rate, channel_count=1
                )
            )
        )
        self._throttle.reset()
        try:
            async for frame in capturer.frames():
                if not self.connected or not self._is_host:
                    break
                if not self._throttle.ready():
                    continue
                await self._send_json(
                    AudioStreamClientMessage(
                        AudioStreamClientPayload(
                            audio_chunk_encoded=encode_pcm(frame), timestamp=self._now_ms()
                        )
                    )
                )
        finally:
            if self.connected:
                await self._send_json(TabStreamStopClientMessage())
            logger.info("Live stream ended, %d frame(s) throttled", self._throttle.skipped)

    def add_users_listener(self, callback: UsersCallback) -> None:
        """Register a callback invoked on users-update messages."""
        self._users_callbacks.append(callback)

    def add_host_status_listener(self, callback: HostStatusCallback) -> None:
        """Register a callback invoked when the host status of this client is reported."""
        self._host_status_callbacks.append(callback)

    def add_room_listener(self, callback: RoomCallback) -> None:
        """Register a callback invoked on room-created and join results."""
        self._room_callbacks.append(callback)

    def add_transfer_listener(self, callback: TransferCallback) -> None:
        """Register a callback invoked on host transfer results."""
        self._transfer_callbacks.append(callback)

    def add_control_listener(self, callback: ControlCallback) -> None:
        """Register a callback invoked on relayed playback commands."""
        self._control_callbacks.append(callback)

    def add_audio_chunk_listener(self, callback: AudioChunkCallback) -> None:
        """Register a callback invoked with every streamed chunk due for playback."""
        self._audio_chunk_callbacks.append(callback)

    def add_stream_start_listener(self, callback: StreamStartCallback) -> None:
        """Register a callback invoked when the host starts a live stream."""
        self._stream_start_callbacks.append(callback)

    def add_stream_end_listener(self, callback: StreamEndCallback) -> None:
        """Register a callback invoked when the host stops a live stream."""
        self._stream_end_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require_host(self) -> None:
        if not self.connected:
            raise RuntimeError("Client is not connected")
        if not self._is_host:
            raise RuntimeError("Only the host can control playback")

    async def _send_json(self, message: ClientMessage) -> None:
        if not self._ws:
            raise RuntimeError("WebSocket is not connected")
        async with self._send_lock:
            await self._ws.send_str(message.to_json())

    async def _send_time_update(self) -> None:
        await self._send_json(
            AudioTimeUpdateClientMessage(
                AudioTimeUpdateClientPayload(
                    current_time=self._player.current_time,
                    client_timestamp=self._now_ms(),
                    precision=True,
                )
            )
        )

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                await self._handle_ws_message(msg)
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass
        except Exception:
            logger.exception("WebSocket reader encountered an error")
        finally:
            if self._connected:
                await self.disconnect()

    async def _handle_ws_message(self, msg: WSMessage) -> None:
        if msg.type is WSMsgType.TEXT:
            await self._handle_json_message(msg.data)
        elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
            logger.info("WebSocket closed by server")
            await self.disconnect()
        elif msg.type is WSMsgType.ERROR:
            logger.error("WebSocket error: %s", self._ws.exception() if self._ws else "unknown")
            await self.disconnect()

    async def _handle_json_message(self, data: str) -> None:
        try:
            message = ServerMessage.from_json(data)
        except Exception:
            logger.exception("Failed to parse server message: %s", data)
            return

        match message:
            case PingMessage(payload=payload):
                await self._handle_ping(payload)
            case PongResponseMessage(payload=payload):
                self._latency_ms = payload.latency
            case HostStatusMessage(payload=payload):
                await self._set_host(payload.is_host)
            case RoomCreatedMessage(payload=payload):
                self._room_code = payload.room_code
                logger.info(
                    "Room %s created%s",
                    payload.room_code,
                    " automatically" if payload.auto_created else "",
                )
                await self._notify_callbacks(self._room_callbacks, payload)
            case RoomJoinResultMessage(payload=payload) | AutoJoinResultMessage(payload=payload):
                await self._handle_join_result(payload)
            case HostTransferResultMessage(payload=payload):
                if not payload.success:
                    logger.warning("Host transfer failed: %s", payload.error)
                await self._notify_callbacks(self._transfer_callbacks, payload)
            case UsersUpdateMessage(payload=payload):
                self._users = payload
                await self._notify_callbacks(self._users_callbacks, payload)
            case NetworkInfoMessage(payload=payload):
                self._network_info = payload
                self._room_code = payload.room_code
            case AutoDiscoveryMessage(payload=payload):
                self._discovered = payload
            case AudioControlServerMessage(payload=payload):
                self._apply_control(payload)
                await self._notify_callbacks(self._control_callbacks, payload)
            case AudioTimeUpdateServerMessage(payload=payload):
                if not self._is_host:
                    _ = self.sync.update(payload.current_time, payload.latency)
            case AudioStreamServerMessage(payload=payload):
                if not self._is_host:
                    _ = self.buffer.push_encoded(payload.audio_chunk_encoded, payload.timestamp)
            case TabStreamStartServerMessage(payload=payload):
                await self._handle_stream_start(payload)
            case TabStreamStopServerMessage():
                await self._handle_stream_stop()
            case VideoStreamStartServerMessage(payload=payload):
                self._handle_video_start(payload)
            case VideoControlServerMessage(payload=payload):
                self._handle_video_control(payload)
            case VideoTimeUpdateServerMessage(payload=payload):
                self.predictive.update(payload.current_time, self._latency_ms)
            case VideoCloseServerMessage():
                await self.predictive.stop()
                self.predictive.reset()
                if self._video_player is not None:
                    self._video_player.pause()
            case _:
                logger.debug("Unhandled server message type: %s", type(message).__name__)

    async def _handle_ping(self, payload: PingPayload) -> None:
        await self._send_json(PongMessage(PingPayload(timestamp=payload.timestamp)))

    async def _handle_join_result(self, payload: JoinResultPayload) -> None:
        if payload.success:
            self._room_code = payload.room_code
            self.sync.reset()
            self.buffer.clear()
            logger.info("Joined room %s", payload.room_code)
        else:
            logger.warning("Joining room failed: %s", payload.error)
        await self._notify_callbacks(self._room_callbacks, payload)

    async def _set_host(self, is_host: bool) -> None:
        first = self._handshake_event is not None and not self._handshake_event.is_set()
        changed = is_host != self._is_host
        self._is_host = is_host
        if changed or first:
            logger.info("Role: %s", "host" if is_host else "follower")
            if is_host:
                await self._stop_follower_tasks()
                self._start_host_tasks()
            else:
                await self._stop_host_tasks()
                self.sync.start()
        if self._handshake_event is not None:
            self._handshake_event.set()
        await self._notify_callbacks(self._host_status_callbacks, is_host)

    def _apply_control(self, payload: AudioControlPayload) -> None:
        player = self._player
        match payload.action:
            case ControlAction.PLAY:
                if payload.file_url and payload.file_url != getattr(player, "url", None):
                    player.load(payload.file_url)
                if payload.time is not None:
                    player.seek(payload.time)
                player.play()
                self.sync.reset()
            case ControlAction.PAUSE:
                player.pause()
                player.set_playback_rate(1.0)
            case ControlAction.SEEK:
                assert payload.time is not None
                player.seek(payload.time)
                self.sync.reset()

    async def _handle_stream_start(self, payload: TabStreamStartPayload) -> None:
        if self._is_host:
            return
        logger.info("Host started live stream: %s", payload.description)
        self.buffer.clear()
        if self._playout_task is None or self._playout_task.done():
            assert self._loop is not None
            self._playout_task = self._loop.create_task(self._playout_loop())
        await self._notify_callbacks(self._stream_start_callbacks, payload)

    async def _handle_stream_stop(self) -> None:
        if self._is_host:
            return
        logger.info("Host stopped live stream")
        await self._cancel(self._playout_task)
        self._playout_task = None
        self.buffer.clear()
        for callback in self._stream_end_callbacks:
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error in stream end callback %s", callback)

    def _handle_video_start(self, payload: VideoStreamStartPayload) -> None:
        if self._is_host or self._video_player is None:
            return
        logger.info("Host opened video %s at %.1fs", payload.video_id, payload.start_time)
        self.predictive.reset()
        self._video_player.load(payload.video_id)
        self._video_player.seek(payload.start_time)
        self._video_player.play()
        self.predictive.start()

    def _handle_video_control(self, payload: VideoControlPayload) -> None:
        if self._is_host or self._video_player is None:
            return
        match payload.action:
            case ControlAction.PLAY:
                if payload.time is not None:
                    self._video_player.seek(payload.time)
                self._video_player.play()
            case ControlAction.PAUSE:
                self._video_player.pause()
            case ControlAction.SEEK:
                if payload.time is not None:
                    self._video_player.seek(payload.time)
                self.predictive.reset()

    def _start_host_tasks(self) -> None:
        self.buffer.clear()
        if self._time_update_task is None or self._time_update_task.done():
            assert self._loop is not None
            self._time_update_task = self._loop.create_task(self._time_update_loop())

    async def _stop_host_tasks(self) -> None:
        await self._cancel(self._time_update_task)
        self._time_update_task = None

    async def _stop_follower_tasks(self) -> None:
        await self.sync.stop()
        await self.predictive.stop()
        await self._cancel(self._playout_task)
        self._playout_task = None
        self._player.set_playback_rate(1.0)

    async def _time_update_loop(self) -> None:
        while self.connected and self._is_host:
            if self._player.playing:
                try:
                    await self._send_time_update()
                except Exception:
                    logger.exception("Failed to send time update")
            await asyncio.sleep(self._time_update_interval)

    async def _playout_loop(self) -> None:
        interval = self.buffer.config.send_interval_ms / 1_000
        while True:
            chunk = self.buffer.pop()
            if chunk is not None:
                await self._notify_callbacks(self._audio_chunk_callbacks, chunk)
            await asyncio.sleep(interval)

    @staticmethod
    async def _cancel(task: asyncio.Task[None] | None) -> None:
        if task is None or task is asyncio.current_task():
            return
        _ = task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _notify_callbacks(
        self,
        callbacks: list[Callable[[Any], Awaitable[None] | None]],
        payload: Any,
    ) -> None:
        for callback in callbacks:
            try:
                result = callback(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error in client callback %s", callback)

    def _now_ms(self) -> float:
        return self._wall_clock() * 1_000

    async def __aenter__(self) -> Self:
        """Enter the async context manager returning this instance."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Disconnect when leaving the async context manager."""
        await self.disconnect()
