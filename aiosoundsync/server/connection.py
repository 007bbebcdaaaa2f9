"""Represents a single WebSocket connection of a client to the server."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import TYPE_CHECKING, cast

from aiohttp import WSMessage, WSMsgType, web

from aiosoundsync.exceptions import ProtocolError
from aiosoundsync.models import ClientMessage, ServerMessage, is_volatile
from aiosoundsync.models.core import HelloMessage, PongMessage
from aiosoundsync.models.playback import (
    AudioControlClientMessage,
    AudioStreamClientMessage,
    AudioTimeUpdateClientMessage,
    TabStreamStartClientMessage,
    TabStreamStopClientMessage,
    VideoCloseClientMessage,
    VideoControlClientMessage,
    VideoStreamStartClientMessage,
    VideoTimeUpdateClientMessage,
)
from aiosoundsync.models.room import (
    AutoJoinHostMessage,
    CreateRoomMessage,
    JoinRoomMessage,
    TransferHostMessage,
)

logger = logging.getLogger(__name__)

# The cyclic import is not an issue during runtime, so hide it
# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .server import SoundSyncServer


class ClientConnection:
    """
    One WebSocket connection of a client.

    A connection is the transport handle of a session: it is replaced on every
    reconnect while the session itself lives on in the SessionStore.
    """

    _server: SoundSyncServer
    _request: web.Request
    _wsock: web.WebSocketResponse
    _to_write: asyncio.Queue[ServerMessage]
    """Queue for messages to be sent to the client through the WebSocket."""
    _writer_task: asyncio.Task[None] | None = None
    """Task responsible for sending queued messages."""
    _identity: str | None = None
    _closing: bool = False
    _logger: logging.Logger

    def __init__(
        self,
        server: SoundSyncServer,
        request: web.Request,
        *,
        max_pending: int = 512,
        volatile_backlog: int = 32,
    ) -> None:
        """
        DO NOT CALL THIS CONSTRUCTOR. INTERNAL USE ONLY.

        Use SoundSyncServer.on_client_connect instead.
        """
        self._server = server
        self._request = request
        self._wsock = web.WebSocketResponse(heartbeat=55)
        self._to_write = asyncio.Queue(maxsize=max_pending)
        self._volatile_backlog = volatile_backlog
        self.dropped_volatile = 0
        self.remote = request.remote or "unknown"
        self._logger = logger.getChild(f"unknown-{self.remote}")

    @property
    def identity(self) -> str | None:
        """Identity declared in the handshake, None before it."""
        return self._identity

    @property
    def closing(self) -> bool:
        """Whether this connection is being closed."""
        return self._closing

    def send_message(self, message: ServerMessage) -> bool:
        """
        Queue a message for the client.

        Best-effort messages are dropped when the client has a send backlog.
        If a guaranteed message cannot be queued the client is unresponsive and
        the connection is closed, which starts its disconnect grace period.
        """
        if self._closing:
            return False
        if is_volatile(message) and self._to_write.qsize() >= self._volatile_backlog:
            self.dropped_volatile += 1
            self._logger.debug("Send backlog, dropping %s", type(message).__name__)
            return False
        try:
            self._to_write.put_nowait(message)
        except asyncio.QueueFull:
            self._logger.warning("Client is not reading its messages, closing connection")
            _ = self._server.loop.create_task(self.close())
            return False
        return True

    async def close(self) -> None:
        """Close the WebSocket; the session keeps its grace period."""
        self._closing = True
        if self._writer_task is not None and not self._writer_task.done():
            _ = self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task
        if self._wsock.prepared and not self._wsock.closed:
            _ = await self._wsock.close()

    async def handle(self) -> web.WebSocketResponse:
        """
        Handle the complete websocket connection lifecycle.

        This method should only be called by SoundSyncServer.
        """
        try:
            async with asyncio.timeout(10):
                _ = await self._wsock.prepare(self._request)
        except TimeoutError:
            self._logger.warning("Timeout preparing request")
            return self._wsock

        self._logger.info("Connection established")
        self._writer_task = self._server.loop.create_task(self._writer())
        try:
            await self._run_message_loop()
        finally:
            await self.close()
            if self._identity is not None:
                await self._server.detach(self)
            self._logger.info("Connection closed")
        return self._wsock

    async def _run_message_loop(self) -> None:
        """Run the main message processing loop."""
        receive_task: asyncio.Task[WSMessage] | None = None
        try:
            while not self._wsock.closed and not self._closing:
                # Wait for either a message or the writer task to end (client gone)
                receive_task = self._server.loop.create_task(self._wsock.receive())
                assert self._writer_task is not None
                done, pending = await asyncio.wait(
                    [receive_task, self._writer_task],
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if self._writer_task in done:
                    self._logger.debug("Writer task ended, closing connection")
                    if receive_task in pending:
                        _ = receive_task.cancel()
                    break

                msg = await receive_task
                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break
                if msg.type != WSMsgType.TEXT:
                    continue

                try:
                    message = ClientMessage.from_json(cast("str", msg.data))
                except Exception:
                    self._logger.warning("Dropping malformed message: %.200s", msg.data)
                    continue

                try:
                    await self._handle_message(message)
                except ProtocolError as err:
                    self._logger.warning("Protocol error: %s", err)
                    break
                except Exception:
                    self._logger.exception("Error handling %s", type(message).__name__)
        except asyncio.CancelledError:
            self._logger.debug("Connection closed by client")
        except Exception:
            self._logger.exception("Unexpected error inside websocket API")
        finally:
            if receive_task and not receive_task.done():
                _ = receive_task.cancel()

    async def _handle_message(self, message: ClientMessage) -> None:
        """Dispatch a validated client message."""
        server = self._server
        if self._identity is None:
            if not isinstance(message, HelloMessage):
                self._logger.warning("Dropping %s received before hello", type(message).__name__)
                return
            await server.attach(self, message.payload)
            self._identity = message.payload.identity
            self._logger = logger.getChild(self._identity)
            return

        identity = self._identity
        match message:
            case HelloMessage():
                self._logger.warning("Ignoring repeated hello")
            case PongMessage(payload):
                server.handle_pong(identity, payload.timestamp)
            case CreateRoomMessage():
                await server.create_room(identity)
            case JoinRoomMessage(payload):
                await server.join_room(identity, payload.room_code)
            case AutoJoinHostMessage(payload):
                await server.auto_join_host(identity, payload.host_identity)
            case TransferHostMessage(payload):
                await server.transfer_host(identity, payload.new_host_identity)
            case AudioControlClientMessage(payload):
                server.relay_control(identity, payload)
            case AudioTimeUpdateClientMessage(payload):
                server.relay_time_update(identity, payload)
            case AudioStreamClientMessage(payload):
                server.relay_stream_chunk(identity, payload)
            case (
                TabStreamStartClientMessage()
                | TabStreamStopClientMessage()
                | VideoStreamStartClientMessage()
                | VideoControlClientMessage()
                | VideoTimeUpdateClientMessage()
                | VideoCloseClientMessage()
            ):
                server.relay_verbatim(identity, message)
            case _:
                self._logger.debug("Unhandled message type: %s", type(message).__name__)

    async def _writer(self) -> None:
        """Write outgoing messages from the queue."""
        try:
            while not self._wsock.closed:
                item = await self._to_write.get()
                try:
                    await self._wsock.send_str(item.to_json())
                except ConnectionError:
                    self._logger.warning("Connection error sending data, ending writer task")
                    break
        except asyncio.CancelledError:
            self._logger.debug("Writer task cancelled")
            raise
