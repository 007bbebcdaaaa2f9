"""SoundSync server coordinating sessions, groups and host authority."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Coroutine, Iterable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass

from aiohttp import web

from aiosoundsync.exceptions import (
    CrossGroupTransferError,
    NotAuthorizedError,
    ProtocolError,
    RoomNotFoundError,
    UnknownTargetError,
)
from aiosoundsync.models import PROTOCOL_VERSION, ClientMessage, GroupKind, ServerMessage
from aiosoundsync.models.core import (
    AutoDiscoveryMessage,
    AutoDiscoveryPayload,
    HelloPayload,
    NetworkInfoMessage,
    NetworkInfoPayload,
    PingMessage,
    PingPayload,
    PongResponseMessage,
    PongResponsePayload,
    UserInfo,
    UsersUpdateMessage,
    UsersUpdatePayload,
)
from aiosoundsync.models.playback import (
    AudioControlPayload,
    AudioStreamClientPayload,
    AudioTimeUpdateClientPayload,
    TabStreamStartClientMessage,
    TabStreamStartServerMessage,
    TabStreamStopClientMessage,
    TabStreamStopServerMessage,
    VideoCloseClientMessage,
    VideoCloseServerMessage,
    VideoControlClientMessage,
    VideoControlServerMessage,
    VideoStreamStartClientMessage,
    VideoStreamStartServerMessage,
    VideoTimeUpdateClientMessage,
    VideoTimeUpdateServerMessage,
)
from aiosoundsync.models.room import (
    AutoJoinResultMessage,
    HostStatusMessage,
    HostStatusPayload,
    HostTransferResultMessage,
    HostTransferResultPayload,
    JoinResultPayload,
    RoomCreatedMessage,
    RoomCreatedPayload,
    RoomJoinResultMessage,
)

from .config import ServerConfig
from .connection import ClientConnection
from .election import HostChange, HostElection
from .group import (
    Group,
    GroupKey,
    GroupManager,
    address_suffix,
    network_id_for_address,
    normalize_address,
)
from .latency import LatencyEstimator
from .relay import StreamRelay
from .session import MessageSink, Session, SessionStore

logger = logging.getLogger(__name__)


class SoundSyncEvent:
    """Base event type used by SoundSyncServer.add_event_listener()."""


@dataclass
class SessionAddedEvent(SoundSyncEvent):
    """A new identity connected for the first time."""

    identity: str


@dataclass
class SessionRemovedEvent(SoundSyncEvent):
    """A session did not reconnect within its grace period and was removed."""

    identity: str


@dataclass
class HostChangedEvent(SoundSyncEvent):
    """Host authority of a group moved."""

    group_id: str
    kind: GroupKind
    previous_host: str | None
    new_host: str


@dataclass
class GroupDeletedEvent(SoundSyncEvent):
    """A group lost its last member and was destroyed."""

    group_id: str
    kind: GroupKind


def _relayed(message: ClientMessage) -> tuple[ServerMessage, str] | None:
    """Map a verbatim-relayed client message to its server variant."""
    match message:
        case TabStreamStartClientMessage(payload):
            return TabStreamStartServerMessage(payload), "start a tab stream"
        case TabStreamStopClientMessage():
            return TabStreamStopServerMessage(), "stop a tab stream"
        case VideoStreamStartClientMessage(payload):
            return VideoStreamStartServerMessage(payload), "start a video"
        case VideoControlClientMessage(payload):
            return VideoControlServerMessage(payload), "control the video"
        case VideoTimeUpdateClientMessage(payload):
            return VideoTimeUpdateServerMessage(payload), "sync the video"
        case VideoCloseClientMessage():
            return VideoCloseServerMessage(), "close the video"
    return None


class SoundSyncServer:
    """
    Coordinates sessions, groups and host authority for synchronized playback.

    All mutations of a group's membership or host assignment run under the
    lock of that group; operations on unrelated groups run concurrently.
    """

    _event_cbs: list[Callable[[SoundSyncEvent], Coroutine[None, None, None]]]
    _connections: set[ClientConnection]
    _discovery_task: asyncio.Task[None] | None = None

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        server_id: str,
        *,
        config: ServerConfig | None = None,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize a new SoundSync server."""
        self.loop = loop
        self._id = server_id
        self.config = config or ServerConfig()
        self.sessions = SessionStore(loop)
        self.groups = GroupManager()
        self.election = HostElection(self.sessions, self.groups)
        self.relay = StreamRelay(self.sessions, self.groups, wall_clock=wall_clock)
        self.latency = LatencyEstimator(
            loop,
            self._send_probe,
            self._on_latency_measured,
            interval=self.config.probe_interval,
            timeout=self.config.probe_timeout,
        )
        self._event_cbs = []
        self._connections = set()
        _ = self.sessions.add_removal_listener(self._on_session_removed)
        logger.debug("SoundSyncServer initialized: id=%s, config=%s", server_id, self.config)

    @property
    def id(self) -> str:
        """Get the unique identifier of this server."""
        return self._id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create_app(self) -> web.Application:
        """Return an aiohttp application serving the WebSocket endpoint."""
        app = web.Application()
        app.router.add_get(self.config.path, self.on_client_connect)
        app.on_startup.append(self._on_app_startup)
        app.on_shutdown.append(self._on_app_shutdown)
        app.on_cleanup.append(self._on_app_cleanup)
        return app

    async def _on_app_startup(self, _app: web.Application) -> None:
        self.start()

    async def _on_app_shutdown(self, _app: web.Application) -> None:
        for connection in list(self._connections):
            await connection.close()

    async def _on_app_cleanup(self, _app: web.Application) -> None:
        await self.close()

    def start(self) -> None:
        """Start the periodic auto-discovery broadcast."""
        if self._discovery_task is None or self._discovery_task.done():
            self._discovery_task = self.loop.create_task(self._discovery_loop())

    async def close(self) -> None:
        """Stop all timers and close every connection."""
        if self._discovery_task is not None:
            _ = self._discovery_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._discovery_task
            self._discovery_task = None
        await self.latency.close()
        await self.sessions.close()
        for connection in list(self._connections):
            await connection.close()

    async def on_client_connect(self, request: web.Request) -> web.WebSocketResponse:
        """Handle an incoming WebSocket connection."""
        logger.debug("Incoming connection from %s", request.remote)
        connection = ClientConnection(
            self,
            request,
            max_pending=self.config.max_pending_messages,
            volatile_backlog=self.config.volatile_backlog,
        )
        self._connections.add(connection)
        try:
            return await connection.handle()
        finally:
            self._connections.discard(connection)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def add_event_listener(
        self, callback: Callable[[SoundSyncEvent], Coroutine[None, None, None]]
    ) -> Callable[[], None]:
        """Register a callback to listen for state changes of the server.

        State changes include:
        - A new session was created
        - A session was removed after its grace period
        - Host authority of a group moved
        - A group was destroyed

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)
        return lambda: self._event_cbs.remove(callback)

    def _signal_event(self, event: SoundSyncEvent) -> None:
        for cb in self._event_cbs:
            _ = self.loop.create_task(cb(event))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def session(self, identity: str) -> Session | None:
        """Return a snapshot of the session of ``identity``."""
        return self.sessions.get(identity)

    def group_of(self, identity: str) -> Group | None:
        """Return the routing group of ``identity``."""
        return self.groups.resolve_group(identity)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def attach(
        self, connection: MessageSink, hello: HelloPayload, remote: str | None = None
    ) -> Session:
        """
        Bind a new connection to the session of ``hello.identity``.

        A known identity keeps its role and groups and any pending removal is
        cancelled, so a reconnect within the grace period is invisible to the
        rest of its group.
        """
        if hello.version != PROTOCOL_VERSION:
            raise ProtocolError(
                f"Unsupported protocol version {hello.version}, expected {PROTOCOL_VERSION}"
            )
        if not hello.identity:
            raise ProtocolError("Handshake without identity")
        identity = hello.identity
        address = normalize_address(remote or getattr(connection, "remote", "") or "unknown")
        network_id = network_id_for_address(address)
        room_code = hello.room_code.strip().upper() if hello.room_code else None

        async with self._locked(
            identity,
            extra=(
                GroupKey(GroupKind.NETWORK, network_id),
                GroupKey(GroupKind.ROOM, room_code) if room_code else None,
            ),
        ):
            before = self.groups.routing_key(identity)
            prior = self.sessions.get(identity)
            was_host = prior.is_host if prior is not None else False
            session, created = self.sessions.upsert(
                identity,
                connection,
                address,
                network_id,
                claimed_host=hello.was_host,
            )
            if self.sessions.cancel_pending_removal(identity):
                logger.info("Session %s reconnected within its grace period", identity)
            _ = self.election.cancel_failover(identity)

            touched: set[GroupKey] = set()
            if (left := self.groups.set_network(identity, network_id)) is not None:
                touched.add(left)
            if room_code and self.groups.room_key(identity) is None:
                if self.groups.room_exists(room_code):
                    _ = self.groups.join_room(identity, room_code)
                else:
                    _ = self.groups.create_room(identity, room_code)
                self.sessions.set_room_code(identity, room_code)

            changes, rerouted = self._reroute(
                identity, before, was_host=was_host, claimed_host=hello.was_host
            )
            touched |= rerouted

            session = self.sessions.get(identity)
            assert session is not None
            logger.info(
                "%s session %s (address %s, network %s, room %s, host %s)",
                "New" if created else "Reconnected",
                identity,
                address,
                network_id,
                session.room_code or "none",
                session.is_host,
            )
            if not any(change.new_host == identity for change in changes):
                _ = connection.send_message(
                    HostStatusMessage(HostStatusPayload(is_host=session.is_host))
                )
            self._announce(changes, touched)

        self.latency.start(identity)
        if created:
            self._signal_event(SessionAddedEvent(identity))
        return session

    async def detach(self, connection: ClientConnection) -> None:
        """Start the grace period of the session using ``connection``."""
        identity = connection.identity
        if identity is None:
            return
        async with self._locked(identity):
            session = self.sessions.detach(identity, connection)
            if session is None:
                logger.debug("Ignoring stale disconnect of %s", identity)
                return
            self.latency.stop(identity)
            if session.is_host:
                _ = self.election.begin_failover(identity)
                grace = self.config.host_grace
            else:
                grace = self.config.follower_grace
            logger.info("Session %s disconnected, grace period %.1fs", identity, grace)
            self.sessions.mark_pending_removal(identity, grace)

    async def _on_session_removed(self, session: Session) -> None:
        """Clean up group membership of a session that did not come back."""
        identity = session.identity
        async with self._locked(identity):
            if identity in self.sessions:
                logger.debug("Session %s was recreated before its cleanup ran", identity)
                return
            before = self.groups.routing_key(identity)
            left = self.groups.remove_member(identity)
            changes: list[HostChange] = []
            if before is not None:
                change = self.election.on_leave(before, identity, was_host=session.is_host)
                if change is not None:
                    changes.append(change)
            for key in left:
                if self.groups.group(key) is None:
                    logger.info("Group %s is empty and was destroyed", key)
                    self._signal_event(GroupDeletedEvent(key.id, key.kind))
            self._announce(changes, set(left))
        self._signal_event(SessionRemovedEvent(identity))

    # ------------------------------------------------------------------
    # Rooms and host authority
    # ------------------------------------------------------------------
    async def create_room(self, identity: str) -> str:
        """Create a room with ``identity`` as its only member and host."""
        async with self._locked(identity):
            before = self.groups.routing_key(identity)
            session = self.sessions.get(identity)
            was_host = session.is_host if session is not None else False
            room_code = self.groups.create_room(identity)
            self.sessions.set_room_code(identity, room_code)
            changes, touched = self._reroute(identity, before, was_host=was_host)
            self._send(identity, RoomCreatedMessage(RoomCreatedPayload(room_code=room_code)))
            self._announce(changes, touched)
        return room_code

    async def join_room(self, identity: str, room_code: str) -> bool:
        """Move ``identity`` into the room ``room_code`` as a follower."""
        room_code = room_code.strip().upper()
        async with self._locked(identity, extra=(GroupKey(GroupKind.ROOM, room_code),)):
            try:
                changes, touched = self._join_room(identity, room_code)
            except RoomNotFoundError as err:
                logger.info("Session %s tried to join unknown room %s", identity, room_code)
                self._send(
                    identity,
                    RoomJoinResultMessage(JoinResultPayload(success=False, error=str(err))),
                )
                return False
            self._send(
                identity,
                RoomJoinResultMessage(JoinResultPayload(success=True, room_code=room_code)),
            )
            self._announce(changes, touched)
        logger.info("Session %s joined room %s", identity, room_code)
        return True

    async def auto_join_host(self, identity: str, host_identity: str) -> bool:
        """Join the room of ``host_identity``, creating one for it if needed."""
        async with self._locked(identity, host_identity):
            host = self.sessions.get(host_identity)
            if host is None or not host.connected or not host.is_host:
                self._send(
                    identity,
                    AutoJoinResultMessage(
                        JoinResultPayload(success=False, error="Host not found or not a host")
                    ),
                )
                return False

            changes: list[HostChange] = []
            touched: set[GroupKey] = set()
            room_code = host.room_code
            if room_code is None:
                before = self.groups.routing_key(host_identity)
                room_code = self.groups.create_room(host_identity)
                self.sessions.set_room_code(host_identity, room_code)
                host_changes, host_touched = self._reroute(host_identity, before, was_host=True)
                changes += host_changes
                touched |= host_touched
                self._send(
                    host_identity,
                    RoomCreatedMessage(RoomCreatedPayload(room_code=room_code, auto_created=True)),
                )

            join_changes, join_touched = self._join_room(identity, room_code)
            changes += join_changes
            touched |= join_touched
            self._send(
                identity,
                AutoJoinResultMessage(JoinResultPayload(success=True, room_code=room_code)),
            )
            self._announce(changes, touched)
        logger.info("Session %s auto-joined host %s in room %s", identity, host_identity, room_code)
        return True

    def _join_room(self, identity: str, room_code: str) -> tuple[list[HostChange], set[GroupKey]]:
        before = self.groups.routing_key(identity)
        session = self.sessions.get(identity)
        was_host = session.is_host if session is not None else False
        _ = self.groups.join_room(identity, room_code)
        self.sessions.set_room_code(identity, room_code)
        changes, touched = self._reroute(identity, before, was_host=was_host)
        self._send(identity, HostStatusMessage(HostStatusPayload(is_host=self._is_host(identity))))
        return changes, touched

    async def transfer_host(self, requester: str, target: str) -> bool:
        """Hand host authority from ``requester`` to ``target``."""
        async with self._locked(requester, target):
            try:
                change = self.election.transfer_host(requester, target)
            except (NotAuthorizedError, UnknownTargetError, CrossGroupTransferError) as err:
                logger.info("Rejected host transfer from %s to %s: %s", requester, target, err)
                self._send(
                    requester,
                    HostTransferResultMessage(
                        HostTransferResultPayload(
                            success=False, previous_host_identity=requester, error=str(err)
                        )
                    ),
                )
                return False
            self._send(
                requester,
                HostTransferResultMessage(
                    HostTransferResultPayload(
                        success=True, previous_host_identity=requester, new_host_identity=target
                    )
                ),
            )
            if change.new_host != requester:
                self._send(requester, HostStatusMessage(HostStatusPayload(is_host=False)))
                self._announce([change], {change.key})
        return True

    def _reroute(
        self,
        identity: str,
        before: GroupKey | None,
        *,
        was_host: bool,
        claimed_host: bool = False,
    ) -> tuple[list[HostChange], set[GroupKey]]:
        """Settle host assignment after the routing group of ``identity`` may have changed."""
        after = self.groups.routing_key(identity)
        changes: list[HostChange] = []
        if before is not None and before != after:
            change = self.election.on_leave(before, identity, was_host=was_host)
            if change is not None:
                changes.append(change)
        if after is not None:
            change = self.election.on_join(after, identity, claimed_host=claimed_host)
            if change is not None:
                changes.append(change)
        return changes, {key for key in (before, after) if key is not None}

    # ------------------------------------------------------------------
    # Relays
    # ------------------------------------------------------------------
    def relay_control(self, identity: str, payload: AudioControlPayload) -> int:
        """Relay a host playback command; non-hosts are dropped."""
        try:
            return self.relay.relay_control(identity, payload)
        except NotAuthorizedError as err:
            logger.warning("%s", err)
            return 0

    def relay_time_update(self, identity: str, payload: AudioTimeUpdateClientPayload) -> int:
        """Relay a host position; non-hosts are dropped."""
        try:
            return self.relay.relay_time_update(identity, payload)
        except NotAuthorizedError as err:
            logger.debug("%s", err)
            return 0

    def relay_stream_chunk(self, identity: str, payload: AudioStreamClientPayload) -> int:
        """Relay a host media chunk; non-hosts are dropped."""
        try:
            return self.relay.relay_stream_chunk(identity, payload)
        except NotAuthorizedError as err:
            logger.debug("%s", err)
            return 0

    def relay_verbatim(self, identity: str, message: ClientMessage) -> int:
        """Relay a stream lifecycle or video message unchanged."""
        relayed = _relayed(message)
        if relayed is None:
            raise ValueError(f"{type(message).__name__} is not relayed verbatim")
        server_message, action = relayed
        try:
            return self.relay.relay(identity, server_message, action=action)
        except NotAuthorizedError as err:
            logger.warning("%s", err)
            return 0

    # ------------------------------------------------------------------
    # Latency
    # ------------------------------------------------------------------
    def handle_pong(self, identity: str, timestamp: float) -> None:
        """Forward a probe answer to the latency estimator."""
        _ = self.latency.handle_pong(identity, timestamp)

    def _send_probe(self, identity: str, timestamp: float) -> bool:
        return self._send(identity, PingMessage(PingPayload(timestamp=timestamp)))

    def _on_latency_measured(self, identity: str, latency: float) -> None:
        self.sessions.set_latency(identity, latency)
        _ = self._send(identity, PongResponseMessage(PongResponsePayload(latency=latency)))

    # ------------------------------------------------------------------
    # Broadcasts
    # ------------------------------------------------------------------
    def _send(self, identity: str, message: ServerMessage) -> bool:
        connection = self.sessions.connection(identity)
        if connection is None:
            return False
        return connection.send_message(message)

    def _is_host(self, identity: str) -> bool:
        session = self.sessions.get(identity)
        return session is not None and session.is_host

    def _announce(self, changes: Iterable[HostChange], touched: Iterable[GroupKey]) -> None:
        """Notify new hosts and refresh membership of every touched group."""
        for change in changes:
            if self.election.host_of(change.key) != change.new_host:
                # Superseded by a later change in the same operation
                continue
            self._send(change.new_host, HostStatusMessage(HostStatusPayload(is_host=True)))
            self._signal_event(
                HostChangedEvent(
                    change.key.id, change.key.kind, change.previous_host, change.new_host
                )
            )
        for key in touched:
            self._broadcast_users(key)

    def _users(self, group: Group) -> list[UserInfo]:
        users: list[UserInfo] = []
        for identity in sorted(group.members):
            session = self.sessions.get(identity)
            if session is None:
                continue
            users.append(
                UserInfo(
                    identity=identity,
                    is_host=identity == group.host,
                    address_suffix=address_suffix(session.origin_address),
                )
            )
        return users

    def _broadcast_users(self, key: GroupKey) -> None:
        """Send users-update and network-info to every member of a group."""
        group = self.groups.group(key)
        if group is None:
            return
        users = self._users(group)
        message = UsersUpdateMessage(UsersUpdatePayload(users=users, group_id=group.id))
        for identity in group.members:
            session = self.sessions.get(identity)
            if session is None or not session.connected:
                continue
            self._send(identity, message)
            self._send(
                identity,
                NetworkInfoMessage(
                    NetworkInfoPayload(
                        network_id=session.network_id,
                        room_code=session.room_code,
                        user_count=len(group.members),
                    )
                ),
            )

    def broadcast_network_users(self) -> int:
        """Send auto-discovery to every network bucket with more than one member."""
        sent = 0
        for group in self.groups.groups(GroupKind.NETWORK):
            members = self.groups.network_members(group.id)
            if len(members) < 2:
                continue
            users = self._users(Group(key=group.key, members=frozenset(members), host=group.host))
            message = AutoDiscoveryMessage(AutoDiscoveryPayload(network_id=group.id, users=users))
            for identity in members:
                if self._send(identity, message):
                    sent += 1
        return sent

    async def _discovery_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.discovery_interval)
            try:
                _ = self.broadcast_network_users()
            except Exception:
                logger.exception("Auto-discovery broadcast failed")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def _locked(
        self, *identities: str, extra: Iterable[GroupKey | None] = ()
    ) -> AsyncIterator[None]:
        """
        Hold the locks of every group the given identities belong to.

        Membership is re-checked once the locks are held and the acquisition is
        retried if it changed while waiting.
        """
        extra_keys = {key for key in extra if key is not None}
        while True:
            keys = self._keys_of(identities) | extra_keys
            async with self.groups.locked(*keys):
                if self._keys_of(identities) <= keys:
                    yield
                    return

    def _keys_of(self, identities: Iterable[str]) -> set[GroupKey]:
        keys: set[GroupKey] = set()
        for identity in identities:
            for key in (self.groups.room_key(identity), self.groups.network_key(identity)):
                if key is not None:
                    keys.add(key)
        return keys
