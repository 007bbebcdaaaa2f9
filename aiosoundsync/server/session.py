"""Session records that outlive a single connection of a client."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import suppress
from dataclasses import dataclass
from typing import Protocol

from aiosoundsync.models import Role, ServerMessage

logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    """Transport handle of a connected session."""

    def send_message(self, message: ServerMessage) -> bool:
        """Queue a message, returning False if it was dropped."""
        ...


@dataclass(frozen=True, slots=True)
class Session:
    """Read-only view of a session, taken when it was requested."""

    identity: str
    """Durable identifier chosen by the client."""
    connected: bool
    """True while a transport handle is attached."""
    role: Role
    latency_ms: float
    """Latest one-way latency measured by the latency estimator."""
    origin_address: str
    network_id: str
    """Network-inferred group derived from the origin address."""
    room_code: str | None
    claimed_host: bool
    """The client declared it was host during its previous connection."""

    @property
    def is_host(self) -> bool:
        """Whether this session is the host of its routing group."""
        return self.role is Role.HOST


class _SessionEntry:
    """Mutable session record, private to the SessionStore."""

    __slots__ = (
        "claimed_host",
        "connection",
        "identity",
        "latency_ms",
        "network_id",
        "origin_address",
        "removal_task",
        "role",
        "room_code",
    )

    def __init__(
        self,
        identity: str,
        connection: MessageSink,
        origin_address: str,
        network_id: str,
        room_code: str | None,
        *,
        claimed_host: bool,
    ) -> None:
        self.identity = identity
        self.connection: MessageSink | None = connection
        self.role = Role.FOLLOWER
        self.latency_ms = 0.0
        self.origin_address = origin_address
        self.network_id = network_id
        self.room_code = room_code
        self.claimed_host = claimed_host
        self.removal_task: asyncio.Task[None] | None = None

    def snapshot(self) -> Session:
        return Session(
            identity=self.identity,
            connected=self.connection is not None,
            role=self.role,
            latency_ms=self.latency_ms,
            origin_address=self.origin_address,
            network_id=self.network_id,
            room_code=self.room_code,
            claimed_host=self.claimed_host,
        )


RemovalListener = Callable[[Session], Awaitable[None]]


class SessionStore:
    """
    Owns every session known to the server.

    A session is created on the first connection of an identity and survives
    reconnections: only the transport handle and origin address are replaced.
    Callers only ever receive Session snapshots, all mutation goes through the
    methods of this store.
    """

    _sessions: dict[str, _SessionEntry]
    _removal_listeners: list[RemovalListener]

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        """Initialize an empty store using ``loop`` for removal timers."""
        self._loop = loop
        self._sessions = {}
        self._removal_listeners = []

    def upsert(
        self,
        identity: str,
        connection: MessageSink,
        origin_address: str,
        network_id: str,
        *,
        claimed_host: bool = False,
        room_code: str | None = None,
    ) -> tuple[Session, bool]:
        """
        Register a new connection for ``identity``.

        Returns the session and whether it was newly created. A known session
        keeps its role, room and latency; only the transport handle, origin
        address and network id are replaced.
        """
        entry = self._sessions.get(identity)
        if entry is None:
            entry = _SessionEntry(
                identity,
                connection,
                origin_address,
                network_id,
                room_code,
                claimed_host=claimed_host,
            )
            self._sessions[identity] = entry
            logger.debug("Created session %s from %s", identity, origin_address)
            return entry.snapshot(), True

        logger.debug("Session %s reconnected from %s", identity, origin_address)
        entry.connection = connection
        entry.origin_address = origin_address
        entry.network_id = network_id
        entry.claimed_host = claimed_host
        return entry.snapshot(), False

    def detach(self, identity: str, connection: MessageSink) -> Session | None:
        """
        Clear the transport handle of ``identity`` if it still is ``connection``.

        Returns None when the session is unknown or already uses a newer
        connection, in which case the disconnect is stale and must be ignored.
        """
        entry = self._sessions.get(identity)
        if entry is None or entry.connection is not connection:
            return None
        entry.connection = None
        return entry.snapshot()

    def mark_pending_removal(self, identity: str, after: float) -> None:
        """Schedule the removal of ``identity`` in ``after`` seconds."""
        entry = self._sessions.get(identity)
        if entry is None:
            return
        self.cancel_pending_removal(identity)
        logger.debug("Session %s will be removed in %.1fs", identity, after)
        entry.removal_task = self._loop.create_task(self._remove_later(identity, after))

    def cancel_pending_removal(self, identity: str) -> bool:
        """Cancel a scheduled removal, returning True if one was pending."""
        entry = self._sessions.get(identity)
        if entry is None or entry.removal_task is None:
            return False
        task, entry.removal_task = entry.removal_task, None
        if task.done():
            return False
        _ = task.cancel()
        logger.debug("Cancelled pending removal of session %s", identity)
        return True

    def is_pending_removal(self, identity: str) -> bool:
        """Whether a removal timer is running for ``identity``."""
        entry = self._sessions.get(identity)
        return bool(entry and entry.removal_task and not entry.removal_task.done())

    async def _remove_later(self, identity: str, after: float) -> None:
        await asyncio.sleep(after)
        entry = self._sessions.get(identity)
        if entry is None or entry.connection is not None:
            return
        # Detach the timer first so remove() does not cancel the running task
        entry.removal_task = None
        logger.info("Session %s did not reconnect within %.1fs", identity, after)
        _ = await self.remove(identity)

    async def remove(self, identity: str) -> Session | None:
        """Delete ``identity`` and notify removal listeners for group cleanup."""
        entry = self._sessions.pop(identity, None)
        if entry is None:
            return None
        if entry.removal_task is not None and not entry.removal_task.done():
            _ = entry.removal_task.cancel()
        session = entry.snapshot()
        logger.debug("Removed session %s", identity)
        for listener in list(self._removal_listeners):
            try:
                await listener(session)
            except Exception:
                logger.exception("Removal listener failed for session %s", identity)
        return session

    def add_removal_listener(self, callback: RemovalListener) -> Callable[[], None]:
        """
        Register a coroutine called with the snapshot of every removed session.

        Returns a function to remove the listener.
        """
        self._removal_listeners.append(callback)
        return lambda: self._removal_listeners.remove(callback)

    def get(self, identity: str) -> Session | None:
        """Return a snapshot of ``identity``, or None if unknown."""
        entry = self._sessions.get(identity)
        return entry.snapshot() if entry is not None else None

    def connection(self, identity: str) -> MessageSink | None:
        """Return the transport handle of ``identity`` if it is connected."""
        entry = self._sessions.get(identity)
        return entry.connection if entry is not None else None

    def set_role(self, identity: str, role: Role) -> None:
        """Update the role of ``identity``. Only the host election calls this."""
        if (entry := self._sessions.get(identity)) is not None:
            entry.role = role

    def set_room_code(self, identity: str, room_code: str | None) -> None:
        """Update the room of ``identity``."""
        if (entry := self._sessions.get(identity)) is not None:
            entry.room_code = room_code

    def set_latency(self, identity: str, latency_ms: float) -> None:
        """Overwrite the measured one-way latency of ``identity``."""
        if (entry := self._sessions.get(identity)) is not None:
            entry.latency_ms = latency_ms

    def __contains__(self, identity: object) -> bool:
        """Whether a session exists for ``identity``."""
        return identity in self._sessions

    def __iter__(self) -> Iterator[Session]:
        """Iterate over snapshots of all sessions."""
        return iter([entry.snapshot() for entry in self._sessions.values()])

    def __len__(self) -> int:
        """Number of sessions, connected or waiting for reconnection."""
        return len(self._sessions)

    async def close(self) -> None:
        """Cancel all pending removal timers."""
        tasks = [e.removal_task for e in self._sessions.values() if e.removal_task is not None]
        for task in tasks:
            _ = task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
