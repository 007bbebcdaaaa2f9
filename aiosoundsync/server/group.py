"""Partitions sessions into rooms and network-inferred groups."""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from collections.abc import AsyncIterator, Iterable, Iterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass

from aiosoundsync.exceptions import RoomNotFoundError
from aiosoundsync.models import GroupKind

logger = logging.getLogger(__name__)

LOCAL_NETWORK_ID = "local-development"
MOBILE_HOTSPOT_NETWORK_ID = "mobile-hotspot"
ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits

_LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1", "localhost"})
_MAPPED_IPV4_PREFIX = "::ffff:"


def normalize_address(address: str) -> str:
    """Unwrap IPv4-mapped IPv6 addresses."""
    if address.lower().startswith(_MAPPED_IPV4_PREFIX) and "." in address:
        return address[len(_MAPPED_IPV4_PREFIX) :]
    return address


def network_id_for_address(address: str) -> str:
    """
    Derive the network-inferred group of an origin address.

    This is a coarse heuristic approximating "same LAN", not a security
    boundary: IPv4 groups by its first two octets, IPv6 by its first four
    segments.
    """
    address = normalize_address(address)
    if address in _LOOPBACK_ADDRESSES:
        return LOCAL_NETWORK_ID
    if "." in address:
        parts = address.split(".")
        if parts[:2] == ["192", "168"] and len(parts) > 2 and parts[2] in {"42", "43"}:
            return MOBILE_HOTSPOT_NETWORK_ID
        return ".".join(parts[:2])
    if ":" in address:
        return ":".join(address.split(":")[:4])
    return f"unknown-{address}"


def address_suffix(address: str) -> str:
    """Return the last part of an address, the only part exposed to peers."""
    address = normalize_address(address)
    if "." in address:
        return address.rsplit(".", 1)[-1]
    if ":" in address:
        return address.rsplit(":", 1)[-1]
    return address


@dataclass(frozen=True, slots=True)
class GroupKey:
    """Identifies a group across both kinds."""

    kind: GroupKind
    id: str

    def __str__(self) -> str:
        """Return a readable form for log messages."""
        return f"{self.kind.value}:{self.id}"


def _lock_order(key: GroupKey) -> tuple[str, str]:
    return (key.kind.value, key.id)


@dataclass(frozen=True, slots=True)
class Group:
    """Read-only view of a group."""

    key: GroupKey
    members: frozenset[str]
    """Routed members: everyone in a room, the room-less members of a network group."""
    host: str | None

    @property
    def id(self) -> str:
        """Room code or network id."""
        return self.key.id

    @property
    def kind(self) -> GroupKind:
        """Whether this is a room or a network-inferred group."""
        return self.key.kind


class _GroupEntry:
    __slots__ = ("host", "key", "members")

    def __init__(self, key: GroupKey) -> None:
        self.key = key
        self.members: set[str] = set()
        self.host: str | None = None


class GroupManager:
    """
    Owns room and network-inferred group membership.

    Every session belongs to exactly one network-inferred group and to at most
    one room. Broadcasts and host election use the routing group of a session:
    its room when it has one, its network-inferred group otherwise.
    """

    _groups: dict[GroupKey, _GroupEntry]
    _room_of: dict[str, str]
    _network_of: dict[str, str]
    _locks: dict[GroupKey, asyncio.Lock]
    _lock_users: dict[GroupKey, int]
    """Tasks holding or waiting for each lock."""

    def __init__(self) -> None:
        """Initialize without any group."""
        self._groups = {}
        self._room_of = {}
        self._network_of = {}
        self._locks = {}
        self._lock_users = {}

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def lock(self, key: GroupKey) -> asyncio.Lock:
        """Return the lock serializing mutations of the group ``key``."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def locked(self, *keys: GroupKey | None) -> AsyncIterator[None]:
        """
        Hold the locks of several groups, acquired in sorted order.

        The lock of a group destroyed meanwhile is dropped once no task holds
        or waits for it.
        """
        ordered = sorted({k for k in keys if k is not None}, key=_lock_order)
        for key in ordered:
            self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with AsyncExitStack() as stack:
                for key in ordered:
                    await stack.enter_async_context(self.lock(key))
                yield
        finally:
            for key in ordered:
                self._release(key)

    def _release(self, key: GroupKey) -> None:
        users = self._lock_users[key] - 1
        if users:
            self._lock_users[key] = users
            return
        del self._lock_users[key]
        if key not in self._groups:
            _ = self._locks.pop(key, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def routing_key(self, identity: str) -> GroupKey | None:
        """Return the group used for broadcasts and host election of ``identity``."""
        if (room_code := self._room_of.get(identity)) is not None:
            return GroupKey(GroupKind.ROOM, room_code)
        if (network_id := self._network_of.get(identity)) is not None:
            return GroupKey(GroupKind.NETWORK, network_id)
        return None

    def room_key(self, identity: str) -> GroupKey | None:
        """Return the room of ``identity``, if any."""
        room_code = self._room_of.get(identity)
        return GroupKey(GroupKind.ROOM, room_code) if room_code is not None else None

    def network_key(self, identity: str) -> GroupKey | None:
        """Return the network-inferred group of ``identity``."""
        network_id = self._network_of.get(identity)
        return GroupKey(GroupKind.NETWORK, network_id) if network_id is not None else None

    def resolve_group(self, identity: str) -> Group | None:
        """Return the routing group of ``identity``."""
        key = self.routing_key(identity)
        return self.group(key) if key is not None else None

    def group(self, key: GroupKey) -> Group | None:
        """Return a snapshot of the group ``key``."""
        entry = self._groups.get(key)
        if entry is None:
            return None
        return Group(key=key, members=frozenset(self._routed(entry)), host=entry.host)

    def groups(self, kind: GroupKind | None = None) -> Iterator[Group]:
        """Iterate over snapshots of all groups, optionally of one kind."""
        for key in list(self._groups):
            if kind is None or key.kind is kind:
                group = self.group(key)
                if group is not None:
                    yield group

    def network_size(self, network_id: str) -> int:
        """Number of sessions in a network bucket, including those in rooms."""
        entry = self._groups.get(GroupKey(GroupKind.NETWORK, network_id))
        return len(entry.members) if entry is not None else 0

    def network_members(self, network_id: str) -> set[str]:
        """Every session in a network bucket, including those in rooms."""
        entry = self._groups.get(GroupKey(GroupKind.NETWORK, network_id))
        return set(entry.members) if entry is not None else set()

    def recipients_for(self, identity: str, *, exclude: Iterable[str] = ()) -> set[str]:
        """Return the routed members of the group of ``identity`` minus ``exclude``."""
        group = self.resolve_group(identity)
        if group is None:
            return set()
        return set(group.members).difference(exclude)

    def room_exists(self, room_code: str) -> bool:
        """Whether a room with this code currently exists."""
        return GroupKey(GroupKind.ROOM, room_code) in self._groups

    def _routed(self, entry: _GroupEntry) -> set[str]:
        if entry.key.kind is GroupKind.ROOM:
            return set(entry.members)
        return {m for m in entry.members if m not in self._room_of}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def generate_room_code(self) -> str:
        """Allocate a room code that is not in use."""
        while True:
            code = "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))
            if not self.room_exists(code):
                return code

    def set_network(self, identity: str, network_id: str) -> GroupKey | None:
        """
        Put ``identity`` in the network bucket ``network_id``.

        Returns the key of the bucket it left, if it moved.
        """
        previous = self._network_of.get(identity)
        if previous == network_id:
            return None
        left = self._discard(identity, GroupKind.NETWORK) if previous is not None else None
        self._add(identity, GroupKey(GroupKind.NETWORK, network_id))
        self._network_of[identity] = network_id
        return left

    def create_room(self, identity: str, room_code: str | None = None) -> str:
        """Create a room containing only ``identity``, leaving any previous room."""
        code = room_code or self.generate_room_code()
        _ = self.leave_room(identity)
        self._add(identity, GroupKey(GroupKind.ROOM, code))
        self._room_of[identity] = code
        logger.info("Session %s created room %s", identity, code)
        return code

    def join_room(self, identity: str, room_code: str) -> Group:
        """
        Move ``identity`` into an existing room.

        Raises RoomNotFoundError if the code is unknown. Any previous room is
        left first, and destroyed if it becomes empty.
        """
        key = GroupKey(GroupKind.ROOM, room_code)
        if key not in self._groups:
            raise RoomNotFoundError(room_code)
        if self._room_of.get(identity) != room_code:
            _ = self.leave_room(identity)
            self._add(identity, key)
            self._room_of[identity] = room_code
        group = self.group(key)
        assert group is not None
        return group

    def leave_room(self, identity: str) -> GroupKey | None:
        """Remove ``identity`` from its room, returning the room it left."""
        if identity not in self._room_of:
            return None
        key = self._discard(identity, GroupKind.ROOM)
        del self._room_of[identity]
        return key

    def remove_member(self, identity: str) -> list[GroupKey]:
        """Remove ``identity`` from every group, returning the keys it left."""
        left: list[GroupKey] = []
        if identity in self._room_of:
            key = self._discard(identity, GroupKind.ROOM)
            del self._room_of[identity]
            if key is not None:
                left.append(key)
        if identity in self._network_of:
            key = self._discard(identity, GroupKind.NETWORK)
            del self._network_of[identity]
            if key is not None:
                left.append(key)
        return left

    def set_host(self, key: GroupKey, identity: str | None) -> None:
        """Record the host of a group. Only the host election calls this."""
        entry = self._groups.get(key)
        if entry is None:
            return
        if identity is not None and identity not in self._routed(entry):
            raise ValueError(f"{identity} is not a member of {key}")
        entry.host = identity

    def _add(self, identity: str, key: GroupKey) -> None:
        entry = self._groups.get(key)
        if entry is None:
            entry = self._groups[key] = _GroupEntry(key)
            logger.debug("Created group %s", key)
        entry.members.add(identity)

    def _discard(self, identity: str, kind: GroupKind) -> GroupKey | None:
        group_id = (self._room_of if kind is GroupKind.ROOM else self._network_of).get(identity)
        if group_id is None:
            return None
        key = GroupKey(kind, group_id)
        entry = self._groups.get(key)
        if entry is None:
            return key
        entry.members.discard(identity)
        if entry.host == identity:
            entry.host = None
        if not entry.members:
            del self._groups[key]
            if key not in self._lock_users:
                _ = self._locks.pop(key, None)
            logger.debug("Destroyed empty group %s", key)
        return key
