"""Host election, explicit host transfer and failover of groups."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from aiosoundsync.exceptions import (
    CrossGroupTransferError,
    NotAuthorizedError,
    UnknownTargetError,
)
from aiosoundsync.models import Role

from .group import GroupKey, GroupManager
from .session import SessionStore

logger = logging.getLogger(__name__)


class ElectionState(Enum):
    """Host assignment state of a group."""

    NO_HOST = "no-host"
    """Empty group, or a group whose host left before a replacement was chosen."""
    SETTLED = "settled"
    """Exactly one member is host."""
    TRANSFER_PENDING = "transfer-pending"
    """An explicit transfer is being applied."""
    FAILOVER_PENDING = "failover-pending"
    """The host disconnected and its grace period is running."""


@dataclass(frozen=True, slots=True)
class HostChange:
    """Result of an operation that moved host authority."""

    key: GroupKey
    previous_host: str | None
    new_host: str


class HostElection:
    """
    Enforces at most one host per group.

    All methods must be called while holding the lock of the affected group
    (see GroupManager.locked); they never await, so each one is atomic.
    """

    _pending: dict[GroupKey, ElectionState]

    def __init__(self, sessions: SessionStore, groups: GroupManager) -> None:
        """Initialize the controller over a session store and group manager."""
        self._sessions = sessions
        self._groups = groups
        self._pending = {}

    def state(self, key: GroupKey) -> ElectionState:
        """Return the election state of the group ``key``."""
        if (pending := self._pending.get(key)) is not None:
            return pending
        group = self._groups.group(key)
        if group is None or group.host is None or group.host not in group.members:
            return ElectionState.NO_HOST
        return ElectionState.SETTLED

    def host_of(self, key: GroupKey) -> str | None:
        """Return the host of the group ``key``."""
        group = self._groups.group(key)
        return group.host if group is not None else None

    def on_join(
        self, key: GroupKey, identity: str, *, claimed_host: bool = False
    ) -> HostChange | None:
        """
        Settle the role of ``identity`` after it became a routed member of ``key``.

        The first member of a group becomes host. A group that already has a
        host keeps it and the joiner becomes a follower. A group without a host
        takes the joiner as host, which restores a reconnecting host that
        declared its previous role.
        """
        group = self._groups.group(key)
        if group is None or identity not in group.members:
            raise ValueError(f"{identity} is not a member of {key}")
        if group.host == identity:
            self._sessions.set_role(identity, Role.HOST)
            return None
        if group.host is not None and group.host in group.members:
            self._sessions.set_role(identity, Role.FOLLOWER)
            return None

        change = self._assign(key, identity)
        if len(group.members) == 1:
            logger.info("Assigned new host %s for %s", identity, key)
        elif claimed_host:
            logger.info("Restored host status to %s for %s", identity, key)
        else:
            logger.info("Group %s had no host, assigned %s", key, identity)
        return change

    def on_leave(self, key: GroupKey, identity: str, *, was_host: bool) -> HostChange | None:
        """
        Settle the group ``key`` after ``identity`` stopped being a routed member.

        When the leaver was host, a remaining member is promoted, preferring
        members that are connected over those inside their grace period. A
        group that became empty has no host to elect.
        """
        group = self._groups.group(key)
        if group is None:
            _ = self._pending.pop(key, None)
            return None
        if was_host:
            self._sessions.set_role(identity, Role.FOLLOWER)
        if group.host is not None and group.host != identity and group.host in group.members:
            return None
        _ = self._pending.pop(key, None)
        if not group.members:
            self._groups.set_host(key, None)
            return None
        connected = [m for m in group.members if (s := self._sessions.get(m)) and s.connected]
        new_host = min(connected or group.members)
        change = self._assign(key, new_host, previous=identity if was_host else None)
        logger.info("New host selected for %s: %s", key, new_host)
        return change

    def transfer_host(self, requester: str, target: str) -> HostChange:
        """
        Hand host authority from ``requester`` to ``target``.

        Raises NotAuthorizedError unless the requester is host of its group,
        UnknownTargetError if the target has no live session and
        CrossGroupTransferError if the target is in another group. Nothing is
        mutated when an error is raised.
        """
        key = self._groups.routing_key(requester)
        group = self._groups.group(key) if key is not None else None
        if key is None or group is None or group.host != requester:
            raise NotAuthorizedError(requester, "transfer host")
        target_session = self._sessions.get(target)
        if target_session is None or not target_session.connected:
            raise UnknownTargetError(target)
        if target not in group.members:
            raise CrossGroupTransferError(target)
        if target == requester:
            return HostChange(key, requester, requester)

        self._pending[key] = ElectionState.TRANSFER_PENDING
        try:
            change = self._assign(key, target)
        finally:
            _ = self._pending.pop(key, None)
        logger.info("Host transfer complete for %s: %s -> %s", key, requester, target)
        return change

    def begin_failover(self, identity: str) -> GroupKey | None:
        """Mark the group of a disconnected host as waiting for its return."""
        key = self._groups.routing_key(identity)
        if key is None or self.host_of(key) != identity:
            return None
        self._pending[key] = ElectionState.FAILOVER_PENDING
        logger.debug("Host %s of %s disconnected, failover pending", identity, key)
        return key

    def cancel_failover(self, identity: str) -> bool:
        """Clear a pending failover because the host reconnected in time."""
        key = self._groups.routing_key(identity)
        if key is None or self._pending.get(key) is not ElectionState.FAILOVER_PENDING:
            return False
        if self.host_of(key) != identity:
            return False
        del self._pending[key]
        logger.debug("Host %s of %s reconnected, no election needed", identity, key)
        return True

    def _assign(self, key: GroupKey, identity: str, *, previous: str | None = None) -> HostChange:
        group = self._groups.group(key)
        old_host = group.host if group is not None else None
        self._groups.set_host(key, identity)
        if old_host is not None and old_host != identity:
            self._sessions.set_role(old_host, Role.FOLLOWER)
        self._sessions.set_role(identity, Role.HOST)
        return HostChange(key, old_host or previous, identity)
