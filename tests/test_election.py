"""Tests for host election, transfer and failover."""

import random
from collections.abc import Callable
from typing import Any

import pytest

from aiosoundsync.exceptions import (
    CrossGroupTransferError,
    NotAuthorizedError,
    SoundSyncError,
    UnknownTargetError,
)
from aiosoundsync.models import GroupKind
from aiosoundsync.server.election import ElectionState, HostElection
from aiosoundsync.server.group import GroupKey, GroupManager
from aiosoundsync.server.session import SessionStore

NETWORK = GroupKey(GroupKind.NETWORK, "10.1")


def _leave(
    store: SessionStore, groups: GroupManager, election: HostElection, identity: str
) -> None:
    session = store.get(identity)
    assert session is not None
    for key in groups.remove_member(identity):
        _ = election.on_leave(key, identity, was_host=session.is_host)


def _assert_single_host(store: SessionStore, groups: GroupManager) -> None:
    for group in groups.groups():
        if not group.members:
            continue
        hosts = [m for m in group.members if (s := store.get(m)) is not None and s.is_host]
        assert hosts == [group.host], group.key
    for session in store:
        if session.is_host:
            group = groups.resolve_group(session.identity)
            assert group is not None
            assert group.host == session.identity


class TestJoin:
    """Tests for the role of joining members."""

    async def test_first_joiner_is_host(
        self, join: Callable[..., Any], store: SessionStore, election: HostElection
    ) -> None:
        """Test the first member of a group becomes host."""
        _ = join("a")
        _ = join("b")
        _ = join("c")
        assert store.get("a").is_host
        assert not store.get("b").is_host
        assert not store.get("c").is_host
        assert election.host_of(NETWORK) == "a"
        assert election.state(NETWORK) is ElectionState.SETTLED

    async def test_groups_elect_independently(
        self, join: Callable[..., Any], store: SessionStore
    ) -> None:
        """Test every network group gets its own host."""
        _ = join("a", "10.1")
        _ = join("b", "10.2")
        assert store.get("a").is_host
        assert store.get("b").is_host

    async def test_non_member_rejected(self, election: HostElection) -> None:
        """Test settling the role of a non-member is an error."""
        with pytest.raises(ValueError, match="not a member"):
            _ = election.on_join(NETWORK, "ghost")


class TestTransfer:
    """Tests for explicit host transfer."""

    async def test_transfer(
        self, join: Callable[..., Any], store: SessionStore, election: HostElection
    ) -> None:
        """Test the host hands authority to a member of its group."""
        _ = join("a")
        _ = join("b")
        change = election.transfer_host("a", "b")
        assert change.previous_host == "a"
        assert change.new_host == "b"
        assert store.get("b").is_host
        assert not store.get("a").is_host
        assert election.state(NETWORK) is ElectionState.SETTLED

    async def test_follower_cannot_transfer(
        self, join: Callable[..., Any], store: SessionStore, election: HostElection
    ) -> None:
        """Test a follower request is rejected without changes."""
        _ = join("a")
        _ = join("b")
        with pytest.raises(NotAuthorizedError):
            _ = election.transfer_host("b", "b")
        assert election.host_of(NETWORK) == "a"
        assert store.get("a").is_host

    async def test_unknown_target(self, join: Callable[..., Any], election: HostElection) -> None:
        """Test a transfer to an identity without a session fails."""
        _ = join("a")
        with pytest.raises(UnknownTargetError):
            _ = election.transfer_host("a", "ghost")
        assert election.host_of(NETWORK) == "a"

    async def test_disconnected_target(
        self, join: Callable[..., Any], store: SessionStore, election: HostElection
    ) -> None:
        """Test a transfer to a session in its grace period fails."""
        _ = join("a")
        sink = join("b")
        _ = store.detach("b", sink)
        with pytest.raises(UnknownTargetError):
            _ = election.transfer_host("a", "b")
        assert election.host_of(NETWORK) == "a"

    async def test_cross_group_target(
        self, join: Callable[..., Any], store: SessionStore, election: HostElection
    ) -> None:
        """Test a transfer to another group fails and changes nothing."""
        _ = join("a", "10.1")
        _ = join("b", "10.2")
        with pytest.raises(CrossGroupTransferError):
            _ = election.transfer_host("a", "b")
        assert store.get("a").is_host
        assert store.get("b").is_host


class TestFailover:
    """Tests for host departure."""

    async def test_promotion_on_leave(
        self,
        join: Callable[..., Any],
        store: SessionStore,
        groups: GroupManager,
        election: HostElection,
    ) -> None:
        """Test a remaining member is promoted when the host leaves."""
        _ = join("a")
        _ = join("c")
        _ = join("b")
        _leave(store, groups, election, "a")
        assert election.host_of(NETWORK) == "b"
        assert store.get("b").is_host
        assert not store.get("c").is_host

    async def test_promotion_prefers_connected(
        self,
        join: Callable[..., Any],
        store: SessionStore,
        groups: GroupManager,
        election: HostElection,
    ) -> None:
        """Test a member inside its grace period is passed over for promotion."""
        _ = join("a")
        away = join("b")
        _ = join("c")
        _ = store.detach("b", away)
        _leave(store, groups, election, "a")
        assert election.host_of(NETWORK) == "c"
        assert store.get("c").is_host
        assert not store.get("b").is_host

    async def test_promotion_falls_back_to_disconnected(
        self,
        join: Callable[..., Any],
        store: SessionStore,
        groups: GroupManager,
        election: HostElection,
    ) -> None:
        """Test a disconnected member is promoted when nobody else is connected."""
        _ = join("a")
        away = join("b")
        _ = store.detach("b", away)
        _leave(store, groups, election, "a")
        assert election.host_of(NETWORK) == "b"

    async def test_last_member_leaves(
        self,
        join: Callable[..., Any],
        store: SessionStore,
        groups: GroupManager,
        election: HostElection,
    ) -> None:
        """Test an emptied group is destroyed without an election."""
        _ = join("a")
        _leave(store, groups, election, "a")
        assert groups.group(NETWORK) is None
        assert election.state(NETWORK) is ElectionState.NO_HOST

    async def test_follower_leave_keeps_host(
        self,
        join: Callable[..., Any],
        store: SessionStore,
        groups: GroupManager,
        election: HostElection,
    ) -> None:
        """Test a follower leaving does not trigger an election."""
        _ = join("a")
        _ = join("b")
        _leave(store, groups, election, "b")
        assert election.host_of(NETWORK) == "a"

    async def test_pending_failover_cancelled_by_return(
        self, join: Callable[..., Any], store: SessionStore, election: HostElection
    ) -> None:
        """Test a host returning within its grace period keeps its role."""
        sink = join("a")
        _ = join("b")
        _ = store.detach("a", sink)
        assert election.begin_failover("a") == NETWORK
        assert election.state(NETWORK) is ElectionState.FAILOVER_PENDING
        assert election.cancel_failover("a") is True
        assert election.state(NETWORK) is ElectionState.SETTLED
        assert store.get("a").is_host

    async def test_begin_failover_ignores_followers(
        self, join: Callable[..., Any], election: HostElection
    ) -> None:
        """Test only the host of a group starts a failover."""
        _ = join("a")
        _ = join("b")
        assert election.begin_failover("b") is None

    async def test_move_to_room(
        self,
        join: Callable[..., Any],
        store: SessionStore,
        groups: GroupManager,
        election: HostElection,
    ) -> None:
        """Test a host moving into a room hands its network group over."""
        _ = join("a")
        _ = join("b")
        code = groups.create_room("a")
        _ = election.on_leave(NETWORK, "a", was_host=True)
        _ = election.on_join(GroupKey(GroupKind.ROOM, code), "a")
        assert election.host_of(NETWORK) == "b"
        assert election.host_of(GroupKey(GroupKind.ROOM, code)) == "a"
        assert store.get("a").is_host
        assert store.get("b").is_host


class TestRandomSequences:
    """Tests for host uniqueness under arbitrary operation sequences."""

    @pytest.mark.parametrize("seed", range(5))
    async def test_single_host_per_group(
        self,
        seed: int,
        join: Callable[..., Any],
        store: SessionStore,
        groups: GroupManager,
        election: HostElection,
    ) -> None:
        """Test every non-empty group has exactly one host after each step."""
        rng = random.Random(seed)
        identities = [f"user-{i}" for i in range(6)]
        for _step in range(200):
            identity = rng.choice(identities)
            operation = rng.choice(["join", "leave", "transfer"])
            if operation == "join" and identity not in store:
                _ = join(identity, rng.choice(["10.1", "10.2"]))
            elif operation == "leave" and identity in store:
                _leave(store, groups, election, identity)
                _ = await store.remove(identity)
            elif operation == "transfer":
                try:
                    _ = election.transfer_host(identity, rng.choice(identities))
                except SoundSyncError:
                    pass
            _assert_single_host(store, groups)
