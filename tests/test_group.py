"""Tests for room and network-inferred group membership."""

import asyncio
import re

import pytest

from aiosoundsync.exceptions import RoomNotFoundError
from aiosoundsync.models import GroupKind
from aiosoundsync.server.group import (
    LOCAL_NETWORK_ID,
    MOBILE_HOTSPOT_NETWORK_ID,
    GroupKey,
    GroupManager,
    address_suffix,
    network_id_for_address,
    normalize_address,
)


class TestNetworkBuckets:
    """Tests for deriving network ids from origin addresses."""

    @pytest.mark.parametrize("address", ["127.0.0.1", "::1", "localhost", "::ffff:127.0.0.1"])
    def test_loopback(self, address: str) -> None:
        """Test loopback addresses share one local bucket."""
        assert network_id_for_address(address) == LOCAL_NETWORK_ID

    def test_ipv4_first_two_octets(self) -> None:
        """Test IPv4 addresses group by their first two octets."""
        assert network_id_for_address("10.1.2.3") == "10.1"
        assert network_id_for_address("10.1.200.7") == "10.1"
        assert network_id_for_address("10.2.2.3") == "10.2"

    @pytest.mark.parametrize("address", ["192.168.42.10", "192.168.43.129"])
    def test_mobile_hotspot(self, address: str) -> None:
        """Test mobile hotspot ranges map to a fixed bucket."""
        assert network_id_for_address(address) == MOBILE_HOTSPOT_NETWORK_ID

    def test_private_lan_not_hotspot(self) -> None:
        """Test an ordinary home LAN is not treated as hotspot."""
        assert network_id_for_address("192.168.1.20") == "192.168"

    def test_ipv6_first_four_segments(self) -> None:
        """Test IPv6 addresses group by their first four segments."""
        assert network_id_for_address("2001:db8:85a3:1:8a2e:370:7334:1") == "2001:db8:85a3:1"

    def test_mapped_ipv4_unwrapped(self) -> None:
        """Test IPv4-mapped IPv6 addresses are bucketed as IPv4."""
        assert normalize_address("::ffff:10.1.2.3") == "10.1.2.3"
        assert network_id_for_address("::ffff:10.1.2.3") == "10.1"

    def test_unknown_literal_bucket(self) -> None:
        """Test anything else falls back to a literal-address bucket."""
        assert network_id_for_address("unix-socket") == "unknown-unix-socket"

    def test_address_suffix(self) -> None:
        """Test only the last part of an address is exposed."""
        assert address_suffix("10.1.2.3") == "3"
        assert address_suffix("::ffff:10.1.2.44") == "44"
        assert address_suffix("2001:db8::7") == "7"


class TestRooms:
    """Tests for explicit rooms."""

    def test_create_room(self) -> None:
        """Test creating a room allocates a six character code with the caller inside."""
        groups = GroupManager()
        groups.set_network("a", "10.1")
        code = groups.create_room("a")
        assert re.fullmatch(r"[A-Z0-9]{6}", code)
        assert groups.room_key("a") == GroupKey(GroupKind.ROOM, code)
        assert groups.routing_key("a") == GroupKey(GroupKind.ROOM, code)
        group = groups.resolve_group("a")
        assert group is not None
        assert group.members == frozenset({"a"})

    def test_join_unknown_room(self) -> None:
        """Test joining an unknown code fails without moving the caller."""
        groups = GroupManager()
        groups.set_network("a", "10.1")
        with pytest.raises(RoomNotFoundError):
            groups.join_room("a", "NOPE00")
        assert groups.routing_key("a") == GroupKey(GroupKind.NETWORK, "10.1")

    def test_join_moves_out_of_previous_room(self) -> None:
        """Test joining leaves the previous room and destroys it when empty."""
        groups = GroupManager()
        old = groups.create_room("a")
        target = groups.create_room("b")
        group = groups.join_room("a", target)
        assert group.members == frozenset({"a", "b"})
        assert not groups.room_exists(old)

    def test_network_routing_excludes_room_members(self) -> None:
        """Test members in a room are not routed through their network group."""
        groups = GroupManager()
        for identity in ("a", "b", "c"):
            groups.set_network(identity, "10.1")
        code = groups.create_room("a")
        network = groups.group(GroupKey(GroupKind.NETWORK, "10.1"))
        assert network is not None
        assert network.members == frozenset({"b", "c"})
        assert groups.network_size("10.1") == 3
        assert groups.recipients_for("b", exclude=("b",)) == {"c"}
        assert groups.recipients_for("a") == {"a"}
        assert groups.room_exists(code)

    def test_set_network_moves_bucket(self) -> None:
        """Test a session moving networks leaves its old bucket."""
        groups = GroupManager()
        groups.set_network("a", "10.1")
        left = groups.set_network("a", "10.2")
        assert left == GroupKey(GroupKind.NETWORK, "10.1")
        assert groups.group(left) is None
        assert groups.set_network("a", "10.2") is None

    def test_remove_member(self) -> None:
        """Test removing a member leaves every group and clears its host slot."""
        groups = GroupManager()
        groups.set_network("a", "10.1")
        groups.set_network("b", "10.1")
        code = groups.create_room("a")
        groups.join_room("b", code)
        key = GroupKey(GroupKind.ROOM, code)
        groups.set_host(key, "a")
        left = groups.remove_member("a")
        assert set(left) == {key, GroupKey(GroupKind.NETWORK, "10.1")}
        group = groups.group(key)
        assert group is not None
        assert group.host is None
        assert group.members == frozenset({"b"})

    def test_set_host_requires_routed_member(self) -> None:
        """Test a host must be a routed member of the group."""
        groups = GroupManager()
        groups.set_network("a", "10.1")
        groups.set_network("b", "10.1")
        groups.create_room("b")
        with pytest.raises(ValueError, match="not a member"):
            groups.set_host(GroupKey(GroupKind.NETWORK, "10.1"), "b")


class TestLocks:
    """Tests for per-group serialization."""

    async def test_opposite_order_does_not_deadlock(self) -> None:
        """Test multi-group locking is ordered regardless of argument order."""
        groups = GroupManager()
        first = GroupKey(GroupKind.ROOM, "AAAAAA")
        second = GroupKey(GroupKind.NETWORK, "10.1")
        order: list[str] = []

        async def hold(name: str, *keys: GroupKey) -> None:
            async with groups.locked(*keys):
                order.append(name)
                await asyncio.sleep(0.01)

        await asyncio.wait_for(
            asyncio.gather(hold("x", first, second), hold("y", second, first)), timeout=1
        )
        assert sorted(order) == ["x", "y"]

    async def test_locks_freed_with_destroyed_groups(self) -> None:
        """Test the lock of a destroyed group does not outlive it."""
        groups = GroupManager()
        network = GroupKey(GroupKind.NETWORK, "10.1")
        for index in range(20):
            identity = f"user-{index}"
            async with groups.locked(network):
                _ = groups.set_network(identity, "10.1")
                code = groups.create_room(identity)
            async with groups.locked(network, GroupKey(GroupKind.ROOM, code)):
                _ = groups.remove_member(identity)
        assert list(groups.groups()) == []
        assert groups._locks == {}
        assert groups._lock_users == {}

    async def test_lock_kept_for_waiter(self) -> None:
        """Test a task waiting on a destroyed group still gets exclusive access."""
        groups = GroupManager()
        key = GroupKey(GroupKind.NETWORK, "10.1")
        _ = groups.set_network("a", "10.1")
        inside: list[str] = []

        async def waiter() -> None:
            async with groups.locked(key):
                inside.append("waiter")

        async with groups.locked(key):
            task = asyncio.create_task(waiter())
            await asyncio.sleep(0)
            _ = groups.remove_member("a")
            await asyncio.sleep(0)
            assert inside == []
            assert key in groups._locks
        await asyncio.wait_for(task, timeout=1)
        assert inside == ["waiter"]
        assert groups._locks == {}

    async def test_unrelated_groups_run_concurrently(self) -> None:
        """Test locks of different groups do not block each other."""
        groups = GroupManager()
        key_a = GroupKey(GroupKind.ROOM, "AAAAAA")
        key_b = GroupKey(GroupKind.ROOM, "BBBBBB")
        async with groups.locked(key_a):
            assert not groups.lock(key_b).locked()
            async with asyncio.timeout(0.5):
                async with groups.locked(key_b):
                    pass
