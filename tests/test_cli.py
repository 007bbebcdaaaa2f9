"""Tests for CLI helpers."""

import asyncio
from dataclasses import dataclass, field

from aiosoundsync.cli import CLIState, _service_url, _ServiceDiscoveryListener, parse_args
from aiosoundsync.cli_server import parse_args as parse_server_args
from aiosoundsync.models.core import UserInfo, UsersUpdatePayload
from aiosoundsync.server.config import SERVICE_TYPE


@dataclass
class _Info:
    addresses: list[str]
    port: int | None = 8928
    properties: dict[bytes, bytes | None] = field(default_factory=lambda: {b"path": b"/soundsync"})

    def parsed_addresses(self) -> list[str]:
        return self.addresses


class _Zeroconf:
    """Answers service lookups from a table, optionally held until released."""

    def __init__(self) -> None:
        self.infos: dict[str, _Info] = {}
        self.release = asyncio.Event()
        self.release.set()

    async def async_get_service_info(self, _service_type: str, name: str) -> _Info | None:
        await self.release.wait()
        return self.infos.get(name)


async def _settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


class TestServiceUrl:
    """Tests for building the server URL from an mDNS advertisement."""

    def test_path_property(self) -> None:
        """Test the advertised path is used."""
        url = _service_url(["10.0.0.2"], 8928, {b"path": b"/sync"})
        assert url == "ws://10.0.0.2:8928/sync"

    def test_default_path(self) -> None:
        """Test a missing or empty path falls back to the default endpoint."""
        assert _service_url(["10.0.0.2"], 80, {}) == "ws://10.0.0.2:80/soundsync"
        assert _service_url(["10.0.0.2"], 80, {b"path": b""}) == "ws://10.0.0.2:80/soundsync"

    def test_relative_path_and_ipv6(self) -> None:
        """Test relative paths are rooted and IPv6 hosts bracketed."""
        assert _service_url(["fe80::1"], 80, {b"path": b"ws"}) == "ws://[fe80::1]:80/ws"

    def test_prefers_ipv4(self) -> None:
        """Test an IPv4 address wins over IPv6 addresses listed before it."""
        assert _service_url(["fe80::1", "10.0.0.2"], 80, {}) == "ws://10.0.0.2:80/soundsync"

    def test_no_address(self) -> None:
        """Test an advertisement without addresses yields no URL."""
        assert _service_url([], 80, {}) is None


class TestServiceDiscoveryListener:
    """Tests for tracking advertised servers as they come and go."""

    async def test_first_server(self) -> None:
        """Test the first resolved advertisement completes the initial wait."""
        zeroconf = _Zeroconf()
        zeroconf.infos["a"] = _Info(["10.0.0.2"])
        listener = _ServiceDiscoveryListener(asyncio.get_running_loop())
        listener.add_service(zeroconf, SERVICE_TYPE, "a")  # type: ignore[arg-type]
        url = await asyncio.wait_for(listener.wait_for_first(), timeout=1)
        assert url == "ws://10.0.0.2:8928/soundsync"
        assert listener.current_url == url

    async def test_removal_falls_back_to_remaining_server(self) -> None:
        """Test removing one server keeps the others reachable."""
        zeroconf = _Zeroconf()
        zeroconf.infos["a"] = _Info(["10.0.0.2"])
        zeroconf.infos["b"] = _Info(["10.0.0.3"])
        listener = _ServiceDiscoveryListener(asyncio.get_running_loop())
        listener.add_service(zeroconf, SERVICE_TYPE, "a")  # type: ignore[arg-type]
        await _settle()
        listener.add_service(zeroconf, SERVICE_TYPE, "b")  # type: ignore[arg-type]
        await _settle()
        assert listener.current_url == "ws://10.0.0.3:8928/soundsync"

        listener.remove_service(zeroconf, SERVICE_TYPE, "b")  # type: ignore[arg-type]
        assert listener.current_url == "ws://10.0.0.2:8928/soundsync"
        listener.remove_service(zeroconf, SERVICE_TYPE, "unknown")  # type: ignore[arg-type]
        assert listener.servers == {"a": "ws://10.0.0.2:8928/soundsync"}
        listener.remove_service(zeroconf, SERVICE_TYPE, "a")  # type: ignore[arg-type]
        assert listener.current_url is None

    async def test_update_replaces_address(self) -> None:
        """Test a re-announced server is tracked at its new address."""
        zeroconf = _Zeroconf()
        zeroconf.infos["a"] = _Info(["10.0.0.2"])
        listener = _ServiceDiscoveryListener(asyncio.get_running_loop())
        listener.add_service(zeroconf, SERVICE_TYPE, "a")  # type: ignore[arg-type]
        await _settle()
        zeroconf.infos["a"] = _Info(["10.0.0.9"], port=9000)
        listener.update_service(zeroconf, SERVICE_TYPE, "a")  # type: ignore[arg-type]
        await _settle()
        assert listener.servers == {"a": "ws://10.0.0.9:9000/soundsync"}

    async def test_removed_during_lookup(self) -> None:
        """Test a server going offline while being resolved is not resurrected."""
        zeroconf = _Zeroconf()
        zeroconf.infos["a"] = _Info(["10.0.0.2"])
        zeroconf.release.clear()
        listener = _ServiceDiscoveryListener(asyncio.get_running_loop())
        listener.add_service(zeroconf, SERVICE_TYPE, "a")  # type: ignore[arg-type]
        await _settle()
        listener.remove_service(zeroconf, SERVICE_TYPE, "a")  # type: ignore[arg-type]
        zeroconf.release.set()
        await _settle()
        assert listener.current_url is None
        assert listener.servers == {}

    async def test_unusable_info_ignored(self) -> None:
        """Test advertisements without a port or address are skipped."""
        zeroconf = _Zeroconf()
        zeroconf.infos["a"] = _Info(["10.0.0.2"], port=None)
        zeroconf.infos["b"] = _Info([])
        listener = _ServiceDiscoveryListener(asyncio.get_running_loop())
        for name in ("a", "b", "missing"):
            listener.add_service(zeroconf, SERVICE_TYPE, name)  # type: ignore[arg-type]
        await _settle()
        assert listener.servers == {}
        listener.close()


class TestCLIState:
    """Tests for the mirrored group state."""

    def test_update_and_describe(self) -> None:
        """Test membership updates are reported once and rendered."""
        state = CLIState()
        payload = UsersUpdatePayload(
            users=[
                UserInfo(identity="alice", is_host=True, address_suffix="12"),
                UserInfo(identity="bob", is_host=False, address_suffix="13"),
            ],
            group_id="ABC123",
        )
        assert state.update_users(payload) is True
        assert state.update_users(payload) is False
        assert state.describe("bob") == (
            "Group ABC123:\n  alice [..12] (host)\n  bob [..13] <- you"
        )


class TestArguments:
    """Tests for command line parsing."""

    def test_client_defaults(self) -> None:
        """Test the client discovers the server when no URL is given."""
        args = parse_args([])
        assert args.url is None
        assert args.room is None

    def test_server_options(self) -> None:
        """Test server timers can be overridden."""
        args = parse_server_args(["--port", "9000", "--host-grace", "2.5", "--no-mdns"])
        assert args.port == 9000
        assert args.host_grace == 2.5
        assert args.no_mdns is True
