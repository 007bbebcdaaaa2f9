"""Command-line interface for running a SoundSync client."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, cast

if TYPE_CHECKING:
    from zeroconf import ServiceListener

import aioconsole
from aiohttp import ClientError
from zeroconf.asyncio import AsyncServiceBrowser, AsyncZeroconf

from aiosoundsync.client import SoundSyncClient, VirtualPlayer
from aiosoundsync.models.core import UserInfo, UsersUpdatePayload
from aiosoundsync.models.playback import AudioControlPayload
from aiosoundsync.models.room import (
    HostTransferResultPayload,
    JoinResultPayload,
    RoomCreatedPayload,
)
from aiosoundsync.server.config import DEFAULT_PATH, SERVICE_TYPE

logger = logging.getLogger(__name__)


@dataclass
class CLIState:
    """Holds state mirrored from the server for CLI presentation."""

    users: list[UserInfo] = field(default_factory=list)
    group_id: str | None = None

    def update_users(self, payload: UsersUpdatePayload) -> bool:
        """Store a membership update and report if anything changed."""
        changed = payload.users != self.users or payload.group_id != self.group_id
        self.users = list(payload.users)
        self.group_id = payload.group_id
        return changed

    def describe(self, identity: str) -> str:
        """Return a human-friendly description of the group."""
        lines = [f"Group {self.group_id or '-'}:"]
        for user in self.users:
            marker = " (host)" if user.is_host else ""
            me = " <- you" if user.identity == identity else ""
            lines.append(f"  {user.identity} [..{user.address_suffix}]{marker}{me}")
        return "\n".join(lines)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the soundsync client."""
    parser = argparse.ArgumentParser(description="Run a SoundSync CLI client")
    parser.add_argument(
        "--url",
        default=None,
        help=("WebSocket URL of the SoundSync server. If omitted, discover via mDNS."),
    )
    parser.add_argument(
        "--id",
        default=None,
        help="Durable identity of this client, random when omitted",
    )
    parser.add_argument(
        "--room",
        default=None,
        help="Room code to join on connect",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    return parser.parse_args(argv)


def _service_url(
    addresses: Sequence[str], port: int, properties: Mapping[bytes, bytes | None]
) -> str | None:
    """Build the WebSocket URL of an advertised server, preferring an IPv4 address."""
    if not addresses:
        return None
    host = next((address for address in addresses if ":" not in address), addresses[0])
    raw_path = properties.get(b"path")
    path = raw_path.decode("utf-8", "ignore") if raw_path else DEFAULT_PATH
    path = "/" + path.lstrip("/")
    host_fmt = f"[{host}]" if ":" in host else host
    return f"ws://{host_fmt}:{port}{path}"


class _ServiceDiscoveryListener:
    """Tracks SoundSync servers advertised via mDNS, keyed by service name."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._servers: dict[str, str] = {}
        self._lookups: dict[str, asyncio.Task[None]] = {}
        self._first_result: asyncio.Future[str] = loop.create_future()

    @property
    def current_url(self) -> str | None:
        """URL of the most recently announced server still online, if any."""
        return next(reversed(self._servers.values()), None)

    @property
    def servers(self) -> dict[str, str]:
        """Online servers by service name."""
        return dict(self._servers)

    async def wait_for_first(self) -> str:
        """Wait for the first server to be discovered."""
        return await self._first_result

    def close(self) -> None:
        """Cancel lookups still in flight."""
        for task in self._lookups.values():
            _ = task.cancel()
        self._lookups.clear()

    async def _lookup(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        try:
            info = await zeroconf.async_get_service_info(service_type, name)
        finally:
            if self._lookups.get(name) is asyncio.current_task():
                del self._lookups[name]
        if info is None or info.port is None:
            logger.debug("No usable service info for %s", name)
            return
        url = _service_url(info.parsed_addresses(), info.port, info.properties)
        if url is None:
            logger.debug("Service %s advertises no address", name)
            return
        if self._servers.pop(name, None) != url:
            logger.info("Found SoundSync server %s at %s", name, url)
        self._servers[name] = url
        if not self._first_result.done():
            self._first_result.set_result(url)

    def _schedule(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        if (pending := self._lookups.pop(name, None)) is not None:
            _ = pending.cancel()
        self._lookups[name] = self._loop.create_task(self._lookup(zeroconf, service_type, name))

    def add_service(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        self._schedule(zeroconf, service_type, name)

    def update_service(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        self._schedule(zeroconf, service_type, name)

    def remove_service(self, _zeroconf: AsyncZeroconf, _service_type: str, name: str) -> None:
        """Forget a server that went offline, falling back to any other still online."""
        if (pending := self._lookups.pop(name, None)) is not None:
            _ = pending.cancel()
        url = self._servers.pop(name, None)
        if url is not None:
            logger.info("SoundSync server %s at %s went offline", name, url)


class ServiceDiscovery:
    """Manages continuous discovery of SoundSync servers via mDNS."""

    def __init__(self) -> None:
        """Initialize the service discovery manager."""
        self._listener: _ServiceDiscoveryListener | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._zeroconf: AsyncZeroconf | None = None

    async def start(self) -> None:
        """Start continuous discovery (keeps running until stop() is called)."""
        loop = asyncio.get_running_loop()
        self._listener = _ServiceDiscoveryListener(loop)
        self._zeroconf = AsyncZeroconf()
        try:
            self._browser = AsyncServiceBrowser(
                self._zeroconf.zeroconf, SERVICE_TYPE, cast("ServiceListener", self._listener)
            )
        except Exception:
            await self.stop()
            raise

    async def wait_for_first_server(self) -> str:
        """Wait indefinitely for the first server to be discovered."""
        if self._listener is None:
            raise RuntimeError("Discovery not started. Call start() first.")
        return await self._listener.wait_for_first()

    def current_url(self) -> str | None:
        """Get the current discovered server URL, or None if no servers."""
        return self._listener.current_url if self._listener else None

    async def stop(self) -> None:
        """Stop discovery and clean up resources."""
        if self._listener:
            self._listener.close()
        if self._browser:
            await self._browser.async_cancel()
            self._browser = None
        if self._zeroconf:
            await self._zeroconf.async_close()
            self._zeroconf = None
        self._listener = None


async def _sleep_interruptible(duration: float, keyboard_task: asyncio.Task[None]) -> bool:
    """Sleep with keyboard interrupt support. Return True if interrupted."""
    remaining = duration
    while remaining > 0 and not keyboard_task.done():
        await asyncio.sleep(min(0.5, remaining))
        remaining -= 0.5
    return keyboard_task.done()


async def _connection_loop(
    client: SoundSyncClient,
    discovery: ServiceDiscovery,
    initial_url: str,
    keyboard_task: asyncio.Task[None],
) -> None:
    """
    Run the connection loop with automatic reconnection on disconnect.

    The client reconnects with the same identity, so a reconnect within the
    server's grace period keeps its role and room. Uses exponential backoff
    (up to 5 min) for connection errors.
    """
    url = initial_url
    error_backoff = 1.0
    max_backoff = 300.0

    while not keyboard_task.done():
        try:
            await client.connect(url)
            _print_event(f"Connected to {url} as {client.identity}")
            error_backoff = 1.0

            while client.connected and not keyboard_task.done():  # noqa: ASYNC110
                await asyncio.sleep(0.5)

            if keyboard_task.done():
                break
            logger.info("Connection lost")
            _print_event("Connection lost, reconnecting...")
            url = discovery.current_url() or url
        except (TimeoutError, OSError, ClientError) as e:
            logger.debug(
                "Connection error (%s), retrying in %.0fs", type(e).__name__, error_backoff
            )
            _print_event(f"Connection error, retrying in {error_backoff:.0f}s...")
            if await _sleep_interruptible(error_backoff, keyboard_task):
                break
            url = discovery.current_url() or url
            error_backoff = min(error_backoff * 2, max_backoff)
        except Exception:
            logger.exception("Unexpected error during connection")
            _print_event("Unexpected error occurred")
            await asyncio.sleep(error_backoff)
            error_backoff = min(error_backoff * 2, max_backoff)


def _register_listeners(client: SoundSyncClient, state: CLIState) -> None:
    def on_users(payload: UsersUpdatePayload) -> None:
        if state.update_users(payload):
            _print_event(state.describe(client.identity))

    def on_host_status(is_host: bool) -> None:
        _print_event("You are the host" if is_host else "You are a follower")

    def on_room(payload: RoomCreatedPayload | JoinResultPayload) -> None:
        if isinstance(payload, RoomCreatedPayload):
            _print_event(f"Room created: {payload.room_code}")
        elif payload.success:
            _print_event(f"Joined room {payload.room_code}")
        else:
            _print_event(f"Could not join room: {payload.error}")

    def on_transfer(payload: HostTransferResultPayload) -> None:
        if payload.success:
            _print_event(f"Host transferred to {payload.new_host_identity}")
        else:
            _print_event(f"Host transfer failed: {payload.error}")

    def on_control(payload: AudioControlPayload) -> None:
        position = f" at {payload.time:.1f}s" if payload.time is not None else ""
        _print_event(f"Host: {payload.action.value}{position}")

    client.add_users_listener(on_users)
    client.add_host_status_listener(on_host_status)
    client.add_room_listener(on_room)
    client.add_transfer_listener(on_transfer)
    client.add_control_listener(on_control)


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point executing the asynchronous CLI workflow."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))

    state = CLIState()
    client = SoundSyncClient(
        args.id or f"cli-{uuid.uuid4().hex[:8]}",
        player=VirtualPlayer(),
        room_code=args.room,
    )
    _register_listeners(client, state)

    discovery = ServiceDiscovery()
    await discovery.start()

    try:
        url = args.url
        if url is None:
            logger.info("Waiting for mDNS discovery of SoundSync server...")
            _print_event("Searching for SoundSync server...")
            try:
                url = await discovery.wait_for_first_server()
                _print_event(f"Found server at {url}")
            except Exception:
                logger.exception("Failed to discover server")
                return 1

        _print_instructions()
        keyboard_task = asyncio.create_task(_keyboard_loop(client, state))

        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.debug("Received interrupt signal, shutting down...")
            keyboard_task.cancel()

        loop.add_signal_handler(signal.SIGINT, signal_handler)

        try:
            await _connection_loop(client, discovery, url, keyboard_task)
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            logger.debug("Connection loop cancelled")
        finally:
            loop.remove_signal_handler(signal.SIGINT)
            await client.disconnect()
    finally:
        await discovery.stop()

    return 0


async def _keyboard_loop(client: SoundSyncClient, state: CLIState) -> None:
    try:
        while True:
            try:
                line = await aioconsole.ainput()
            except EOFError:
                break
            parts = line.strip().split()
            if not parts:
                continue
            keyword = parts[0].lower()
            if keyword in {"quit", "exit", "q"}:
                break
            try:
                await _run_command(client, state, keyword, parts[1:])
            except RuntimeError as err:
                _print_event(str(err))
            except ValueError:
                _print_event("Invalid value")
    except asyncio.CancelledError:
        logger.debug("Keyboard loop cancelled, exiting gracefully")
        raise


async def _run_command(
    client: SoundSyncClient, state: CLIState, keyword: str, args: list[str]
) -> None:
    match keyword, args:
        case "create", []:
            await client.create_room()
        case "join", [code]:
            await client.join_room(code)
        case "follow", [host_identity]:
            await client.auto_join_host(host_identity)
        case "transfer", [identity]:
            await client.transfer_host(identity)
        case "users", []:
            _print_event(state.describe(client.identity))
        case "status", []:
            _print_event(_describe_status(client))
        case ("play" | "p"), []:
            await client.play()
        case ("play" | "p"), [url]:
            await client.play(url)
        case "pause", []:
            await client.pause()
        case "seek", [position]:
            await client.seek(float(position))
        case _:
            _print_event("Unknown command")


def _describe_status(client: SoundSyncClient) -> str:
    player = client.player
    lines = [
        f"Identity: {client.identity} ({'host' if client.is_host else 'follower'})",
        f"Room: {client.room_code or '-'}",
        f"Latency: {client.latency_ms:.1f} ms",
        f"Position: {player.current_time:.2f}s ({'playing' if player.playing else 'paused'}, "
        f"rate {player.playback_rate:.3f})",
    ]
    if (offset := client.sync.offset) is not None:
        lines.append(f"Sync offset: {offset:.3f}s")
    if client.discovered_users:
        nearby = ", ".join(user.identity for user in client.discovered_users)
        lines.append(f"On this network: {nearby}")
    return "\n".join(lines)


def _print_event(message: str) -> None:
    print(message, flush=True)  # noqa: T201


def _print_instructions() -> None:
    print(  # noqa: T201
        (
            "Commands: create, join <code>, follow <host>, transfer <identity>, users, status,\n"
            "  play [url], pause, seek <seconds>, quit(q)"
        ),
        flush=True,
    )


def main() -> int:
    """Run the CLI client."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
