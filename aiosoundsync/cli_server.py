"""Command-line interface for running a SoundSync server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import socket
import sys
import uuid
from collections.abc import Sequence

from aiohttp import web
from zeroconf import IPVersion
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from aiosoundsync.server import (
    GroupDeletedEvent,
    HostChangedEvent,
    ServerConfig,
    SessionAddedEvent,
    SessionRemovedEvent,
    SoundSyncEvent,
    SoundSyncServer,
)
from aiosoundsync.server.config import DEFAULT_PATH, SERVICE_TYPE

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the soundsync server."""
    defaults = ServerConfig()
    parser = argparse.ArgumentParser(description="Run a SoundSync server")
    parser.add_argument("--host", default="0.0.0.0", help="Address to listen on")  # noqa: S104
    parser.add_argument("--port", type=int, default=8928, help="Port to listen on")
    parser.add_argument("--path", default=DEFAULT_PATH, help="WebSocket endpoint path")
    parser.add_argument(
        "--name",
        default=f"SoundSync on {socket.gethostname()}",
        help="Name advertised over mDNS",
    )
    parser.add_argument(
        "--host-grace",
        type=float,
        default=defaults.host_grace,
        help="Seconds a disconnected host keeps its role before failover",
    )
    parser.add_argument(
        "--follower-grace",
        type=float,
        default=defaults.follower_grace,
        help="Seconds a disconnected follower is kept before removal",
    )
    parser.add_argument(
        "--probe-interval",
        type=float,
        default=defaults.probe_interval,
        help="Seconds between latency probes",
    )
    parser.add_argument(
        "--no-mdns",
        action="store_true",
        help="Do not advertise the server over mDNS",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    return parser.parse_args(argv)


def _local_address() -> str:
    """Best-effort LAN address of this machine."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("10.255.255.255", 1))
            return str(sock.getsockname()[0])
        except OSError:
            return "127.0.0.1"


async def _log_event(event: SoundSyncEvent) -> None:
    match event:
        case SessionAddedEvent(identity=identity):
            logger.info("Session added: %s", identity)
        case SessionRemovedEvent(identity=identity):
            logger.info("Session removed: %s", identity)
        case HostChangedEvent():
            logger.info(
                "Host of %s %s: %s -> %s",
                event.kind.value,
                event.group_id,
                event.previous_host,
                event.new_host,
            )
        case GroupDeletedEvent():
            logger.info("Group %s %s deleted", event.kind.value, event.group_id)


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point executing the asynchronous server workflow."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))

    try:
        config = ServerConfig(
            host_grace=args.host_grace,
            follower_grace=args.follower_grace,
            probe_interval=args.probe_interval,
            path=args.path,
        )
    except ValueError as err:
        logger.error("Invalid configuration: %s", err)  # noqa: TRY400
        return 2

    loop = asyncio.get_running_loop()
    server = SoundSyncServer(loop, f"soundsync-{uuid.uuid4().hex[:8]}", config=config)
    _ = server.add_event_listener(_log_event)

    runner = web.AppRunner(server.create_app())
    await runner.setup()
    site = web.TCPSite(runner, args.host, args.port)
    await site.start()
    logger.info("SoundSync server listening on ws://%s:%d%s", args.host, args.port, config.path)

    zeroconf: AsyncZeroconf | None = None
    info: AsyncServiceInfo | None = None
    if not args.no_mdns:
        address = _local_address()
        info = AsyncServiceInfo(
            SERVICE_TYPE,
            f"{args.name}.{SERVICE_TYPE}",
            addresses=[socket.inet_aton(address)],
            port=args.port,
            properties={"path": config.path},
            server=f"{socket.gethostname()}.local.",
        )
        zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)
        await zeroconf.async_register_service(info)
        logger.info("Advertising %s on %s via mDNS", SERVICE_TYPE, address)

    stop = asyncio.Event()
    loop.add_signal_handler(signal.SIGINT, stop.set)
    loop.add_signal_handler(signal.SIGTERM, stop.set)
    try:
        await stop.wait()
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)
        if zeroconf is not None:
            if info is not None:
                await zeroconf.async_unregister_service(info)
            await zeroconf.async_close()
        await runner.cleanup()
    return 0


def main() -> int:
    """Run the SoundSync server."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
