"""Round-trip latency probes for connected sessions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress

logger = logging.getLogger(__name__)

SendProbe = Callable[[str, float], bool]
LatencyCallback = Callable[[str, float], None]


class _Probe:
    """Probe loop state of one session."""

    __slots__ = ("sent_at", "task", "waiter")

    def __init__(self) -> None:
        self.task: asyncio.Task[None] | None = None
        self.waiter: asyncio.Future[float] | None = None
        self.sent_at: float | None = None


class LatencyEstimator:
    """
    Measures the one-way latency of every connected session.

    A probe carrying the send timestamp goes out at connect time and again
    ``interval`` seconds after each answer. The one-way latency is half the
    round trip and overwrites the previous value, smoothing happens on the
    follower.
    """

    _probes: dict[str, _Probe]

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        send_probe: SendProbe,
        on_measured: LatencyCallback,
        *,
        interval: float = 3.0,
        timeout: float = 10.0,
    ) -> None:
        """
        Initialize the estimator.

        Args:
            loop: Event loop running the probe tasks.
            send_probe: Sends a ping with the given timestamp (ms) to an identity.
            on_measured: Called with the identity and its new latency in ms.
            interval: Seconds between an answer and the next probe.
            timeout: Seconds to wait for an answer before probing again.
        """
        self._loop = loop
        self._send_probe = send_probe
        self._on_measured = on_measured
        self._interval = interval
        self._timeout = timeout
        self._probes = {}

    def now_ms(self) -> float:
        """Monotonic server clock in milliseconds."""
        return self._loop.time() * 1_000

    def start(self, identity: str) -> None:
        """Start probing ``identity``, restarting any previous probe loop."""
        self.stop(identity)
        probe = self._probes[identity] = _Probe()
        probe.task = self._loop.create_task(self._run(identity, probe))

    def stop(self, identity: str) -> None:
        """Stop probing ``identity``."""
        probe = self._probes.pop(identity, None)
        if probe is not None and probe.task is not None and not probe.task.done():
            _ = probe.task.cancel()

    def is_probing(self, identity: str) -> bool:
        """Whether a probe loop is running for ``identity``."""
        probe = self._probes.get(identity)
        return bool(probe and probe.task and not probe.task.done())

    def handle_pong(self, identity: str, timestamp: float) -> float | None:
        """
        Process the answer to a probe.

        Returns the measured one-way latency in milliseconds, or None if the
        answer does not match an outstanding probe.
        """
        probe = self._probes.get(identity)
        if probe is None or probe.waiter is None or probe.waiter.done():
            logger.debug("Unexpected pong from %s", identity)
            return None
        if probe.sent_at is None or timestamp != probe.sent_at:
            logger.debug("Pong from %s does not match the outstanding probe", identity)
            return None
        latency = max(self.now_ms() - timestamp, 0.0) / 2
        probe.waiter.set_result(latency)
        return latency

    async def _run(self, identity: str, probe: _Probe) -> None:
        while True:
            probe.sent_at = self.now_ms()
            probe.waiter = self._loop.create_future()
            if not self._send_probe(identity, probe.sent_at):
                logger.debug("Could not send latency probe to %s", identity)
            try:
                async with asyncio.timeout(self._timeout):
                    latency = await probe.waiter
            except TimeoutError:
                logger.debug("Latency probe to %s timed out", identity)
                continue
            finally:
                probe.waiter = None
            logger.debug("Measured latency for %s: %.1fms", identity, latency)
            self._on_measured(identity, latency)
            await asyncio.sleep(self._interval)

    async def close(self) -> None:
        """Stop all probe loops."""
        probes = list(self._probes.values())
        self._probes.clear()
        for probe in probes:
            if probe.task is not None:
                _ = probe.task.cancel()
        for probe in probes:
            if probe.task is not None:
                with suppress(asyncio.CancelledError):
                    await probe.task
