"""Clock synchronization of a follower's Player to the host timeline."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum

from .player import Player

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Tunables of the clock sync and predictive sync engines."""

    window_size: int = 5
    """Number of timing samples the median offset is computed over."""
    stale_after: float = 5.0
    """Seconds without a timing update after which correction is suspended."""
    tick_interval: float = 0.05
    fine_threshold: float = 0.3
    """Below this difference the position is corrected with a gentle rate nudge."""
    fine_gain: float = 0.1
    fine_max_adjust: float = 0.05
    tight_threshold: float = 0.05
    seek_threshold: float = 0.5
    """At or above this difference the player seeks to the expected position."""
    coarse_gain: float = 0.2
    coarse_max_adjust: float = 0.1
    coarse_min_rate: float = 0.85
    coarse_max_rate: float = 1.15

    predictive_interval: float = 0.1
    predictive_ignore: float = 0.1
    predictive_nudge_limit: float = 0.5
    predictive_nudge: float = 0.02
    predictive_nudge_duration: float = 0.8
    predictive_emergency: float = 2.0
    predictive_seek_probability: float = 0.2

    def __post_init__(self) -> None:
        """Validate the configuration."""
        if self.window_size < 1:
            raise ValueError("window_size must be at least 1")
        if self.tick_interval <= 0 or self.predictive_interval <= 0:
            raise ValueError("tick intervals must be positive")
        if not self.tight_threshold < self.seek_threshold:
            raise ValueError("tight_threshold must be below seek_threshold")
        if not 0.0 <= self.predictive_seek_probability <= 1.0:
            raise ValueError("predictive_seek_probability must be within [0, 1]")


@dataclass(frozen=True, slots=True)
class SyncSample:
    """One host timing broadcast as seen by the follower."""

    local_receive_time: float
    """Local monotonic clock in seconds when the update arrived."""
    host_reported_time: float
    """Host playback position in seconds."""
    latency_ms: float
    """Per-follower latency the server attached to the update."""

    def offset(self, baseline: float) -> float:
        """Host position projected by the latency, relative to the local clock baseline."""
        projected = self.host_reported_time + self.latency_ms / 1_000
        return projected - (self.local_receive_time - baseline)


class CorrectionAction(Enum):
    """What a sync tick did to the player."""

    NONE = "none"
    RATE = "rate"
    SEEK = "seek"
    SUSPENDED = "suspended"


@dataclass(frozen=True, slots=True)
class Correction:
    """Decision of one sync tick."""

    action: CorrectionAction
    rate: float = 1.0
    position: float | None = None
    """Seek target for SEEK corrections."""
    diff: float = 0.0
    """Signed expected minus local position, in seconds."""
    reason: str | None = None
    """Why correction is suspended: ``stale``, ``not-playing``, ``not-ready`` or ``no-sync``."""


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


class _TickLoop:
    """Runs ``tick()`` periodically on the event loop."""

    _task: asyncio.Task[None] | None = None
    _interval: float

    def tick(self) -> Correction:
        raise NotImplementedError

    @property
    def running(self) -> bool:
        """Whether the periodic task is running."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic task on the running loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Stop the periodic task."""
        if self._task is None:
            return
        _ = self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                _ = self.tick()
            except Exception:
                logger.exception("Sync tick failed")
            await asyncio.sleep(self._interval)


class ClockSyncEngine(_TickLoop):
    """
    Keeps a follower's Player on the host timeline.

    Each timing update adds a sample to a small sliding window. The active
    offset is the median of the window, which rejects a single sample skewed by
    a latency spike. Every tick compares the local position with the expected
    one and nudges the playback rate, or seeks when the difference is large.
    Correction is suspended while the player is not playing or has not
    buffered enough media, or when no update arrived for ``stale_after``
    seconds; the rate is then reset to neutral.
    """

    def __init__(
        self,
        player: Player,
        config: SyncConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the engine for ``player``."""
        self._player = player
        self.config = config or SyncConfig()
        self._clock = clock
        self._interval = self.config.tick_interval
        self._baseline = clock()
        self._samples: deque[SyncSample] = deque(maxlen=self.config.window_size)
        self._offset: float | None = None
        self._last_synced_at: float | None = None

    @property
    def offset(self) -> float | None:
        """Active median offset, None before the first update."""
        return self._offset

    @property
    def last_synced_at(self) -> float | None:
        """Local clock time of the latest update."""
        return self._last_synced_at

    @property
    def samples(self) -> tuple[SyncSample, ...]:
        """Samples currently in the window, oldest first."""
        return tuple(self._samples)

    def is_stale(self, now: float | None = None) -> bool:
        """Whether the latest update is too old to correct against."""
        if self._last_synced_at is None:
            return True
        now = self._clock() if now is None else now
        return now - self._last_synced_at >= self.config.stale_after

    def update(self, host_time: float, latency_ms: float) -> float:
        """Add a host timing update and return the new active offset."""
        now = self._clock()
        self._samples.append(SyncSample(now, host_time, latency_ms))
        offsets = sorted(sample.offset(self._baseline) for sample in self._samples)
        self._offset = offsets[len(offsets) // 2]
        self._last_synced_at = now
        logger.debug(
            "Sync update: host %.3fs, latency %.1fms, offset %.3fs",
            host_time,
            latency_ms,
            self._offset,
        )
        return self._offset

    def reset(self) -> None:
        """Forget every sample, used after the host jumped in its timeline."""
        self._samples.clear()
        self._offset = None
        self._last_synced_at = None

    def expected_position(self, now: float | None = None) -> float | None:
        """Position the player should be at, None before the first update."""
        if self._offset is None:
            return None
        now = self._clock() if now is None else now
        return (now - self._baseline) + self._offset

    def evaluate(self, now: float | None = None) -> Correction:
        """Decide the correction for the current state without applying it."""
        now = self._clock() if now is None else now
        if not self._player.playing:
            return Correction(CorrectionAction.SUSPENDED, reason="not-playing")
        if not self._player.ready:
            return Correction(CorrectionAction.SUSPENDED, reason="not-ready")
        expected = self.expected_position(now)
        if expected is None:
            return Correction(CorrectionAction.SUSPENDED, reason="no-sync")
        if self.is_stale(now):
            return Correction(CorrectionAction.SUSPENDED, reason="stale")

        cfg = self.config
        signed = expected - self._player.current_time
        diff = abs(signed)
        if diff < cfg.fine_threshold:
            rate = 1.0 + _sign(signed) * min(diff * cfg.fine_gain, cfg.fine_max_adjust)
            rate = max(1.0 - cfg.fine_max_adjust, min(1.0 + cfg.fine_max_adjust, rate))
            return Correction(CorrectionAction.RATE, rate=rate, diff=signed)
        if cfg.tight_threshold < diff < cfg.seek_threshold:
            rate = 1.0 + _sign(signed) * min(diff * cfg.coarse_gain, cfg.coarse_max_adjust)
            rate = max(cfg.coarse_min_rate, min(cfg.coarse_max_rate, rate))
            return Correction(CorrectionAction.RATE, rate=rate, diff=signed)
        return Correction(CorrectionAction.SEEK, position=expected, diff=signed)

    def apply(self, correction: Correction) -> None:
        """Apply ``correction`` to the player."""
        player = self._player
        match correction.action:
            case CorrectionAction.SUSPENDED:
                if player.playback_rate != 1.0:
                    player.set_playback_rate(1.0)
            case CorrectionAction.RATE:
                if player.playback_rate != correction.rate:
                    player.set_playback_rate(correction.rate)
            case CorrectionAction.SEEK:
                assert correction.position is not None
                logger.info(
                    "Large sync difference (%.3fs), seeking to %.3fs",
                    correction.diff,
                    correction.position,
                )
                player.set_playback_rate(1.0)
                player.seek(correction.position)
            case CorrectionAction.NONE:
                pass

    def tick(self) -> Correction:
        """Evaluate and apply one correction."""
        correction = self.evaluate()
        self.apply(correction)
        return correction


class PredictiveSync(_TickLoop):
    """
    Coarse sync for sparse timing updates.

    Between updates the host position is dead-reckoned from the latest one.
    Small drifts get a fixed rate nudge that reverts on its own, moderate
    drifts a seek that only fires with a fixed probability per tick and large
    drifts an immediate seek.
    """

    def __init__(
        self,
        player: Player,
        config: SyncConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Initialize predictive sync for ``player``."""
        self._player = player
        self.config = config or SyncConfig()
        self._clock = clock
        self._rng = rng
        self._interval = self.config.predictive_interval
        self._host_time: float | None = None
        self._received_at = 0.0
        self._revert_at: float | None = None

    def update(self, host_time: float, latency_ms: float = 0.0) -> None:
        """Record the latest host position."""
        self._host_time = host_time + latency_ms / 1_000
        self._received_at = self._clock()

    def reset(self) -> None:
        """Forget the latest host position."""
        self._host_time = None
        self._revert_at = None

    def predicted_position(self, now: float | None = None) -> float | None:
        """Dead-reckoned host position."""
        if self._host_time is None:
            return None
        now = self._clock() if now is None else now
        return self._host_time + (now - self._received_at)

    def tick(self) -> Correction:
        """Run one predictive correction step."""
        cfg = self.config
        now = self._clock()
        player = self._player
        if self._revert_at is not None and now >= self._revert_at:
            self._revert_at = None
            player.set_playback_rate(1.0)

        predicted = self.predicted_position(now)
        if not player.playing or not player.ready or predicted is None:
            return Correction(CorrectionAction.NONE)

        drift = player.current_time - predicted
        abs_drift = abs(drift)
        if abs_drift < cfg.predictive_ignore:
            return Correction(CorrectionAction.NONE, diff=-drift)
        if abs_drift < cfg.predictive_nudge_limit:
            rate = 1.0 - cfg.predictive_nudge if drift > 0 else 1.0 + cfg.predictive_nudge
            player.set_playback_rate(rate)
            self._revert_at = now + cfg.predictive_nudge_duration
            return Correction(CorrectionAction.RATE, rate=rate, diff=-drift)
        if abs_drift < cfg.predictive_emergency:
            if self._rng() >= cfg.predictive_seek_probability:
                return Correction(CorrectionAction.NONE, diff=-drift)
            logger.info("Predictive sync: seeking to fix drift of %.3fs", drift)
        else:
            logger.info("Predictive sync: emergency seek for drift of %.3fs", drift)
        player.seek(predicted)
        return Correction(CorrectionAction.SEEK, position=predicted, diff=-drift)
