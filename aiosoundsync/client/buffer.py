"""Follower-side jitter buffer and host-side pacing of streamed audio."""

from __future__ import annotations

import base64
import binascii
import logging
import sys
import time
from array import array
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

PCM_MAX = 0x7FFF


def encode_pcm(samples: Sequence[float]) -> str:
    """Encode float samples in [-1, 1] as base64 of 16-bit little-endian PCM."""
    pcm = array("h", (int(max(-1.0, min(1.0, s)) * PCM_MAX) for s in samples))
    if sys.byteorder == "big":
        pcm.byteswap()
    return base64.b64encode(pcm.tobytes()).decode("ascii")


def decode_pcm(encoded: str) -> list[float]:
    """
    Decode a chunk produced by encode_pcm.

    Raises ValueError if the chunk is not valid base64 of 16-bit samples.
    """
    try:
        raw = base64.b64decode(encoded, validate=True)
    except binascii.Error as err:
        raise ValueError(f"Invalid base64 audio chunk: {err}") from err
    if len(raw) % 2:
        raise ValueError(f"Audio chunk has odd length {len(raw)}")
    pcm = array("h")
    pcm.frombytes(raw)
    if sys.byteorder == "big":
        pcm.byteswap()
    return [sample / PCM_MAX for sample in pcm]


@dataclass(frozen=True, slots=True)
class BufferConfig:
    """Thresholds of the jitter buffer and the host send interval."""

    start_threshold: int = 5
    """Chunks needed before playback starts or resumes."""
    max_chunks: int = 15
    """Hard ceiling; the oldest chunks are dropped past it."""
    low_water: int = 2
    """Below this queue length a late chunk sends the buffer back to buffering."""
    rebuffer_latency_ms: float = 300.0
    send_interval_ms: float = 50.0
    """Minimum interval between two chunks sent by the host."""

    def __post_init__(self) -> None:
        """Validate the thresholds."""
        if not 0 < self.low_water <= self.start_threshold <= self.max_chunks:
            raise ValueError("Expected 0 < low_water <= start_threshold <= max_chunks")
        if self.send_interval_ms < 0:
            raise ValueError("send_interval_ms must not be negative")


class BufferState(Enum):
    """Playback state of a StreamBuffer."""

    BUFFERING = "buffering"
    PLAYING = "playing"


@dataclass(frozen=True, slots=True)
class StreamChunk:
    """A decoded audio chunk and the host wall clock time it was captured at."""

    samples: list[float]
    origin_timestamp: float
    """Host wall clock in milliseconds."""


class StreamBuffer:
    """
    Ordered jitter buffer of one follower.

    Chunks are pushed as they arrive and pulled by playback. Playback only
    starts once ``start_threshold`` chunks are queued, and only goes back to
    buffering when the queue runs low *and* the chunk just played arrived late,
    so a short queue alone does not cause rebuffering.
    """

    def __init__(
        self,
        config: BufferConfig | None = None,
        *,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize an empty buffer in the buffering state."""
        self.config = config or BufferConfig()
        self._wall_clock = wall_clock
        self._chunks: deque[StreamChunk] = deque()
        self._state = BufferState.BUFFERING
        self.dropped = 0
        """Chunks dropped because the ceiling was reached."""
        self.decode_errors = 0
        """Chunks skipped because they could not be decoded."""
        self.last_latency_ms: float | None = None

    @property
    def state(self) -> BufferState:
        """Current playback state."""
        return self._state

    def __len__(self) -> int:
        """Number of queued chunks."""
        return len(self._chunks)

    def push(self, chunk: StreamChunk) -> int:
        """Queue ``chunk``, returning the number of old chunks dropped to make room."""
        self._chunks.append(chunk)
        overflow = len(self._chunks) - self.config.max_chunks
        for _ in range(max(overflow, 0)):
            _ = self._chunks.popleft()
        if overflow > 0:
            self.dropped += overflow
            logger.warning("Stream buffer overflow, dropped %d oldest chunk(s)", overflow)
        return max(overflow, 0)

    def push_encoded(self, encoded: str, origin_timestamp: float) -> bool:
        """Decode and queue a chunk; a chunk that fails to decode is skipped."""
        try:
            samples = decode_pcm(encoded)
        except ValueError as err:
            self.decode_errors += 1
            logger.warning("Skipping undecodable audio chunk: %s", err)
            return False
        _ = self.push(StreamChunk(samples, origin_timestamp))
        return True

    def pop(self, now_ms: float | None = None) -> StreamChunk | None:
        """
        Take the next chunk to play.

        Returns None while buffering or when the queue is empty.
        """
        cfg = self.config
        if self._state is BufferState.BUFFERING:
            if len(self._chunks) < cfg.start_threshold:
                return None
            self._state = BufferState.PLAYING
            logger.info("Buffered %d chunks, starting playback", len(self._chunks))
        if not self._chunks:
            return None

        chunk = self._chunks.popleft()
        now_ms = self._wall_clock() * 1_000 if now_ms is None else now_ms
        latency = now_ms - chunk.origin_timestamp
        self.last_latency_ms = latency
        if len(self._chunks) < cfg.low_water and latency > cfg.rebuffer_latency_ms:
            self._state = BufferState.BUFFERING
            logger.info("High stream latency: %.0fms, starting rebuffer", latency)
        return chunk

    def clear(self) -> None:
        """Drop every queued chunk and go back to buffering."""
        self._chunks.clear()
        self._state = BufferState.BUFFERING
        self.last_latency_ms = None


class ChunkThrottle:
    """Lets at most one chunk through per ``interval_ms``."""

    def __init__(
        self, interval_ms: float = 50.0, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        """Initialize the throttle; the first chunk always passes."""
        self._interval_ms = interval_ms
        self._clock = clock
        self._last_sent: float | None = None
        self.skipped = 0

    def ready(self, now_ms: float | None = None) -> bool:
        """Return True and mark a send if the interval has elapsed."""
        now_ms = self._clock() * 1_000 if now_ms is None else now_ms
        if self._last_sent is not None and now_ms - self._last_sent < self._interval_ms:
            self.skipped += 1
            return False
        self._last_sent = now_ms
        return True

    def reset(self) -> None:
        """Let the next chunk through immediately."""
        self._last_sent = None
