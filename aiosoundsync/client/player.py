"""Player and capturer interfaces, plus an in-memory player."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Protocol

logger = logging.getLogger(__name__)


class Player(Protocol):
    """A local media player whose position the sync engines correct."""

    @property
    def current_time(self) -> float:
        """Playback position in seconds."""
        ...

    @property
    def playback_rate(self) -> float:
        """Current playback rate, 1.0 is neutral."""
        ...

    @property
    def playing(self) -> bool:
        """Whether the player is actively playing."""
        ...

    @property
    def ready(self) -> bool:
        """Whether enough media is loaded to play or seek."""
        ...

    def load(self, url: str) -> None:
        """Load the media at ``url``."""
        ...

    def play(self) -> None:
        """Start or resume playback."""
        ...

    def pause(self) -> None:
        """Pause playback."""
        ...

    def seek(self, position: float) -> None:
        """Jump to ``position`` seconds."""
        ...

    def set_playback_rate(self, rate: float) -> None:
        """Change the playback rate."""
        ...


class Capturer(Protocol):
    """Produces the host's live audio as mono float samples in [-1, 1]."""

    def frames(self) -> AsyncIterator[Sequence[float]]:
        """Yield captured frames as they become available."""
        ...


class VirtualPlayer:
    """
    Player without audio output, driven by a monotonic clock.

    The position advances with the clock multiplied by the playback rate while
    playing. Used by the CLI and by tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize a paused player at position zero."""
        self._clock = clock
        self._position = 0.0
        self._anchor = clock()
        self._rate = 1.0
        self._playing = False
        self._ready = True
        self.url: str | None = None
        self.seek_count = 0

    def _advance(self) -> None:
        now = self._clock()
        if self._playing:
            self._position += (now - self._anchor) * self._rate
        self._anchor = now

    @property
    def current_time(self) -> float:
        """Playback position in seconds."""
        if not self._playing:
            return self._position
        return self._position + (self._clock() - self._anchor) * self._rate

    @property
    def playback_rate(self) -> float:
        """Current playback rate."""
        return self._rate

    @property
    def playing(self) -> bool:
        """Whether the player is playing."""
        return self._playing

    @property
    def ready(self) -> bool:
        """Whether the simulated media is buffered."""
        return self._ready

    @ready.setter
    def ready(self, ready: bool) -> None:
        self._ready = ready

    def load(self, url: str) -> None:
        """Remember ``url`` and rewind."""
        self.url = url
        self._position = 0.0
        self._anchor = self._clock()

    def play(self) -> None:
        """Start advancing the position."""
        self._advance()
        self._playing = True

    def pause(self) -> None:
        """Freeze the position."""
        self._advance()
        self._playing = False

    def seek(self, position: float) -> None:
        """Jump to ``position``."""
        self._advance()
        self._position = max(position, 0.0)
        self.seek_count += 1
        logger.debug("Virtual player seeked to %.3fs", self._position)

    def set_playback_rate(self, rate: float) -> None:
        """Change the rate from now on."""
        self._advance()
        self._rate = rate
