"""
SignalBus - one-shot play latch shared by the raw "audio is playing" sources.

The player widget API, media element events and the click probe all publish
normalised SignalEvents here. The first event published while the bus is
open wins: it resolves ``played`` and is handed to the play handlers. Every
later event is counted per source and dropped, so a mounted player yields at
most one play no matter how many sources report it or how they interleave.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Awaitable, List, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums & data
# ---------------------------------------------------------------------------

class SignalType(enum.Enum):
    """Where a raw playback signal came from."""
    PLAYER_API = "player_api"
    MEDIA_ELEMENT = "media_element"
    INTERACTION_PROBE = "interaction_probe"


@dataclass
class SignalEvent:
    """A single raw playback signal."""
    signal_type: SignalType
    practice_id: str
    timestamp: float
    data: dict = field(default_factory=dict)


PlayHandler = Callable[[SignalEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# SignalBus
# ---------------------------------------------------------------------------

class SignalBus:
    """Collapses raw playback signals for one mounted player into one play.

    Usage
    -----
    >>> bus = SignalBus("p1")
    >>> bus.open()                      # inside the running loop
    >>> unsub = bus.on_play(handler)    # called once, with the winning event
    >>> await bus.publish(SignalEvent(...))
    True
    >>> await bus.publish(SignalEvent(...))
    False
    >>> bus.close()
    """

    def __init__(self, practice_id: str) -> None:
        self.practice_id = practice_id
        self.winner: Optional[SignalEvent] = None
        self.played: Optional[asyncio.Future] = None
        self.received: Counter = Counter()
        self._handlers: List[PlayHandler] = []
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def has_fired(self) -> bool:
        return self.winner is not None

    @property
    def dropped(self) -> int:
        """Signals that arrived after the winner (or while closed)."""
        return sum(self.received.values()) - (1 if self.winner is not None else 0)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Start accepting signals. Must be called inside a running loop."""
        if self._open:
            return
        self._open = True
        self.played = asyncio.get_running_loop().create_future()

    def close(self) -> None:
        """Stop accepting signals and drop handlers. Safe to call repeatedly."""
        self._open = False
        self._handlers.clear()
        if self.played is not None and not self.played.done():
            self.played.cancel()

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    def on_play(self, handler: PlayHandler) -> Callable[[], None]:
        """Register *handler* to receive the winning event.

        Returns a callable that, when invoked, removes the handler.
        """
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass  # already removed

        return _unsubscribe

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, event: SignalEvent) -> bool:
        """Offer *event* to the latch. Returns True only for the winning event.

        The check-and-set happens before the first await, so concurrent
        publishers cannot both win.
        """
        self.received[event.signal_type] += 1
        if not self._open or self.winner is not None:
            logger.debug(
                f"[{self.practice_id}] Dropping {event.signal_type.value} signal "
                f"({'closed' if not self._open else 'already played'})"
            )
            return False

        self.winner = event
        logger.info(f"[{self.practice_id}] Audio play detected via {event.signal_type.value}")
        if self.played is not None and not self.played.done():
            self.played.set_result(event)

        handlers = list(self._handlers)
        if handlers:
            await asyncio.gather(*(h(event) for h in handlers))
        return True
