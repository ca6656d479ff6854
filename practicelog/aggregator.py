"""Collapses the player's noisy playback signals into one logical "play".

Three sources feed the SignalBus:

* the widget's own event API (``play`` / ``playing``),
* ``play`` / ``playing`` events on every media element, including elements
  the widget creates or replaces later (observed via mutation callbacks),
* a click probe: after a click inside the container, check whether any
  media element is unpaused.

The bus latches on the first of them; the aggregator forwards that one play
to its callback.
One instance belongs to one mounted player; remounting means a new instance.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, Union

from .config import DEFAULT_TIMING, SessionTiming
from .signal_bus import SignalBus, SignalEvent, SignalType
from .surface import MediaElement, PlayerContainer, PlayerError, PlayerRoot, PlayerWidget
from .watcher import watch_until

logger = logging.getLogger(__name__)

PlayCallback = Callable[[], Union[None, Awaitable[Any]]]


class SignalAggregator:
    """Emits a single play occurrence per mounted player."""

    PLAY_EVENTS = ("play", "playing")

    def __init__(
        self,
        practice_id: str,
        container: PlayerContainer,
        widget: Optional[PlayerWidget],
        on_play: Optional[PlayCallback] = None,
        *,
        timing: SessionTiming = DEFAULT_TIMING,
        bus: Optional[SignalBus] = None,
    ):
        self.practice_id = practice_id
        self.container = container
        self.widget = widget
        self.timing = timing
        self.bus = bus or SignalBus(practice_id)
        self._on_play = on_play

        self.fire_count = 0
        self.attached = False

        self._mounted = False
        self._root: Optional[PlayerRoot] = None
        self._elements: List[MediaElement] = []
        self._widget_events: List[str] = []
        self._click_installed = False
        self._disconnect_observer: Optional[Callable[[], None]] = None
        self._unsubscribe_bus: Optional[Callable[[], None]] = None
        self._attach_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def _tag(self) -> str:
        return f"{self.practice_id}:aggregator"

    @property
    def has_fired(self) -> bool:
        return self.bus.has_fired

    @property
    def played(self) -> Optional[asyncio.Future]:
        """One-shot result, resolved with the winning SignalEvent."""
        return self.bus.played

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def mount(self) -> None:
        """Start watching for the player. Must be called inside a running loop."""
        if self._mounted:
            return
        self._mounted = True
        self.bus.open()
        self._unsubscribe_bus = self.bus.on_play(self._on_play_detected)

        if self.widget is None:
            logger.info(f"[{self._tag}] Player widget did not load - play detection disabled")
            return

        self._attach_task = asyncio.create_task(self._attach())

    def unmount(self) -> None:
        """Release every listener, observer and task. Safe to call repeatedly."""
        if not self._mounted:
            return
        self._mounted = False
        logger.info(f"[{self._tag}] Cleaning up player listeners")

        if self._attach_task and not self._attach_task.done():
            self._attach_task.cancel()
        self._attach_task = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        if self._disconnect_observer is not None:
            self._disconnect_observer()
            self._disconnect_observer = None

        if self._click_installed:
            self.container.remove_click_listener(self._on_click)
            self._click_installed = False

        for element in self._elements:
            for event in self.PLAY_EVENTS:
                element.remove_listener(event, self._on_media_event)
            element.remove_listener("canplay", self._on_canplay)
        self._elements.clear()

        if self.widget is not None:
            for event in self._widget_events:
                self.widget.off(event, self._on_widget_event)
            self._widget_events.clear()
            try:
                self.widget.destroy()
            except PlayerError as e:
                logger.debug(f"[{self._tag}] Ignoring widget destroy error: {e}")

        if self._unsubscribe_bus is not None:
            self._unsubscribe_bus()
            self._unsubscribe_bus = None
        self.bus.close()

        self._root = None
        self.attached = False

    # ------------------------------------------------------------------
    # Attaching to the player
    # ------------------------------------------------------------------

    async def _attach(self) -> None:
        result = await watch_until(
            self._setup_handlers,
            attempts=self.timing.attach_max_attempts,
            interval=self.timing.attach_interval,
            initial_delay=self.timing.attach_initial_delay,
            label=self._tag,
        )
        if not result.success:
            logger.warning(
                f"[{self._tag}] Player element never appeared - play will not be detected"
            )

    def _setup_handlers(self) -> bool:
        root = self.container.find_player()
        if root is None:
            logger.debug(f"[{self._tag}] Player element not found yet")
            return False
        self._root = root

        for event in self.PLAY_EVENTS:
            try:
                self.widget.on(event, self._on_widget_event)
                self._widget_events.append(event)
            except PlayerError as e:
                logger.warning(f"[{self._tag}] Player API error: {e}")
                break

        existing = root.media_elements()
        logger.info(f"[{self._tag}] Found {len(existing)} media elements")
        for element in existing:
            self._attach_element(element)

        self._disconnect_observer = root.observe(self._on_elements_added)
        self.container.add_click_listener(self._on_click)
        self._click_installed = True
        self.attached = True

        self._spawn(self._tune_elements())
        return True

    def _attach_element(self, element: MediaElement) -> None:
        if any(known is element for known in self._elements):
            return
        self._elements.append(element)
        for event in self.PLAY_EVENTS:
            element.add_listener(event, self._on_media_event)
        element.add_listener("canplay", self._on_canplay)

    async def _on_elements_added(self, elements: List[MediaElement]) -> None:
        if elements:
            logger.info(f"[{self._tag}] {len(elements)} new media element(s) detected")
        for element in elements:
            self._attach_element(element)

    async def _tune_elements(self) -> None:
        # Keep playback alive in the background on mobile browsers.
        await asyncio.sleep(self.timing.element_tune_delay)
        if self._root is None:
            return
        for element in self._root.media_elements():
            element.set_attribute("playsinline", "true")
            element.set_attribute("preload", "auto")

    # ------------------------------------------------------------------
    # Raw signal sources
    # ------------------------------------------------------------------

    async def _on_widget_event(self, event: str) -> None:
        await self._publish(SignalType.PLAYER_API, event=event)

    async def _on_media_event(self, event: str) -> None:
        await self._publish(SignalType.MEDIA_ELEMENT, event=event)

    async def _on_canplay(self, event: str) -> None:
        logger.debug(f"[{self._tag}] Media element can play")

    async def _on_click(self) -> None:
        self._spawn(self._probe_after_click())

    async def _probe_after_click(self) -> None:
        await asyncio.sleep(self.timing.probe_delay)
        if self._root is None:
            return
        if any(not element.paused for element in self._root.media_elements()):
            await self._publish(SignalType.INTERACTION_PROBE, event="click")

    async def _publish(self, signal_type: SignalType, **data) -> None:
        if not self._mounted:
            return
        await self.bus.publish(
            SignalEvent(
                signal_type=signal_type,
                practice_id=self.practice_id,
                timestamp=time.monotonic(),
                data=data,
            )
        )

    # ------------------------------------------------------------------
    # Play
    # ------------------------------------------------------------------

    async def _on_play_detected(self, event: SignalEvent) -> None:
        # Only ever called by the bus for the winning signal.
        self.fire_count += 1
        if self._on_play is not None:
            result = self._on_play()
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self._tag}] Background task failed: {exc}")
