"""In-process model of the embedded audio player and the page around it.

The player widget is a black box: it renders asynchronously, may replace its
media elements at any time and reports playback through several unreliable
channels. The listening WebSocket mirrors what the browser sees into these
objects so the aggregator can observe them the same way a page script would.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[str], Awaitable[None]]
ClickHandler = Callable[[], Awaitable[None]]
MutationCallback = Callable[[List["MediaElement"]], Awaitable[None]]


class PlayerError(Exception):
    """Raised by the widget API when the widget is unusable."""


class MediaElement:
    """A single <audio>-like element inside the player."""

    def __init__(self, element_id: str, *, paused: bool = True):
        self.element_id = element_id
        self.paused = paused
        self.current_time = 0.0
        self.duration: float | None = None
        self.attributes: Dict[str, str] = {}
        self._listeners: Dict[str, List[EventHandler]] = {}

    def set_attribute(self, name: str, value: str) -> None:
        self.attributes[name] = value

    def add_listener(self, event: str, handler: EventHandler) -> None:
        self._listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: EventHandler) -> None:
        try:
            self._listeners.get(event, []).remove(handler)
        except ValueError:
            pass

    def listener_count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(handlers) for handlers in self._listeners.values())

    async def dispatch(self, event: str) -> None:
        for handler in list(self._listeners.get(event, [])):
            await handler(event)

    async def set_paused(self, paused: bool) -> None:
        """Flip the paused flag, firing the events a browser would."""
        if paused == self.paused:
            return
        self.paused = paused
        if paused:
            await self.dispatch("pause")
        else:
            await self.dispatch("play")
            await self.dispatch("playing")

    def update_position(self, current_time: float, duration: float | None) -> None:
        self.current_time = current_time
        if duration is not None:
            self.duration = duration

    def __repr__(self):
        return f"<MediaElement {self.element_id} paused={self.paused}>"


class PlayerRoot:
    """The element the widget renders into; holds its media elements."""

    def __init__(self) -> None:
        self._elements: List[MediaElement] = []
        self._observers: List[MutationCallback] = []

    def media_elements(self) -> List[MediaElement]:
        return list(self._elements)

    def find(self, element_id: str) -> Optional[MediaElement]:
        for element in self._elements:
            if element.element_id == element_id:
                return element
        return None

    def observe(self, callback: MutationCallback) -> Callable[[], None]:
        """Call *callback* with newly added elements. Returns a disconnect callable."""
        self._observers.append(callback)

        def _disconnect() -> None:
            try:
                self._observers.remove(callback)
            except ValueError:
                pass  # already disconnected

        return _disconnect

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def add_element(self, element: MediaElement) -> MediaElement:
        self._elements.append(element)
        for callback in list(self._observers):
            await callback([element])
        return element

    def remove_element(self, element_id: str) -> None:
        self._elements = [e for e in self._elements if e.element_id != element_id]


class PlayerContainer:
    """The page-owned box the widget is mounted in."""

    def __init__(self) -> None:
        self._root: Optional[PlayerRoot] = None
        self._click_handlers: List[ClickHandler] = []

    def render(self, root: PlayerRoot | None = None) -> PlayerRoot:
        """Called once the widget has produced its root element."""
        self._root = root or PlayerRoot()
        return self._root

    def clear(self) -> None:
        self._root = None

    def find_player(self) -> Optional[PlayerRoot]:
        return self._root

    def add_click_listener(self, handler: ClickHandler) -> None:
        self._click_handlers.append(handler)

    def remove_click_listener(self, handler: ClickHandler) -> None:
        try:
            self._click_handlers.remove(handler)
        except ValueError:
            pass

    @property
    def click_listener_count(self) -> int:
        return len(self._click_handlers)

    async def click(self) -> None:
        for handler in list(self._click_handlers):
            await handler()


class PlayerWidget:
    """Event-subscription API exposed by the third-party player."""

    def __init__(self, audio_url: str, title: str = "Audio"):
        self.audio_url = audio_url
        self.title = title
        self.destroyed = False
        self._handlers: Dict[str, List[EventHandler]] = {}

    def on(self, event: str, handler: EventHandler) -> None:
        if self.destroyed:
            raise PlayerError("player has been destroyed")
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        try:
            self._handlers.get(event, []).remove(handler)
        except ValueError:
            pass

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def emit(self, event: str) -> None:
        for handler in list(self._handlers.get(event, [])):
            await handler(event)

    def destroy(self) -> None:
        if self.destroyed:
            raise PlayerError("player already destroyed")
        self.destroyed = True
        self._handlers.clear()
        logger.debug(f"Player for {self.audio_url} destroyed")
