"""WebSocket endpoint hosting one listening session per open practice page.

Protocol messages (client → server):
  {"action": "mount", "audio_url": "...", "title": "...", "category": "...",
   "capabilities": {"wake_lock": true, "media_session": true}}      (first message)
  {"action": "player_loaded"} / {"action": "player_failed"}
  {"action": "player_rendered"}
  {"action": "element_added", "element_id": "a1", "paused": true}
  {"action": "element_removed", "element_id": "a1"}
  {"action": "player_event", "event": "play"}
  {"action": "media_event", "element_id": "a1", "event": "playing"}
  {"action": "click"}
  {"action": "tick", "element_id": "a1", "current_time": 12.5, "duration": 900, "paused": false}
  {"action": "visibility", "state": "visible"}
  {"action": "wake_lock_released"}

Server → client messages have {"type": ..., "data": ...} shape:
  state, wake_lock ({"action": "request"|"release"}), media_session, error.
"""
from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect

from .aggregator import SignalAggregator
from .config import DEFAULT_TIMING, SessionTiming
from .recorder import ProgressClient, Session, SessionRecorder
from .surface import MediaElement, PlayerContainer, PlayerWidget
from .wake_lock import MediaMetadata, WakeLockCoordinator

logger = logging.getLogger("listen_ws")

Sender = Callable[[dict], Awaitable[None]]


class RemoteWakeLock:
    def __init__(self, send: Sender):
        self._send = send

    async def release(self) -> None:
        await self._send({"type": "wake_lock", "data": {"action": "release"}})


class RemoteWakeLockProvider:
    """Asks the page to hold ``navigator.wakeLock``; denial comes back as wake_lock_released."""

    def __init__(self, send: Sender):
        self._send = send

    async def request(self, kind: str) -> RemoteWakeLock:
        await self._send({"type": "wake_lock", "data": {"action": "request", "kind": kind}})
        return RemoteWakeLock(self._send)


class RemoteMediaSession:
    def __init__(self, send: Sender):
        self._send = send

    async def set_metadata(self, metadata: MediaMetadata) -> None:
        await self._send({"type": "media_session", "data": metadata.to_dict()})


class ListeningSession:
    """Aggregator + recorder + wake lock for one mounted practice page."""

    def __init__(
        self,
        practice_id: str,
        client: ProgressClient,
        send: Sender,
        *,
        audio_url: str = "",
        title: str = "",
        category: Optional[str] = None,
        capabilities: Optional[dict] = None,
        timing: SessionTiming = DEFAULT_TIMING,
    ):
        capabilities = capabilities or {}
        self.practice_id = practice_id
        self.audio_url = audio_url
        self.title = title or "Audio"
        self.timing = timing
        self._send = send

        self.session = Session(practice_id)
        self.container = PlayerContainer()
        self.wake_lock = WakeLockCoordinator(
            RemoteWakeLockProvider(send) if capabilities.get("wake_lock") else None,
            RemoteMediaSession(send) if capabilities.get("media_session") else None,
            label=f"{practice_id}:{self.session.session_id}",
        )
        self.recorder = SessionRecorder(
            self.session,
            client,
            self.wake_lock,
            timing=timing,
            metadata=MediaMetadata.for_practice(self.title, category),
            on_change=self._send_state,
        )
        self.aggregator: Optional[SignalAggregator] = None

    async def start(self) -> None:
        await self.recorder.load_listen_count()
        await self._send_state(self.recorder.snapshot())

    def load_player(self, widget: Optional[PlayerWidget]) -> None:
        """Mount the aggregator for a freshly loaded (or failed) widget."""
        if self.aggregator is not None:
            self.aggregator.unmount()
        self.container.clear()
        self.aggregator = SignalAggregator(
            self.practice_id,
            self.container,
            widget,
            self.recorder.on_first_play,
            timing=self.timing,
        )
        self.aggregator.mount()

    async def handle(self, msg: dict) -> None:
        action = msg.get("action", "")

        if action == "player_loaded":
            self.load_player(PlayerWidget(self.audio_url, self.title))

        elif action == "player_failed":
            logger.warning(f"[{self.practice_id}] Player script failed to load")
            self.load_player(None)

        elif action == "player_rendered":
            if self.container.find_player() is None:
                self.container.render()

        elif action == "element_added":
            root = self.container.find_player() or self.container.render()
            element = MediaElement(str(msg.get("element_id", "")), paused=bool(msg.get("paused", True)))
            await root.add_element(element)

        elif action == "element_removed":
            root = self.container.find_player()
            if root is not None:
                root.remove_element(str(msg.get("element_id", "")))

        elif action == "player_event":
            if self.aggregator is not None and self.aggregator.widget is not None:
                await self.aggregator.widget.emit(str(msg.get("event", "")))

        elif action == "media_event":
            element = self._element(msg)
            if element is not None:
                event = str(msg.get("event", ""))
                if event in ("play", "playing"):
                    element.paused = False
                elif event in ("pause", "ended"):
                    element.paused = True
                await element.dispatch(event)

        elif action == "click":
            await self.container.click()

        elif action == "tick":
            element = self._element(msg)
            try:
                current_time = float(msg.get("current_time", 0))
                duration = msg.get("duration")
                duration = float(duration) if duration is not None else None
            except (TypeError, ValueError):
                logger.warning(f"[{self.practice_id}] Skipping malformed tick: {msg}")
                return
            paused = bool(msg.get("paused", False))
            if element is not None:
                element.paused = paused
                element.update_position(current_time, duration)
            self.recorder.update_playback(current_time, duration, paused=paused)
            await self._send_state(self.recorder.snapshot())

        elif action == "visibility":
            await self.wake_lock.on_visibility_changed(str(msg.get("state", "")))

        elif action == "wake_lock_released":
            self.wake_lock.on_platform_release()

        else:
            logger.debug(f"[{self.practice_id}] Unknown action {action!r}")

    async def close(self) -> None:
        """Navigation away: drop listeners, abandon the timer, let an issued write finish."""
        if self.aggregator is not None:
            self.aggregator.unmount()
        await self.recorder.teardown()
        await self.recorder.wait_for_write()

    def _element(self, msg: dict) -> Optional[MediaElement]:
        root = self.container.find_player()
        if root is None:
            return None
        return root.find(str(msg.get("element_id", "")))

    async def _send_state(self, snapshot: dict) -> None:
        await self._send({"type": "state", "data": snapshot})


async def websocket_listen(
    ws: WebSocket,
    practice_id: str,
    client: Optional[ProgressClient],
    *,
    timing: SessionTiming = DEFAULT_TIMING,
):
    """WebSocket handler at /ws/listen/{practice_id}."""
    await ws.accept()
    closed = False

    async def send(data: dict) -> None:
        nonlocal closed
        if closed:
            return
        try:
            await ws.send_json(data)
        except WebSocketDisconnect:
            closed = True
        except Exception as e:
            logger.warning(f"WS [{practice_id}] send failed: {e}")

    if client is None:
        await send({"type": "error", "data": {"message": "Unauthorized"}})
        await ws.close()
        return

    try:
        first = json.loads(await ws.receive_text())
    except (WebSocketDisconnect, json.JSONDecodeError):
        logger.info(f"WS [{practice_id}] closed before mount")
        return

    if not isinstance(first, dict) or first.get("action") != "mount":
        await send({"type": "error", "data": {"message": "Expected mount"}})
        await ws.close()
        return

    session = ListeningSession(
        practice_id,
        client,
        send,
        audio_url=str(first.get("audio_url", "")),
        title=str(first.get("title", "")),
        category=first.get("category"),
        capabilities=first.get("capabilities") or {},
        timing=timing,
    )
    logger.info(f"WS [{practice_id}:{session.session.session_id}] session opened")
    await session.start()

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(msg, dict):
                continue
            logger.debug(f"WS [{practice_id}] action={msg.get('action')} {msg}")
            await session.handle(msg)

    except WebSocketDisconnect:
        closed = True
        logger.info(f"WS [{practice_id}] client disconnected")
    except Exception as e:
        logger.error(f"WS [{practice_id}] error: {e}")
    finally:
        await session.close()
