"""Turns the first detected play into exactly one recorded completion.

State machine per Session::

    IDLE --first play--> ARMED --timer started--> COUNTING --dwell elapsed--> RECORDED

RECORDED is terminal. Navigating away (teardown) before the dwell elapses
abandons the timer and no write is ever issued.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Protocol

from .config import DEFAULT_TIMING, SessionTiming
from .progress_client import ProgressClientError
from .wake_lock import MediaMetadata, WakeLockCoordinator

logger = logging.getLogger(__name__)


class RecorderState(enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    COUNTING = "counting"
    RECORDED = "recorded"


@dataclass
class Session:
    """Ephemeral tracking state of one open practice view."""
    practice_id: str
    has_fired: bool = False
    is_recorded: bool = False
    remaining_seconds: int = 0
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


class ProgressClient(Protocol):
    async def fetch_progress(self) -> Dict[str, int]: ...

    async def add_progress(self, practice_id: str) -> dict: ...


ChangeCallback = Callable[[dict], Awaitable[None]]


class SessionRecorder:
    """Owns the dwell timer and the single ledger write of one Session."""

    def __init__(
        self,
        session: Session,
        client: ProgressClient,
        wake_lock: Optional[WakeLockCoordinator] = None,
        *,
        timing: SessionTiming = DEFAULT_TIMING,
        metadata: Optional[MediaMetadata] = None,
        on_change: Optional[ChangeCallback] = None,
    ):
        self.session = session
        self.client = client
        self.wake_lock = wake_lock
        self.timing = timing
        self.metadata = metadata
        self.state = RecorderState.IDLE
        self.listen_count = 0
        self.write_attempts = 0

        self._on_change = on_change
        self._timer_task: Optional[asyncio.Task] = None
        self._write_task: Optional[asyncio.Task] = None
        self._countdown_started = False
        self._torn_down = False

    @property
    def _tag(self) -> str:
        return f"{self.session.practice_id}:{self.session.session_id}"

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    # ------------------------------------------------------------------
    # Count display
    # ------------------------------------------------------------------

    async def load_listen_count(self) -> int:
        """Initial count for this practice; a failed read shows 0."""
        try:
            progress = await self.client.fetch_progress()
            self.listen_count = int(progress.get(self.session.practice_id, 0))
            logger.info(f"[{self._tag}] Loaded progress: {self.listen_count}")
        except ProgressClientError as e:
            logger.error(f"[{self._tag}] Error loading progress: {e}")
            self.listen_count = 0
        return self.listen_count

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def on_first_play(self) -> None:
        if self._torn_down or self.state is not RecorderState.IDLE:
            logger.debug(f"[{self._tag}] Play already handled in this session, ignoring")
            return
        # Check-and-set happens before the first await.
        self.session.has_fired = True
        self.state = RecorderState.ARMED
        logger.info(
            f"[{self._tag}] First play - will record after {self.timing.dwell_seconds:g}s"
        )

        if self.wake_lock is not None:
            await self.wake_lock.activate(self.metadata)
        if self._torn_down:
            if self.wake_lock is not None:
                await self.wake_lock.deactivate()
            return

        self._timer_task = asyncio.create_task(self._run_timer())
        self.state = RecorderState.COUNTING
        await self._notify()

    async def _run_timer(self) -> None:
        await asyncio.sleep(self.timing.dwell_seconds)
        await self.on_timer_elapsed()

    async def on_timer_elapsed(self) -> None:
        if self._torn_down or self.state is not RecorderState.COUNTING:
            return
        self.state = RecorderState.RECORDED
        self.session.is_recorded = True
        logger.info(f"[{self._tag}] Dwell time passed, recording listening session")

        # Separate task: abandoning the timer must not abort an issued write.
        self._write_task = asyncio.create_task(self._record_progress())
        await self._notify()

    async def _record_progress(self) -> None:
        practice_id = self.session.practice_id
        self.write_attempts += 1
        try:
            result = await self.client.add_progress(practice_id)
            logger.info(f"[{self._tag}] Progress recorded: {result}")

            await asyncio.sleep(self.timing.settle_delay)

            progress = await self.client.fetch_progress()
            self.listen_count = int(progress.get(practice_id, 0))
            logger.info(f"[{self._tag}] Updated listen count: {self.listen_count}")
        except ProgressClientError as e:
            # No retry; show the listen locally until the next full reload.
            logger.error(f"[{self._tag}] Error recording progress: {e}")
            self.listen_count += 1
        await self._notify()

    async def wait_for_write(self) -> None:
        """Wait for an issued write (and its re-read) to finish, if any."""
        if self._write_task is not None:
            await asyncio.shield(self._write_task)

    # ------------------------------------------------------------------
    # Countdown
    # ------------------------------------------------------------------

    def update_playback(self, current_time: float, duration: Optional[float], *, paused: bool = False) -> None:
        """Refresh the informational countdown (time left in the audio)."""
        if not self.session.has_fired or paused:
            return
        if duration is None or math.isnan(duration) or duration <= 0:
            return
        remaining = max(0, int(duration) - int(current_time))
        if self._countdown_started and remaining > self.session.remaining_seconds:
            return
        self.session.remaining_seconds = remaining
        self._countdown_started = True

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        if self._timer_task is not None and not self._timer_task.done():
            self._timer_task.cancel()
            logger.info(f"[{self._tag}] Left before dwell time - listen not recorded")
        if self.wake_lock is not None:
            await self.wake_lock.deactivate()

    # ------------------------------------------------------------------
    # UI
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        return {
            "practice_id": self.session.practice_id,
            "state": self.state.value,
            "has_fired": self.session.has_fired,
            "is_recorded": self.session.is_recorded,
            "remaining_seconds": self.session.remaining_seconds,
            "listen_count": self.listen_count,
        }

    async def _notify(self) -> None:
        if self._on_change is not None:
            await self._on_change(self.snapshot())
