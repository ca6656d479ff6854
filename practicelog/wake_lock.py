"""Keeps the device awake while a practice is being listened to.

The coordinator never raises into its caller: a missing capability or a
denied request only means the screen may turn off.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Protocol

from .config import MEDIA_ALBUM_FALLBACK, MEDIA_ARTIST

logger = logging.getLogger(__name__)


class WakeLockError(Exception):
    """The platform refused a wake lock request."""


class WakeLockSentinel(Protocol):
    async def release(self) -> None: ...


class WakeLockProvider(Protocol):
    async def request(self, kind: str) -> WakeLockSentinel: ...


class MediaSession(Protocol):
    async def set_metadata(self, metadata: "MediaMetadata") -> None: ...


@dataclass
class MediaMetadata:
    title: str
    artist: str = MEDIA_ARTIST
    album: str = MEDIA_ALBUM_FALLBACK
    artwork: List[dict] = field(default_factory=lambda: [
        {"src": "/favicon.ico", "sizes": "96x96", "type": "image/x-icon"},
    ])

    @classmethod
    def for_practice(cls, title: str, category_name: str | None = None) -> "MediaMetadata":
        return cls(title=title, album=category_name or MEDIA_ALBUM_FALLBACK)

    def to_dict(self) -> dict:
        return asdict(self)


class WakeLockCoordinator:
    """Holds at most one screen wake lock for one listening session."""

    def __init__(
        self,
        provider: Optional[WakeLockProvider] = None,
        media_session: Optional[MediaSession] = None,
        *,
        label: str = "wake-lock",
    ):
        self.provider = provider
        self.media_session = media_session
        self.label = label
        self._sentinel: Optional[WakeLockSentinel] = None
        self._armed = False
        self._metadata_published = False

    @property
    def held(self) -> bool:
        return self._sentinel is not None

    @property
    def armed(self) -> bool:
        return self._armed

    async def acquire(self) -> None:
        """Request a screen wake lock, replacing any lock already held."""
        if self.provider is None:
            return
        await self.release()
        try:
            self._sentinel = await self.provider.request("screen")
            logger.info(f"[{self.label}] Wake lock acquired")
        except Exception as e:
            self._sentinel = None
            logger.warning(f"[{self.label}] Could not acquire wake lock: {e}")

    async def release(self) -> None:
        sentinel, self._sentinel = self._sentinel, None
        if sentinel is None:
            return
        try:
            await sentinel.release()
            logger.info(f"[{self.label}] Wake lock released")
        except Exception as e:
            logger.debug(f"[{self.label}] Ignoring wake lock release error: {e}")

    def on_platform_release(self) -> None:
        """The platform dropped the lock by itself (e.g. the tab was hidden)."""
        if self._sentinel is not None:
            logger.info(f"[{self.label}] Wake lock released by the platform")
        self._sentinel = None

    async def activate(self, metadata: Optional[MediaMetadata] = None) -> None:
        """Session reached ARMED: publish media metadata once, then acquire."""
        self._armed = True
        if metadata is not None and not self._metadata_published and self.media_session is not None:
            self._metadata_published = True
            try:
                await self.media_session.set_metadata(metadata)
                logger.info(f"[{self.label}] Media session configured")
            except Exception as e:
                logger.debug(f"[{self.label}] Media session unavailable: {e}")
        await self.acquire()

    async def deactivate(self) -> None:
        """Session torn down: release the lock and stop re-acquiring it."""
        self._armed = False
        await self.release()

    async def on_visibility_changed(self, state: str) -> None:
        if state == "visible":
            await self.on_visibility_regained()

    async def on_visibility_regained(self) -> None:
        if not self._armed:
            return
        logger.info(f"[{self.label}] Page visible again, restoring wake lock")
        await self.acquire()
