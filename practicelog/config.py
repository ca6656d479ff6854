"""Runtime settings loaded from the environment (and an optional .env file)."""
from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

DATABASE_PATH = os.getenv(
    "DATABASE_PATH", os.path.join(os.path.dirname(__file__), "..", "database.sqlite")
)
CONTENT_PATH = os.getenv(
    "CONTENT_PATH", os.path.join(os.path.dirname(__file__), "data", "content.json")
)
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
SESSION_SECRET = os.getenv("SESSION_SECRET", "12345678901234567890123456789012")
IS_PRODUCTION = os.getenv("APP_ENV", "development") == "production"
PORT = int(os.getenv("PORT", "4000"))
API_URL = os.getenv("API_URL", "http://localhost:4000")

# Used for every request when no authenticated user is attached to the session.
DEFAULT_USER_ID = int(os.getenv("DEFAULT_USER_ID", "1"))

MEDIA_ARTIST = "Hypnopractice"
MEDIA_ALBUM_FALLBACK = "Practices"


@dataclass(frozen=True)
class SessionTiming:
    """Delays (seconds) driving one listening session."""

    dwell_seconds: float = 30.0        # Listen time before a completion is recorded
    settle_delay: float = 0.5          # Wait after a write before re-reading progress
    attach_initial_delay: float = 0.1
    attach_interval: float = 0.2
    attach_max_attempts: int = 10
    probe_delay: float = 0.5           # Click -> "is anything playing?" check
    element_tune_delay: float = 0.5    # Background-playback attributes on media elements


DEFAULT_TIMING = SessionTiming()

# OAuth provisioning lives outside this service; when no provider is
# configured every caller is treated as DEFAULT_USER_ID.
AUTH_ENABLED = bool(
    (os.getenv("GOOGLE_CLIENT_ID") and os.getenv("GOOGLE_CLIENT_SECRET"))
    or (os.getenv("YANDEX_CLIENT_ID") and os.getenv("YANDEX_CLIENT_SECRET"))
)
