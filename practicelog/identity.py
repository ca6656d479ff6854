"""User records and request -> user id resolution.

Signing users in (OAuth) happens elsewhere. The provider callback calls
``find_or_create_user`` and stores the returned id in the signed session
cookie under ``user_id``; that cookie is all this service reads.
"""
from __future__ import annotations

import logging
from typing import Optional

import aiosqlite
from starlette.requests import HTTPConnection

from .config import AUTH_ENABLED, DEFAULT_USER_ID
from .models import DB_PATH

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user_id"


async def find_user_by_provider_id(provider: str, provider_id: str, db_path: str = DB_PATH) -> Optional[dict]:
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM users WHERE provider = ? AND provider_id = ?",
            (provider, provider_id),
        )
        row = await cursor.fetchone()
    return dict(row) if row else None


async def create_user(provider: str, provider_id: str, email: Optional[str], db_path: str = DB_PATH) -> dict:
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(
            "INSERT INTO users (provider, provider_id, email) VALUES (?, ?, ?)",
            (provider, provider_id, email),
        )
        await db.commit()
        user_id = cursor.lastrowid
    logger.info(f"Created user {user_id} via {provider}")
    return await get_user_by_id(user_id, db_path)


async def find_or_create_user(
    provider: str, provider_id: str, email: Optional[str], db_path: str = DB_PATH
) -> dict:
    """Store entry point for the OAuth callback: the existing user, or a new one."""
    user = await find_user_by_provider_id(provider, provider_id, db_path)
    if user is None:
        user = await create_user(provider, provider_id, email, db_path)
    return user


async def get_user_by_id(user_id: int, db_path: str = DB_PATH) -> Optional[dict]:
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
    return dict(row) if row else None


def session_user_id(conn: HTTPConnection) -> Optional[int]:
    """User id stored in the session cookie, if any."""
    if "session" not in conn.scope:
        return None
    raw = conn.session.get(SESSION_USER_KEY)
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed session user id: {raw!r}")
        return None


def resolve_user_id(
    conn: HTTPConnection,
    *,
    auth_enabled: bool = AUTH_ENABLED,
    default_user_id: int = DEFAULT_USER_ID,
) -> Optional[int]:
    """Signed-in user, the default user when auth is disabled, else None."""
    user_id = session_user_id(conn)
    if user_id is not None:
        return user_id
    if not auth_enabled:
        return default_user_id
    return None
