"""Append-only ledger of completed listens and the per-practice counts derived from it."""
from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List, Optional

import aiosqlite

from .models import DB_PATH

logger = logging.getLogger(__name__)


class LedgerUnavailableError(RuntimeError):
    """The backing store could not be reached or refused the operation.

    Retriable: the HTTP layer answers 5xx and the listening client falls back
    to its optimistic local count.
    """


class ProgressLedger:
    """CompletionEvent store.

    ``append`` is a pure insert and ``aggregate`` a pure read computed at query
    time, so concurrent requests never need to coordinate.
    """

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path

    async def append(self, user_id: int, practice_id: str) -> int:
        """Record one completed listen. Returns the new event id."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "INSERT INTO completion_events (user_id, practice_id) VALUES (?, ?)",
                    (user_id, practice_id),
                )
                await db.commit()
                event_id = cursor.lastrowid
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Ledger append failed for user {user_id}, practice {practice_id}: {e}")
            raise LedgerUnavailableError(str(e)) from e

        logger.info(f"Completion recorded: user={user_id} practice={practice_id} id={event_id}")
        return event_id

    async def aggregate(self, user_id: int) -> Dict[str, int]:
        """Return ``{practice_id: count}``; practices never completed are absent."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    SELECT practice_id, COUNT(*) AS count
                    FROM completion_events
                    WHERE user_id = ?
                    GROUP BY practice_id
                    """,
                    (user_id,),
                )
                rows = await cursor.fetchall()
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Ledger aggregate failed for user {user_id}: {e}")
            raise LedgerUnavailableError(str(e)) from e

        return {practice_id: int(count) for practice_id, count in rows}

    async def events(self, user_id: int, practice_id: Optional[str] = None) -> List[dict]:
        """Raw completion events for a user, newest first."""
        query = "SELECT id, user_id, practice_id, occurred_at FROM completion_events WHERE user_id = ?"
        params: tuple = (user_id,)
        if practice_id is not None:
            query += " AND practice_id = ?"
            params += (practice_id,)
        query += " ORDER BY id DESC"

        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Ledger history read failed for user {user_id}: {e}")
            raise LedgerUnavailableError(str(e)) from e

        return [dict(r) for r in rows]
