import os

import aiosqlite

from .config import DATABASE_PATH

DB_PATH = DATABASE_PATH


async def init_db(db_path: str = DB_PATH):
    parent = os.path.dirname(os.path.abspath(db_path))
    os.makedirs(parent, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                provider TEXT NOT NULL,
                provider_id TEXT NOT NULL,
                email TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(provider, provider_id)
            )
        """)
        # Append-only: one row per completed listen, repeats are expected.
        await db.execute("""
            CREATE TABLE IF NOT EXISTS completion_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                practice_id TEXT NOT NULL,
                occurred_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_completion_user_practice "
            "ON completion_events(user_id, practice_id)"
        )
        await db.commit()
