"""
Persistent storage for mention-flood auto-bans.

Only used when ``persist_auto_bans`` is enabled; otherwise auto-bans live in
memory until the process restarts. Timestamps are unix seconds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

import aiosqlite

from multiverse.util.logger import get_logger

logger = get_logger("auto_ban_repo")


@dataclass
class AutoBanRecord:
    """A single row from the ``auto_bans`` table."""
    user_id: str
    reason: str
    banned_at: int


class AutoBanRepo:
    """Low-level CRUD for the ``auto_bans`` table."""

    @staticmethod
    async def upsert(conn: aiosqlite.Connection, user_id: str, reason: str, banned_at: int) -> None:
        await conn.execute(
            """
            INSERT INTO auto_bans (user_id, reason, banned_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                reason    = excluded.reason,
                banned_at = excluded.banned_at
            """,
            (str(user_id), reason, banned_at),
        )

    @staticmethod
    async def delete(conn: aiosqlite.Connection, user_id: str) -> None:
        await conn.execute("DELETE FROM auto_bans WHERE user_id = ?", (str(user_id),))

    @staticmethod
    async def get_all(conn: aiosqlite.Connection) -> List[AutoBanRecord]:
        cursor = await conn.execute("SELECT user_id, reason, banned_at FROM auto_bans ORDER BY banned_at")
        rows = await cursor.fetchall()
        return [AutoBanRecord(user_id=str(row[0]), reason=row[1], banned_at=row[2]) for row in rows]


auto_ban_repo = AutoBanRepo()
