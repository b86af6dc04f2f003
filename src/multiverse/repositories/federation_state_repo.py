"""
Persistent storage for the shared federation state document.

The document is stored as one JSON blob keyed by name so that every instance
reading the same database file sees the same state.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import aiosqlite

from multiverse.util.logger import get_logger

logger = get_logger("federation_state_repo")

DEFAULT_KEY = "federation"


class FederationStateRepo:
    """Low-level CRUD for the ``federation_state`` table."""

    @staticmethod
    async def upsert(conn: aiosqlite.Connection, document: Dict[str, Any], key: str = DEFAULT_KEY) -> None:
        await conn.execute(
            """
            INSERT INTO federation_state (key, document, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                document   = excluded.document,
                updated_at = excluded.updated_at
            """,
            (key, json.dumps(document, sort_keys=True)),
        )

    @staticmethod
    async def get(conn: aiosqlite.Connection, key: str = DEFAULT_KEY) -> Optional[Dict[str, Any]]:
        """Return the stored document, or None when nothing was saved yet."""
        cursor = await conn.execute("SELECT document FROM federation_state WHERE key = ?", (key,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0])


federation_state_repo = FederationStateRepo()
