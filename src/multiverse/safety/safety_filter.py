"""
Content-safety gate run on every inbound message before rate limiting.

Two rules, checked in order:

1. Mention flood: more than ``mention_threshold`` user/role mentions in the raw
   text auto-bans the sender for the rest of the process lifetime (or for
   good, when ``persist_auto_bans`` is on) and drops the message.
2. Scam phrasing: a match drops the message without banning.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, Iterable, Set

from multiverse.database.db_connection import ConnectionManager, db_connection
from multiverse.datatypes.discord_datatypes import UserID
from multiverse.datatypes.relay_datatypes import FilterVerdict
from multiverse.repositories.auto_ban_repo import auto_ban_repo
from multiverse.safety.scam_detector import PatternScamDetector, ScamDetector
from multiverse.util.logger import get_logger
from multiverse.util.text_utils import count_mentions

logger = get_logger("safety_filter")

DEFAULT_MENTION_THRESHOLD = 7


class TemporaryBlockList:
    """
    Senders banned from relaying.

    The in-memory set is authoritative. With ``persistent=True`` every
    addition is also written to the ``auto_bans`` table in the background and
    :meth:`load_persisted` restores the set on startup.
    """

    def __init__(self, persistent: bool = False, connection: ConnectionManager = db_connection) -> None:
        self.persistent = persistent
        self._connection = connection
        self._blocked: Dict[UserID, str] = {}
        self._active_persists: Set[asyncio.Task] = set()

    def __contains__(self, user_id: UserID) -> bool:
        return user_id in self._blocked

    def __len__(self) -> int:
        return len(self._blocked)

    def reason(self, user_id: UserID) -> str | None:
        return self._blocked.get(user_id)

    def user_ids(self) -> list[UserID]:
        return list(self._blocked)

    def add(self, user_id: UserID, reason: str) -> None:
        self._blocked[user_id] = reason
        if self.persistent:
            self._trigger_persist(user_id, reason)

    def extend(self, user_ids: Iterable[UserID], reason: str = "restored") -> None:
        """Add IDs without persisting them again."""
        for user_id in user_ids:
            self._blocked.setdefault(user_id, reason)

    def remove(self, user_id: UserID) -> bool:
        removed = self._blocked.pop(user_id, None) is not None
        if removed and self.persistent:
            self._trigger_persist(user_id, None)
        return removed

    async def load_persisted(self) -> int:
        """Restore persisted bans; returns how many were loaded."""
        if not self.persistent:
            return 0
        async with self._connection.read() as conn:
            records = await auto_ban_repo.get_all(conn)
        for record in records:
            self._blocked.setdefault(UserID(record.user_id), record.reason)
        logger.info("[SAFETY FILTER] Restored %d persisted auto-bans", len(records))
        return len(records)

    def _trigger_persist(self, user_id: UserID, reason: str | None) -> None:
        """Schedule a best-effort write of one ban (``reason=None`` deletes it)."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("[SAFETY FILTER] Cannot persist auto-ban for %s: no running event loop", user_id)
            return

        task = loop.create_task(self._persist(user_id, reason))
        self._active_persists.add(task)

        def _cleanup(completed: asyncio.Task) -> None:
            self._active_persists.discard(completed)
            if completed.cancelled():
                return
            exc = completed.exception()
            if exc is not None:
                logger.error("[SAFETY FILTER] Failed to persist auto-ban for %s: %s", user_id, exc)

        task.add_done_callback(_cleanup)

    async def _persist(self, user_id: UserID, reason: str | None) -> None:
        async with self._connection.transaction() as conn:
            if reason is None:
                await auto_ban_repo.delete(conn, str(user_id))
            else:
                await auto_ban_repo.upsert(conn, str(user_id), reason, int(time.time()))

    async def shutdown(self) -> None:
        """Wait for pending writes."""
        if self._active_persists:
            await asyncio.gather(*self._active_persists, return_exceptions=True)


class SafetyFilter:
    """Classifies message content as allowed, rejected or auto-ban."""

    def __init__(
        self,
        scam_detector: ScamDetector | None = None,
        block_list: TemporaryBlockList | None = None,
        mention_threshold: int = DEFAULT_MENTION_THRESHOLD,
    ) -> None:
        self.scam_detector = scam_detector or PatternScamDetector()
        self.block_list = block_list if block_list is not None else TemporaryBlockList()
        self.mention_threshold = mention_threshold

    def is_blocked(self, sender_id: UserID) -> bool:
        return sender_id in self.block_list

    def evaluate(self, sender_id: UserID, content: str) -> FilterVerdict:
        """Run both rules against ``content`` sent by ``sender_id``.

        An auto-ban verdict has already added the sender to the block list
        when this returns.
        """
        mentions = count_mentions(content)
        if mentions > self.mention_threshold:
            reason = f"mentioned {mentions} users/roles at once (limit {self.mention_threshold})"
            self.block_list.add(sender_id, reason)
            logger.info("[SAFETY FILTER] %s was auto-banned: %s", sender_id, reason)
            return FilterVerdict.auto_ban(reason)

        if self.scam_detector.has_scam(content):
            logger.info("[SAFETY FILTER] Potential scam from %s blocked: %r", sender_id, content[:200])
            return FilterVerdict.reject("message contains a potential scam")

        return FilterVerdict.allow()
