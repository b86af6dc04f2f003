"""
Bounded history of broadcasts.

Moderation commands look messages up here (delete-by-reply, info-by-reply)
and the inbound path uses it to drop events it has already relayed. The
ledger is a ``deque`` with a fixed ``maxlen`` so the oldest record is evicted
first; one coarse ``asyncio.Lock`` covers every access because appends come
from fan-out tasks while commands iterate and remove concurrently.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Deque, List, Optional, Union

from multiverse.datatypes.discord_datatypes import MessageID
from multiverse.datatypes.relay_datatypes import BroadcastRecord, MessageRef
from multiverse.util.logger import get_logger

logger = get_logger("history_ledger")

DEFAULT_CAPACITY = 1000

RecordPredicate = Callable[[BroadcastRecord], bool]


class HistoryLedger:
    """FIFO-bounded store of :class:`BroadcastRecord` objects."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("history capacity must be at least 1")
        self.capacity = capacity
        self._records: Deque[BroadcastRecord] = deque(maxlen=capacity)
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    async def append(self, record: BroadcastRecord) -> None:
        async with self._lock:
            if len(self._records) == self.capacity:
                logger.debug("[HISTORY] Ledger full (%d), evicting oldest record", self.capacity)
            self._records.append(record)

    async def find(self, predicate: RecordPredicate) -> Optional[BroadcastRecord]:
        """Return the newest record matching ``predicate``."""
        async with self._lock:
            for record in reversed(self._records):
                if predicate(record):
                    return record
        return None

    async def find_by_ref(self, ref: Union[MessageRef, MessageID]) -> Optional[BroadcastRecord]:
        """Return the record whose origin or copies include ``ref``."""
        return await self.find(lambda record: record.contains(ref))

    async def has_origin(self, message_id: MessageID) -> bool:
        found = await self.find(lambda record: record.origin is not None and record.origin.message_id == message_id)
        return found is not None

    async def remove(self, record: BroadcastRecord) -> bool:
        async with self._lock:
            try:
                self._records.remove(record)
            except ValueError:
                return False
            return True

    async def remove_matching(self, predicate: RecordPredicate) -> int:
        """Drop every record matching ``predicate``; returns how many were removed."""
        async with self._lock:
            kept = [record for record in self._records if not predicate(record)]
            removed = len(self._records) - len(kept)
            self._records = deque(kept, maxlen=self.capacity)
        return removed

    async def recent(self, limit: int) -> List[BroadcastRecord]:
        """The ``limit`` newest records, newest first."""
        async with self._lock:
            return list(reversed(self._records))[: max(0, limit)]
