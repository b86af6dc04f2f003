"""
Per-sender minimum-interval gate.

One fixed interval applies to every sender regardless of how many rooms the
message fans out to. The check and the timestamp update happen under one lock,
so two messages from the same sender racing through ``on_message`` can never
both pass.
"""

from __future__ import annotations

import threading
import time
from typing import Dict

from multiverse.datatypes.discord_datatypes import UserID

DEFAULT_MIN_INTERVAL_MS = 2000


def now_ms() -> int:
    return int(time.monotonic() * 1000)


class RateLimiter:
    """Tracks the last accepted message of every sender."""

    def __init__(self, min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS) -> None:
        self.min_interval_ms = min_interval_ms
        self._last_accepted: Dict[UserID, int] = {}
        self._lock = threading.Lock()

    def try_accept(self, sender_id: UserID, now: int | None = None) -> bool:
        """Accept and record the message, or reject it without touching state."""
        current = now_ms() if now is None else now
        with self._lock:
            last = self._last_accepted.get(sender_id)
            if last is not None and current - last < self.min_interval_ms:
                return False
            self._last_accepted[sender_id] = current
            return True

    def retry_after_ms(self, sender_id: UserID, now: int | None = None) -> int:
        """Milliseconds until ``sender_id`` may send again (0 when allowed)."""
        current = now_ms() if now is None else now
        with self._lock:
            last = self._last_accepted.get(sender_id)
        if last is None:
            return 0
        return max(0, self.min_interval_ms - (current - last))

    def last_accepted(self, sender_id: UserID) -> int | None:
        with self._lock:
            return self._last_accepted.get(sender_id)

    def purge(self, now: int | None = None) -> int:
        """Forget senders whose interval has elapsed; returns how many were dropped."""
        current = now_ms() if now is None else now
        with self._lock:
            stale = [uid for uid, ts in self._last_accepted.items() if current - ts >= self.min_interval_ms]
            for uid in stale:
                del self._last_accepted[uid]
        return len(stale)
