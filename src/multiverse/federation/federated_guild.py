"""
Per-guild bookkeeping for the federation.

A :class:`FederatedGuild` is created the first time one of its rooms is
discovered and lives for the rest of the process; a guild that loses its
whitelist entry only goes dormant. Endpoints hang off their guild so a
refresh can prune rooms that stopped resolving, and so per-guild notices
can be sent to every room of one guild.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Tuple

from multiverse.datatypes.discord_datatypes import ChannelID, GuildID
from multiverse.datatypes.relay_datatypes import DeliveredRef, Endpoint, OutboundPayload
from multiverse.errors import SinkUnavailable
from multiverse.util.logger import get_logger

if TYPE_CHECKING:
    from multiverse.transport.base import SinkTransport

logger = get_logger("federated_guild")

DEFAULT_REFRESH_TTL = 30 * 60.0
UNKNOWN_GUILD_NAME = "<DISCORD>"

UnavailableCallback = Callable[[Endpoint, str], Awaitable[None]]


@dataclass(slots=True)
class FederatedGuild:
    guild_id: GuildID
    name: str = ""
    name_override: Optional[str] = None
    whitelisted: bool = True
    last_sent: float = 0.0
    total_sent: int = 0
    total_received: int = 0
    endpoints: Dict[ChannelID, Endpoint] = field(default_factory=dict)
    last_refresh: float = 0.0
    refresh_ttl: float = DEFAULT_REFRESH_TTL

    @property
    def display_name(self) -> str:
        return self.name_override or self.name or UNKNOWN_GUILD_NAME

    def needs_refresh(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current - self.last_refresh >= self.refresh_ttl

    def record_sent(self, now: Optional[float] = None) -> None:
        self.last_sent = time.time() if now is None else now
        self.total_sent += 1

    def record_received(self, count: int = 1) -> None:
        self.total_received += count

    async def refresh(self, transport: "SinkTransport", now: Optional[float] = None) -> List[ChannelID]:
        """
        Re-resolve every room of this guild.

        Skipped entirely while the last refresh is younger than ``refresh_ttl``.
        IDs of rooms that no longer resolve are returned; the registry removes
        them under its lock.
        """
        current = time.time() if now is None else now
        if not self.needs_refresh(current):
            return []

        pruned: List[ChannelID] = []
        for room_id in list(self.endpoints):
            try:
                room = await transport.resolve_room(room_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[GUILD] Could not resolve room %s of guild %s: %s", room_id, self.guild_id, exc)
                continue

            if room is None:
                pruned.append(room_id)
            elif room.guild_name:
                self.name = room.guild_name

        self.last_refresh = current
        if pruned:
            logger.info("[GUILD] %d room(s) of %s no longer resolve", len(pruned), self.display_name)
        return pruned

    async def send(
        self,
        transport: "SinkTransport",
        endpoints: List[Endpoint],
        payload: OutboundPayload,
        exclude: Optional[ChannelID] = None,
        on_unavailable: Optional[UnavailableCallback] = None,
    ) -> Tuple[List[DeliveredRef], int]:
        """Deliver ``payload`` to each of ``endpoints`` in turn.

        ``endpoints`` is a snapshot taken by the registry. ``on_unavailable``
        is awaited with the endpoint and the reason whenever its sink is gone.
        Returns the delivered copies and the number of failed rooms.
        """
        delivered: List[DeliveredRef] = []
        failed = 0
        for endpoint in endpoints:
            if endpoint.sink is None or endpoint.room_id == exclude:
                continue
            try:
                ref = await transport.execute(endpoint.sink, payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failed += 1
                logger.warning("[GUILD] Failed to send into %s of %s: %s", endpoint.room_id, self.display_name, exc)
                if isinstance(exc, SinkUnavailable) and on_unavailable is not None:
                    await on_unavailable(endpoint, str(exc))
            else:
                delivered.append(
                    DeliveredRef(
                        room_id=ref.room_id,
                        message_id=ref.message_id,
                        author_id=ref.author_id,
                        guild_id=self.guild_id,
                        sink_id=ref.sink_id,
                    )
                )
            await asyncio.sleep(0)
        return delivered, failed
