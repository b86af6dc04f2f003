"""
Endpoint registry: every room taking part in the federation.

The registry owns the endpoints, their sinks and the guild bookkeeping. The
reconciler mutates it, the broadcast engine reads snapshots from it and the
inbound path asks it whether a webhook author is one of ours. A single
``asyncio.Lock`` guards the whole structure; network calls (notices, guild
refreshes) always happen outside the lock.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set, Tuple

from multiverse.datatypes.discord_datatypes import ChannelID, GuildID, SinkID
from multiverse.datatypes.federation_datatypes import FederationState
from multiverse.datatypes.relay_datatypes import DeliveredRef, Endpoint, OutboundPayload, Room, Sink
from multiverse.federation.federated_guild import DEFAULT_REFRESH_TTL, FederatedGuild
from multiverse.util.logger import get_logger

if TYPE_CHECKING:
    from multiverse.transport.base import SinkTransport

logger = get_logger("endpoint_registry")


class EndpointRegistry:
    """
    Owned, lock-guarded map of room ID to :class:`Endpoint`.

    Args:
        transport: Used for the one-time diagnostic notices and guild refreshes.
        require_whitelist: When True only guilds listed in the federation
            whitelist take part in fan-outs.
        guild_refresh_ttl: Minimum seconds between two refreshes of one guild.
    """

    def __init__(
        self,
        transport: "SinkTransport",
        require_whitelist: bool = False,
        guild_refresh_ttl: float = DEFAULT_REFRESH_TTL,
    ) -> None:
        self.transport = transport
        self.require_whitelist = require_whitelist
        self.guild_refresh_ttl = guild_refresh_ttl
        self._endpoints: Dict[ChannelID, Endpoint] = {}
        self._guilds: Dict[GuildID, FederatedGuild] = {}
        self._known_sinks: Set[SinkID] = set()
        self._state = FederationState()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._endpoints)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_eligible(self) -> List[Endpoint]:
        """Snapshot of endpoints with a sink whose guild is whitelisted."""
        async with self._lock:
            return [endpoint for endpoint in self._endpoints.values() if endpoint.is_eligible]

    async def all(self) -> List[Endpoint]:
        async with self._lock:
            return list(self._endpoints.values())

    async def get(self, room_id: ChannelID) -> Optional[Endpoint]:
        async with self._lock:
            return self._endpoints.get(room_id)

    async def contains(self, room_id: ChannelID) -> bool:
        async with self._lock:
            return room_id in self._endpoints

    def owns_sink(self, sink_id: Optional[SinkID]) -> bool:
        """True if ``sink_id`` was ever attached by this process."""
        return sink_id is not None and sink_id in self._known_sinks

    def guild(self, guild_id: GuildID) -> Optional[FederatedGuild]:
        return self._guilds.get(guild_id)

    def guilds(self) -> List[FederatedGuild]:
        return list(self._guilds.values())

    @property
    def state(self) -> FederationState:
        return self._state

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _guild_whitelisted(self, guild_id: GuildID) -> bool:
        if self._state.is_blacklisted(guild_id):
            return False
        if not self.require_whitelist:
            return True
        return self._state.is_whitelisted(guild_id)

    def _ensure_guild_locked(self, guild_id: GuildID, name: str = "") -> FederatedGuild:
        guild = self._guilds.get(guild_id)
        if guild is None:
            guild = FederatedGuild(
                guild_id=guild_id,
                name=name,
                name_override=self._state.name_override(guild_id),
                whitelisted=self._guild_whitelisted(guild_id),
                refresh_ttl=self.guild_refresh_ttl,
                last_refresh=time.time(),
            )
            self._guilds[guild_id] = guild
            logger.debug("[REGISTRY] Tracking new guild %s (%s)", name, guild_id)
        elif name:
            guild.name = name
        return guild

    async def ensure_guild(self, guild_id: GuildID, name: str = "") -> FederatedGuild:
        async with self._lock:
            return self._ensure_guild_locked(guild_id, name)

    async def upsert(self, room: Room) -> Endpoint:
        """Register ``room`` or refresh its description. Idempotent by room ID."""
        async with self._lock:
            guild = self._ensure_guild_locked(room.guild_id, room.guild_name)
            endpoint = self._endpoints.get(room.room_id)
            if endpoint is None:
                endpoint = Endpoint(room=room, whitelisted=guild.whitelisted)
                self._endpoints[room.room_id] = endpoint
                logger.info("[REGISTRY] Added #%s in %s (%s)", room.name, guild.display_name, room.room_id)
            else:
                endpoint.room = room
                endpoint.whitelisted = guild.whitelisted
            guild.endpoints[room.room_id] = endpoint
            return endpoint

    def _remove_locked(self, room_id: ChannelID) -> Optional[Endpoint]:
        endpoint = self._endpoints.pop(room_id, None)
        if endpoint is None:
            return None
        guild = self._guilds.get(endpoint.guild_id)
        if guild is not None:
            guild.endpoints.pop(room_id, None)
        return endpoint

    async def remove(self, room_id: ChannelID) -> Optional[Endpoint]:
        async with self._lock:
            endpoint = self._remove_locked(room_id)
        if endpoint is not None:
            logger.info("[REGISTRY] Removed room %s", room_id)
        return endpoint

    async def prune(self, keep_ids: Iterable[ChannelID]) -> List[ChannelID]:
        """Remove every endpoint whose room ID is not in ``keep_ids``."""
        keep = set(keep_ids)
        async with self._lock:
            stale = [room_id for room_id in self._endpoints if room_id not in keep]
            for room_id in stale:
                self._remove_locked(room_id)
        if stale:
            logger.info("[REGISTRY] Pruned %d room(s) that no longer match", len(stale))
        return stale

    async def attach_sink(self, room_id: ChannelID, sink: Sink) -> bool:
        """Bind ``sink`` to the endpoint of ``room_id``; False if the room is gone."""
        async with self._lock:
            self._known_sinks.add(sink.sink_id)
            endpoint = self._endpoints.get(room_id)
            if endpoint is None:
                return False
            endpoint.sink = sink
            return True

    async def report(self, endpoint: Endpoint, text: str, acquisition: bool = False) -> bool:
        """
        Post ``text`` into the endpoint's room unless it was already reported.

        Sink-loss and sink-acquisition notices are tracked separately so each
        kind is posted at most once. Returns True when this call was the first
        report of its kind. Failures to post are logged and swallowed.
        """
        flag = "acquire_reported" if acquisition else "has_reported"
        async with self._lock:
            if getattr(endpoint, flag):
                return False
            setattr(endpoint, flag, True)

        try:
            await self.transport.send_notice(endpoint.room_id, text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("[REGISTRY] Could not post diagnostic into %s: %s", endpoint.room_id, exc)
        return True

    async def invalidate(self, endpoint: Endpoint, reason: str) -> None:
        """Drop the endpoint's sink so it is re-acquired by the next reconcile."""
        async with self._lock:
            endpoint.sink = None
        logger.warning("[REGISTRY] Invalidated sink of %s: %s", endpoint.room_id, reason)
        await self.report(endpoint, f"Multiverse connection lost in this channel: {reason}")

    async def apply_state(self, state: FederationState) -> List[ChannelID]:
        """
        Adopt a converged federation state.

        Updates guild whitelist flags and name overrides, then removes every
        endpoint whose room or guild is blacklisted. Returns the removed IDs.
        """
        async with self._lock:
            self._state = state.copy()
            for guild in self._guilds.values():
                guild.whitelisted = self._guild_whitelisted(guild.guild_id)
                guild.name_override = self._state.name_override(guild.guild_id)

            removed: List[ChannelID] = []
            for room_id, endpoint in list(self._endpoints.items()):
                if self._state.is_blacklisted(room_id, endpoint.guild_id):
                    self._remove_locked(room_id)
                    removed.append(room_id)
                    continue
                guild = self._guilds.get(endpoint.guild_id)
                endpoint.whitelisted = guild.whitelisted if guild is not None else True

        if removed:
            logger.info("[REGISTRY] Removed %d blacklisted room(s)", len(removed))
        return removed

    async def refresh_guilds(self, now: Optional[float] = None) -> List[ChannelID]:
        """Refresh stale guilds and forget rooms that no longer resolve."""
        pruned: List[ChannelID] = []
        for guild in self.guilds():
            try:
                pruned.extend(await guild.refresh(self.transport, now))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[REGISTRY] Refresh of guild %s failed: %s", guild.guild_id, exc)

        if pruned:
            async with self._lock:
                for room_id in pruned:
                    self._remove_locked(room_id)
            logger.info("[REGISTRY] Forgot %d unreachable room(s)", len(pruned))
        return pruned

    async def send_to_guild(
        self,
        guild_id: GuildID,
        payload: OutboundPayload,
        exclude: Optional[ChannelID] = None,
    ) -> Tuple[List[DeliveredRef], int]:
        """
        Deliver ``payload`` to every eligible room of one guild.

        Dormant or unknown guilds get nothing. Sinks that turn out to be gone
        are invalidated the same way a fan-out invalidates them.
        """
        async with self._lock:
            guild = self._guilds.get(guild_id)
            if guild is None or not guild.whitelisted:
                return [], 0
            endpoints = [endpoint for endpoint in guild.endpoints.values() if endpoint.is_eligible]
        return await guild.send(self.transport, endpoints, payload, exclude=exclude, on_unavailable=self.invalidate)
