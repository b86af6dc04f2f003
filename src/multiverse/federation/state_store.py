"""
Backends for the shared federation state document.

Every backend exposes ``load() -> FederationState`` and ``save(state)``. They
are eventually consistent: two instances may read, modify and save at the
same time and the later save wins. The convergence step in
:mod:`multiverse.federation.state_manager` re-applies its own pending changes
until a read-back shows them, so an overwritten push is retried on the next
cycle.

- :class:`InMemoryFederationStore`: one process (and tests sharing one store
  between several registries).
- :class:`SqliteFederationStore`: several processes on one host sharing the
  aiosqlite database file.
- :class:`DiscordPinnedStateStore`: a JSON attachment pinned in a dedicated
  Discord channel, for hosts without persistent disks.
"""

from __future__ import annotations

import asyncio
import io
import json
from typing import Any, Dict, Optional, Protocol

import discord

from multiverse.configuration.relay_settings import RelaySettings
from multiverse.database.db_connection import ConnectionManager, db_connection
from multiverse.datatypes.federation_datatypes import FederationState
from multiverse.repositories.federation_state_repo import DEFAULT_KEY, federation_state_repo
from multiverse.util.logger import get_logger

logger = get_logger("state_store")

STATE_FILENAME = "federation_state.json"


class FederationStateStore(Protocol):
    async def load(self) -> FederationState:
        """Fetch the current shared document. Raises when the store is unreachable."""
        ...

    async def save(self, state: FederationState) -> None:
        ...


class InMemoryFederationStore:
    """Keeps the document as a plain dict; shared by reference between users."""

    def __init__(self, initial: Optional[FederationState] = None) -> None:
        self._document: Dict[str, Any] = (initial or FederationState()).to_dict()
        self._lock = asyncio.Lock()
        self.saves = 0

    async def load(self) -> FederationState:
        async with self._lock:
            return FederationState.from_dict(json.loads(json.dumps(self._document)))

    async def save(self, state: FederationState) -> None:
        async with self._lock:
            self._document = state.to_dict()
            self.saves += 1


class SqliteFederationStore:
    """Stores the document as one row of the ``federation_state`` table."""

    def __init__(self, connection: ConnectionManager = db_connection, key: str = DEFAULT_KEY) -> None:
        self._connection = connection
        self.key = key

    async def load(self) -> FederationState:
        async with self._connection.read() as conn:
            document = await federation_state_repo.get(conn, self.key)
        return FederationState.from_dict(document)

    async def save(self, state: FederationState) -> None:
        async with self._connection.transaction() as conn:
            await federation_state_repo.upsert(conn, state.to_dict(), self.key)


class DiscordPinnedStateStore:
    """
    Stores the document as ``federation_state.json`` pinned in a channel.

    Each save posts a fresh message with the new attachment, pins it and
    deletes the previous one, so the channel holds at most one state message
    written by this bot.
    """

    def __init__(self, bot: discord.Bot, channel_id: int, filename: str = STATE_FILENAME) -> None:
        self.bot = bot
        self.channel_id = channel_id
        self.filename = filename

    async def _channel(self) -> discord.TextChannel:
        channel = self.bot.get_channel(self.channel_id)
        if channel is None:
            channel = await self.bot.fetch_channel(self.channel_id)
        if not isinstance(channel, discord.TextChannel):
            raise LookupError(f"state channel {self.channel_id} is not a text channel")
        return channel

    async def _find_pinned(self, channel: discord.TextChannel) -> Optional[discord.Message]:
        me = self.bot.user
        for message in await channel.pins():
            if me is not None and message.author.id != me.id:
                continue
            if any(attachment.filename == self.filename for attachment in message.attachments):
                return message
        return None

    async def load(self) -> FederationState:
        channel = await self._channel()
        message = await self._find_pinned(channel)
        if message is None:
            return FederationState()

        attachment = next(a for a in message.attachments if a.filename == self.filename)
        raw = await attachment.read()
        return FederationState.from_dict(json.loads(raw.decode("utf-8")))

    async def save(self, state: FederationState) -> None:
        channel = await self._channel()
        previous = await self._find_pinned(channel)

        file_obj = io.BytesIO(json.dumps(state.to_dict(), ensure_ascii=False, indent=2).encode("utf-8"))
        posted = await channel.send(
            content="Multiverse federation state (managed automatically, do not edit)",
            file=discord.File(fp=file_obj, filename=self.filename),
        )
        await posted.pin(reason="Multiverse federation state")

        if previous is not None:
            try:
                await previous.delete()
            except discord.HTTPException as exc:
                logger.debug("[STATE STORE] Could not delete previous state message %s: %s", previous.id, exc)


def create_state_store(
    settings: RelaySettings,
    bot: Optional[discord.Bot] = None,
    connection: ConnectionManager = db_connection,
) -> FederationStateStore:
    """Pick the backend named by ``state_store.backend`` in the config."""
    backend = settings.state_backend
    if backend == "sqlite":
        return SqliteFederationStore(connection)
    if backend == "discord":
        if bot is None or settings.state_channel_id is None:
            raise ValueError("the discord state store needs a bot and state_store.channel_id")
        return DiscordPinnedStateStore(bot, settings.state_channel_id)
    if backend != "memory":
        logger.warning("[STATE STORE] Unknown backend %r, falling back to memory", backend)
    return InMemoryFederationStore()
