"""
py-cord implementation of the sink transport.

Sinks are channel webhooks named after ``webhook_name``. Executing a payload
posts through the webhook with a per-message username and avatar, which is
what makes relayed copies look like they were written by the original author.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import discord

from multiverse.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, SinkID
from multiverse.datatypes.relay_datatypes import (
    DeliveredRef,
    MessageRef,
    OutboundPayload,
    Room,
    RoomPermissions,
    Sink,
)
from multiverse.errors import SinkUnavailable
from multiverse.util.logger import get_logger

logger = get_logger("discord_transport")


def room_from_channel(channel: discord.TextChannel) -> Room:
    """Describe a Discord text channel as a relay room."""
    return Room(
        room_id=ChannelID(channel.id),
        guild_id=GuildID(channel.guild.id),
        name=channel.name,
        guild_name=channel.guild.name,
        topic=channel.topic or "",
    )


class DiscordTransport:
    """Webhook-backed transport bound to a running ``discord.Bot``."""

    def __init__(self, bot: discord.Bot, webhook_name: str = "MultiverseWebhook") -> None:
        self.bot = bot
        self.webhook_name = webhook_name
        self._webhooks: Dict[SinkID, discord.Webhook] = {}

    def _channel(self, room_id: ChannelID) -> Optional[discord.TextChannel]:
        channel = self.bot.get_channel(room_id.to_int())
        return channel if isinstance(channel, discord.TextChannel) else None

    def _require_channel(self, room_id: ChannelID) -> discord.TextChannel:
        channel = self._channel(room_id)
        if channel is None:
            raise LookupError(f"channel {room_id} is not reachable")
        return channel

    async def list_rooms(self) -> List[Room]:
        rooms: List[Room] = []
        for guild in self.bot.guilds:
            for channel in guild.text_channels:
                rooms.append(room_from_channel(channel))
        return rooms

    async def resolve_room(self, room_id: ChannelID) -> Optional[Room]:
        channel = self._channel(room_id)
        if channel is not None:
            return room_from_channel(channel)
        try:
            fetched = await self.bot.fetch_channel(room_id.to_int())
        except (discord.NotFound, discord.Forbidden):
            return None
        return room_from_channel(fetched) if isinstance(fetched, discord.TextChannel) else None

    def permissions(self, room: Room) -> RoomPermissions:
        channel = self._channel(room.room_id)
        if channel is None or channel.guild.me is None:
            return RoomPermissions()
        perms = channel.permissions_for(channel.guild.me)
        return RoomPermissions(
            can_view=perms.view_channel,
            can_send=perms.send_messages,
            can_manage_sink=perms.manage_webhooks,
        )

    async def create_or_get_sink(self, room: Room) -> Sink:
        channel = self._require_channel(room.room_id)

        webhook = None
        for candidate in await channel.webhooks():
            if candidate.name == self.webhook_name and candidate.token:
                webhook = candidate
                break
        if webhook is None:
            webhook = await channel.create_webhook(name=self.webhook_name, reason="Multiverse relay sink")
            logger.info("[DISCORD TRANSPORT] Created webhook in #%s (%s)", channel.name, channel.id)

        sink_id = SinkID(webhook.id)
        self._webhooks[sink_id] = webhook
        return Sink(sink_id=sink_id, room_id=room.room_id, name=webhook.name or "", handle=webhook)

    async def execute(self, sink: Sink, payload: OutboundPayload) -> DeliveredRef:
        webhook: discord.Webhook = sink.handle

        kwargs: Dict[str, Any] = {"wait": True}
        if payload.content:
            kwargs["content"] = payload.content
        if payload.username:
            kwargs["username"] = payload.username
        if payload.avatar_url:
            kwargs["avatar_url"] = payload.avatar_url
        if payload.suppress_mentions:
            kwargs["allowed_mentions"] = discord.AllowedMentions.none()

        # every endpoint needs its own File object, the stream is consumed on upload
        files = [await attachment.source.to_file() for attachment in payload.attachments if attachment.source is not None]
        if files:
            kwargs["files"] = files

        try:
            message = await webhook.send(**kwargs)
        except (discord.NotFound, discord.Forbidden) as exc:
            self._webhooks.pop(sink.sink_id, None)
            raise SinkUnavailable(f"webhook {sink.sink_id} is unusable: {exc}") from exc
        return DeliveredRef(
            room_id=sink.room_id,
            message_id=MessageID(message.id),
            sink_id=sink.sink_id,
        )

    async def delete(self, ref: MessageRef) -> None:
        if isinstance(ref, DeliveredRef) and ref.sink_id is not None and ref.sink_id in self._webhooks:
            await self._webhooks[ref.sink_id].delete_message(ref.message_id.to_int())
            return
        channel = self._require_channel(ref.room_id)
        await channel.get_partial_message(ref.message_id.to_int()).delete()

    async def send_notice(self, room_id: ChannelID, text: str) -> None:
        channel = self._require_channel(room_id)
        await channel.send(embed=discord.Embed(description=text))

    async def reply(self, ref: MessageRef, text: str) -> None:
        channel = self._require_channel(ref.room_id)
        await channel.get_partial_message(ref.message_id.to_int()).reply(
            text, mention_author=False
        )
