"""Message listener cog for the Multiverse.

Turns ``on_message`` events into :class:`InboundMessage` objects and hands
them to the service. The handler only spawns a task and returns, so a slow
fan-out never holds up the gateway event stream.
"""

from __future__ import annotations

from typing import Optional

import discord
from discord.ext import commands

from multiverse.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, SinkID, UserID
from multiverse.datatypes.relay_datatypes import AttachmentRef, InboundMessage, QuotedMessage
from multiverse.services.multiverse_service import MultiverseService
from multiverse.util.logger import get_logger

logger = get_logger("relay_listener_cog")


def quoted_from_message(message: discord.Message) -> Optional[QuotedMessage]:
    """Describe the message ``message`` replies to, if Discord resolved it."""
    reference = message.reference
    if reference is None:
        return None
    resolved = reference.resolved
    if not isinstance(resolved, discord.Message):
        return None
    return QuotedMessage(
        message_id=MessageID(resolved.id),
        author_name=resolved.author.display_name,
        content=resolved.content or "",
    )


def inbound_from_message(message: discord.Message) -> InboundMessage:
    """Normalise a guild message into an :class:`InboundMessage`."""
    author = message.author
    return InboundMessage(
        room_id=ChannelID(message.channel.id),
        guild_id=GuildID(message.guild.id),
        message_id=MessageID(message.id),
        sender_id=UserID(author.id),
        sender_name=str(author),
        content=message.content or "",
        avatar_url=author.display_avatar.url if author.display_avatar else None,
        guild_name=message.guild.name,
        webhook_id=SinkID(message.webhook_id) if message.webhook_id else None,
        attachments=[
            AttachmentRef(filename=attachment.filename, url=attachment.url, size=attachment.size, source=attachment)
            for attachment in message.attachments
        ],
        reply_to=quoted_from_message(message),
    )


class RelayListenerCog(commands.Cog):
    """Feeds every guild message into the relay pipeline."""

    def __init__(self, discord_bot_instance: discord.Bot, service: MultiverseService) -> None:
        self.bot = discord_bot_instance
        self.service = service
        logger.info("Relay listener cog loaded")

    @commands.Cog.listener(name="on_message")
    async def on_message(self, message: discord.Message) -> None:
        if message.guild is None:
            return
        if self.bot.user is not None and message.author.id == self.bot.user.id:
            return
        try:
            inbound = inbound_from_message(message)
        except (AttributeError, ValueError) as exc:
            logger.debug("[RELAY LISTENER] Skipping message %s: %s", message.id, exc)
            return
        self.service.dispatch(inbound)


def setup(discord_bot_instance: discord.Bot, service: MultiverseService) -> None:
    """Register the RelayListenerCog with the bot."""
    discord_bot_instance.add_cog(RelayListenerCog(discord_bot_instance, service))
