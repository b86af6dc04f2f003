"""
Multiverse commands cog.

Slash commands under ``/multiverse`` plus two message context-menu commands
(right click → Apps) that act on a relayed message directly:

- ``deletereply`` / "Delete multiversal message": delete every copy of a
  broadcast, optionally the origin too. Allowed for the original author and
  for multiverse admins.
- ``replyinfo`` / "Multiversal message info": show the origin of a copy.
- ``lastusers``: guilds ordered by last activity with their counters.
- ``status``: registry and ledger summary.
- ``blacklist``, ``unblacklist``, ``whitelist``, ``unwhitelist``,
  ``nameoverride``, ``usertag``: federation admin edits (multiverse admins
  only). Edits are queued and pushed to the shared state by the next
  reconcile cycle.
- ``notify``: system message into the connected channels of one guild
  (multiverse admins only).

Lookup and permission errors from the service are answered ephemerally with
their message; anything else goes to the global error handler.
"""

from __future__ import annotations

import discord
from discord import Option
from discord.ext import commands

from multiverse.datatypes.discord_datatypes import MessageID, UserID
from multiverse.errors import MultiverseError
from multiverse.services.multiverse_service import MultiverseService, describe_record
from multiverse.util.logger import get_logger

logger = get_logger("multiverse_commands")


def _parse_message_id(raw: str) -> MessageID | None:
    """Accept a bare ID or a message link and return the message ID."""
    candidate = raw.strip().rstrip("/").rsplit("/", 1)[-1]
    try:
        return MessageID(candidate)
    except ValueError:
        return None


class MultiverseCog(commands.Cog):
    """Cog for multiverse moderation and administration."""

    multiverse = discord.SlashCommandGroup("multiverse", "Multiverse moderation and administration")

    def __init__(self, bot: discord.Bot, service: MultiverseService) -> None:
        self.bot = bot
        self.service = service
        logger.info("Multiverse commands cog loaded")

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    async def _delete(
        self,
        application_context: discord.ApplicationContext,
        message_id: MessageID,
        origin: bool,
        silent: bool,
    ) -> None:
        await application_context.defer(ephemeral=True)
        try:
            result = await self.service.delete_by_reference(
                message_id,
                UserID(application_context.user.id),
                include_origin=origin,
                notify_origin=not silent,
            )
        except MultiverseError as exc:
            await application_context.send_followup(content=f"❌ {exc}", ephemeral=True)
            return

        text = f"Deleted a total of {result.deleted} messages"
        if result.origin_failed:
            text += " (the original message could not be deleted)"
        await application_context.send_followup(content=text, ephemeral=True)

    async def _info(self, application_context: discord.ApplicationContext, message_id: MessageID) -> None:
        try:
            record = await self.service.info_by_reference(message_id)
        except MultiverseError as exc:
            await application_context.respond(f"❌ {exc}", ephemeral=True)
            return
        await application_context.respond(f"```\n{describe_record(record)}\n```", ephemeral=True)

    @multiverse.command(name="deletereply", description="Delete a message sent in the multiverse")
    async def deletereply(
        self,
        application_context: discord.ApplicationContext,
        message: Option(str, "ID or link of the multiversal message"),  # type: ignore
        origin: Option(bool, "Also delete the original message", default=False),  # type: ignore
        silent: Option(bool, "Do not reply to the original message on failure", default=False),  # type: ignore
    ) -> None:
        message_id = _parse_message_id(message)
        if message_id is None:
            await application_context.respond("❌ That is not a message ID or link.", ephemeral=True)
            return
        await self._delete(application_context, message_id, origin, silent)

    @multiverse.command(name="replyinfo", description="View info about a message sent in the multiverse")
    async def replyinfo(
        self,
        application_context: discord.ApplicationContext,
        message: Option(str, "ID or link of the multiversal message"),  # type: ignore
    ) -> None:
        message_id = _parse_message_id(message)
        if message_id is None:
            await application_context.respond("❌ That is not a message ID or link.", ephemeral=True)
            return
        await self._info(application_context, message_id)

    @commands.message_command(name="Delete multiversal message")
    async def delete_message_command(
        self, application_context: discord.ApplicationContext, message: discord.Message
    ) -> None:
        await self._delete(application_context, MessageID(message.id), origin=False, silent=False)

    @commands.message_command(name="Multiversal message info")
    async def info_message_command(
        self, application_context: discord.ApplicationContext, message: discord.Message
    ) -> None:
        await self._info(application_context, MessageID(message.id))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @multiverse.command(name="lastusers", description="List guilds that recently sent a message in the multiverse")
    async def lastusers(
        self,
        application_context: discord.ApplicationContext,
        limit: Option(int, "Maximum guild count", default=20, min_value=1, max_value=50),  # type: ignore
    ) -> None:
        guilds = [guild for guild in self.service.last_active_guilds(limit) if guild.total_sent]
        if not guilds:
            await application_context.respond("Nobody has sent anything yet.", ephemeral=True)
            return
        lines = [
            f"{guild.display_name} — {guild.guild_id} (sent {guild.total_sent}, received {guild.total_received})"
            for guild in guilds
        ]
        await application_context.respond("\n".join(lines), ephemeral=True)

    @multiverse.command(name="status", description="Show the state of the multiverse")
    async def status(self, application_context: discord.ApplicationContext) -> None:
        stats = await self.service.status()
        embed = discord.Embed(title="🌌 Multiverse", color=discord.Color.blurple())
        embed.add_field(name="Channels", value=f"{stats['eligible']} connected / {stats['rooms']} known", inline=False)
        embed.add_field(name="Without webhook", value=str(stats["sinkless"]))
        embed.add_field(name="Guilds", value=str(stats["guilds"]))
        embed.add_field(name="History", value=str(stats["history"]))
        embed.add_field(name="Auto-banned", value=str(stats["auto_banned"]))
        embed.add_field(name="Pending changes", value=str(stats["pending_changes"]))
        embed.add_field(name="Reconcile cycles", value=str(stats["cycles"]))
        await application_context.respond(embed=embed, ephemeral=True)

    # ------------------------------------------------------------------
    # Federation administration
    # ------------------------------------------------------------------

    async def _admin(self, application_context: discord.ApplicationContext, action, *args, done: str) -> None:
        try:
            action(UserID(application_context.user.id), *args)
        except (MultiverseError, ValueError) as exc:
            await application_context.respond(f"❌ {exc}", ephemeral=True)
            return
        await application_context.respond(f"✅ {done} (applied with the next sync)", ephemeral=True)

    @multiverse.command(name="blacklist", description="Blacklist a user, guild or channel ID")
    async def blacklist(
        self,
        application_context: discord.ApplicationContext,
        target: Option(str, "User, guild or channel ID"),  # type: ignore
    ) -> None:
        await self._admin(application_context, self.service.blacklist, target.strip(), done=f"Blacklisted {target}")

    @multiverse.command(name="unblacklist", description="Remove an ID from the blacklist")
    async def unblacklist(
        self,
        application_context: discord.ApplicationContext,
        target: Option(str, "User, guild or channel ID"),  # type: ignore
    ) -> None:
        await self._admin(application_context, self.service.unblacklist, target.strip(), done=f"Unblacklisted {target}")

    @multiverse.command(name="whitelist", description="Whitelist a guild")
    async def whitelist(
        self,
        application_context: discord.ApplicationContext,
        guild: Option(str, "Guild ID"),  # type: ignore
    ) -> None:
        await self._admin(application_context, self.service.whitelist, guild.strip(), done=f"Whitelisted {guild}")

    @multiverse.command(name="unwhitelist", description="Remove a guild from the whitelist")
    async def unwhitelist(
        self,
        application_context: discord.ApplicationContext,
        guild: Option(str, "Guild ID"),  # type: ignore
    ) -> None:
        await self._admin(application_context, self.service.unwhitelist, guild.strip(), done=f"Unwhitelisted {guild}")

    @multiverse.command(name="nameoverride", description="Set the name a guild is shown with (empty to clear)")
    async def nameoverride(
        self,
        application_context: discord.ApplicationContext,
        guild: Option(str, "Guild ID"),  # type: ignore
        name: Option(str, "Display name", default=""),  # type: ignore
    ) -> None:
        await self._admin(
            application_context, self.service.set_name_override, guild.strip(), name, done=f"Name of {guild} updated"
        )

    @multiverse.command(name="usertag", description="Set the tag shown in front of a user's name (empty to clear)")
    async def usertag(
        self,
        application_context: discord.ApplicationContext,
        user: Option(str, "User ID"),  # type: ignore
        tag: Option(str, "Tag", default=""),  # type: ignore
    ) -> None:
        await self._admin(application_context, self.service.set_usertag, user.strip(), tag, done=f"Tag of {user} updated")

    @multiverse.command(name="notify", description="Send a system message to the multiverse channels of one guild")
    async def notify(
        self,
        application_context: discord.ApplicationContext,
        guild: Option(str, "Guild ID"),  # type: ignore
        text: Option(str, "Message"),  # type: ignore
    ) -> None:
        await application_context.defer(ephemeral=True)
        try:
            delivered, failed = await self.service.notify_guild(UserID(application_context.user.id), guild.strip(), text)
        except (MultiverseError, ValueError) as exc:
            await application_context.send_followup(content=f"❌ {exc}", ephemeral=True)
            return
        await application_context.send_followup(
            content=f"Sent to {delivered} channel(s), {failed} failed", ephemeral=True
        )


def setup(bot: discord.Bot, service: MultiverseService) -> None:
    """Register the multiverse cog and command group with the bot."""
    bot.add_cog(MultiverseCog(bot, service))
