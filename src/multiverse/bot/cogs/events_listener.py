"""Event listener cog for the Multiverse.

Starts the relay once the gateway connection is ready and turns command
errors into a short ephemeral reply.
"""

import discord
from discord.ext import commands

from multiverse.datatypes.discord_datatypes import UserID
from multiverse.services.multiverse_service import MultiverseService
from multiverse.util.logger import get_logger

logger = get_logger("events_listener_cog")


class EventsListenerCog(commands.Cog):
    """Cog containing bot lifecycle and command error handlers."""

    def __init__(self, discord_bot_instance: discord.Bot, service: MultiverseService):
        self.bot = discord_bot_instance
        self.service = service
        logger.info("Events listener cog loaded")

    @commands.Cog.listener(name="on_ready")
    async def on_ready(self):
        """Record the bot identity, set the presence and start the relay.

        ``on_ready`` fires again after every reconnect; the service ignores
        repeated starts.
        """
        if self.bot.user:
            self.service.bot_user_id = UserID(self.bot.user.id)
            logger.info(f"Bot connected as {self.bot.user} (ID: {self.bot.user.id})")
        else:
            logger.warning("Bot partially connected, but user information not yet available.")

        logger.info("--==--==--==--==--==--==--==--==--==--==--==--==--==--==--==--==--")

        await self._update_presence()
        await self.service.start()

    async def _update_presence(self) -> None:
        if not self.bot.user:
            return
        await self.bot.change_presence(
            status=discord.Status.online,
            activity=discord.Activity(
                type=discord.ActivityType.watching,
                name=f"#{self.service.settings.channel_name} across the multiverse",
            ),
        )

    @commands.Cog.listener(name="on_application_command_error")
    async def on_application_command_error(self, application_context: discord.ApplicationContext, error: Exception):
        """Log command errors and tell the invoker something went wrong."""
        if isinstance(error, commands.CommandNotFound):
            return

        command_name = getattr(application_context.command, "name", "<unknown>")
        logger.error(f"Error in command '{command_name}': {error}", exc_info=True)

        error_message = "A :bug: showed up while running this command."
        try:
            await application_context.respond(error_message, ephemeral=True)
        except discord.InteractionResponded:
            await application_context.followup.send(error_message, ephemeral=True)


def setup(discord_bot_instance: discord.Bot, service: MultiverseService) -> None:
    """Register the EventsListenerCog with the bot."""
    discord_bot_instance.add_cog(EventsListenerCog(discord_bot_instance, service))
