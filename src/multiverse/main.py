"""
Multiverse Relay Bot
====================

A Discord bot that links every channel named like ``#multiverse`` across all
of its guilds into one federation: messages posted in one channel are relayed
through webhooks into all the others, with per-user rate limits, content
safety filtering and moderated deletion.
"""

import os
import sys
from pathlib import Path


def resolve_base_dir() -> Path:
    """Determine the base directory of the project.

    Resolution order:
    1. MULTIVERSE_HOME environment variable, if set.
    2. If running in a frozen/compiled context, use the executable's directory.
    3. Otherwise, assume running from source and use the grandparent of this file's directory.
    """
    if env_home := os.getenv("MULTIVERSE_HOME"):
        return Path(env_home).resolve()

    if getattr(sys, "frozen", False) or getattr(sys, "compiled", False):
        return Path(sys.argv[0]).resolve().parent

    return Path(__file__).resolve().parents[2]


BASE_DIR = resolve_base_dir()
os.chdir(BASE_DIR)

import asyncio
import discord
from dotenv import load_dotenv

from multiverse.configuration.app_configuration import app_config
from multiverse.configuration.relay_settings import RelaySettings
from multiverse.database.db_connection import db_connection
from multiverse.federation.state_store import create_state_store
from multiverse.services.multiverse_service import MultiverseService
from multiverse.transport.discord_transport import DiscordTransport
from multiverse.util.logger import get_logger, handle_exception


logger = get_logger("main")


def load_environment() -> str:
    """Load environment variables and return the Discord bot token.

    Raises
    ------
    SystemExit
        If the required ``DISCORD_BOT_TOKEN`` variable is missing.
    """
    load_dotenv(dotenv_path=BASE_DIR / ".env")
    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token:
        logger.critical("'DISCORD_BOT_TOKEN' environment variable not set. Bot cannot start.")
        sys.exit(1)
    return token


def build_intents() -> discord.Intents:
    """Intents for guild channel discovery and reading relayed messages."""
    intents = discord.Intents.default()
    intents.message_content = True
    intents.guilds = True
    intents.messages = True
    intents.webhooks = True
    return intents


def load_cogs(discord_bot_instance: discord.Bot, service: MultiverseService) -> None:
    """Register all cogs with the bot, sharing one service instance."""
    from multiverse.bot.cogs import events_listener, multiverse_cmds, relay_listener

    events_listener.setup(discord_bot_instance, service)
    relay_listener.setup(discord_bot_instance, service)
    multiverse_cmds.setup(discord_bot_instance, service)

    logger.info("All cogs loaded successfully.")


def needs_database(settings: RelaySettings) -> bool:
    return settings.state_backend == "sqlite" or settings.persist_auto_bans


def create_runtime(settings: RelaySettings) -> tuple[discord.Bot, MultiverseService]:
    """Instantiate the bot, the transport and the relay service, and wire the cogs."""
    bot = discord.Bot(intents=build_intents())
    transport = DiscordTransport(bot, webhook_name=settings.webhook_name)
    state_store = create_state_store(settings, bot=bot)
    service = MultiverseService(settings, transport, state_store)
    load_cogs(bot, service)
    return bot, service


async def start_bot(bot: discord.Bot, token: str) -> None:
    """Start the Discord bot and log around the connection lifecycle."""
    logger.info("Attempting to connect to Discord…")
    try:
        await bot.start(token)
    except asyncio.CancelledError:
        logger.info("Discord bot start cancelled; shutting down")
    finally:
        logger.info("Discord bot start routine finished.")


async def shutdown_runtime(bot: discord.Bot | None, service: MultiverseService | None) -> None:
    """Stop the relay, close the Discord connection and the database, in that order."""
    if service is not None:
        try:
            await service.shutdown()
        except Exception as exc:
            logger.exception("Error during relay shutdown: %s", exc)

    if bot is not None and not bot.is_closed():
        try:
            await bot.close()
        except Exception as exc:
            logger.exception("Error while closing the Discord connection: %s", exc)

    if db_connection.is_open:
        try:
            await db_connection.close()
        except Exception as exc:
            logger.exception("Error while closing the database: %s", exc)

    logger.info("Shutdown complete.")


async def async_main() -> int:
    """Bootstrap the database, bot and relay, returning an exit code."""
    token = load_environment()
    settings = app_config.relay

    if needs_database(settings):
        try:
            logger.info("Opening database at %s", settings.database_path)
            await db_connection.open(Path(settings.database_path))
        except Exception as exc:
            logger.critical("Failed to initialize database: %s", exc)
            return 1

    try:
        bot, service = create_runtime(settings)
    except Exception as exc:
        logger.critical("Failed to initialize Discord bot: %s", exc)
        await shutdown_runtime(None, None)
        return 1

    exit_code = 0
    try:
        await start_bot(bot, token)
    except Exception as exc:
        logger.critical("Discord bot runtime error: %s", exc)
        exit_code = 1
    finally:
        await shutdown_runtime(bot, service)

    return exit_code


def main() -> int:
    """Entrypoint that runs the async runtime and returns the process exit code."""
    sys.excepthook = handle_exception
    logger.info("Starting Multiverse relay…")
    try:
        return asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")
        return 0
    except SystemExit as exit_exc:
        code = exit_exc.code
        if isinstance(code, int):
            return code
        return 1
    except Exception as exc:
        logger.critical("An unexpected error occurred while running the bot: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
