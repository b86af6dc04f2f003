"""
Tests for the cogs.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from multiverse.bot.cogs.events_listener import EventsListenerCog
from multiverse.bot.cogs.multiverse_cmds import MultiverseCog, _parse_message_id
from multiverse.bot.cogs.relay_listener import RelayListenerCog, inbound_from_message, quoted_from_message
from multiverse.datatypes.discord_datatypes import ChannelID, MessageID, SinkID, UserID
from multiverse.datatypes.relay_datatypes import InboundMessage
from multiverse.federation.state_store import InMemoryFederationStore
from multiverse.services.multiverse_service import MultiverseService

from fakes import FakeTransport, make_message, make_room


class FakeAuthor:
    def __init__(self, user_id: int, name: str = "alice") -> None:
        self.id = user_id
        self.name = name
        self.display_name = name
        self.display_avatar = SimpleNamespace(url=f"https://cdn.example/{user_id}.png")

    def __str__(self) -> str:
        return self.name


def _discord_message(**overrides) -> SimpleNamespace:
    values = dict(
        id=555,
        guild=SimpleNamespace(id=10, name="Home"),
        channel=SimpleNamespace(id=1),
        author=FakeAuthor(7),
        content="hello there",
        webhook_id=None,
        attachments=[],
        reference=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _context(user_id: int) -> MagicMock:
    ctx = MagicMock(spec=discord.ApplicationContext)
    ctx.user = SimpleNamespace(id=user_id)
    ctx.respond = AsyncMock()
    ctx.defer = AsyncMock()
    ctx.send_followup = AsyncMock()
    return ctx


async def _service(settings, transport: FakeTransport) -> MultiverseService:
    for index in (1, 2, 3):
        transport.add_room(make_room(index, index * 10))
    service = MultiverseService(settings, transport, InMemoryFederationStore())
    await service.reconciler.run_cycle()
    return service


# ----------------------------------------------------------------------
# Relay listener
# ----------------------------------------------------------------------


def test_inbound_from_message_normalises_fields():
    attachment = SimpleNamespace(filename="cat.png", url="https://cdn.example/cat.png", size=2048)
    inbound = inbound_from_message(_discord_message(attachments=[attachment], webhook_id=321))

    assert inbound.room_id == ChannelID(1)
    assert inbound.message_id == MessageID(555)
    assert inbound.sender_id == UserID(7)
    assert inbound.sender_name == "alice"
    assert inbound.guild_name == "Home"
    assert inbound.avatar_url == "https://cdn.example/7.png"
    assert inbound.webhook_id == SinkID(321)
    assert inbound.attachments[0].source is attachment
    assert inbound.reply_to is None


def test_quoted_message_requires_resolved_message():
    resolved = MagicMock(spec=discord.Message)
    resolved.id = 444
    resolved.author.display_name = "bob"
    resolved.content = "original"

    quoted = quoted_from_message(_discord_message(reference=SimpleNamespace(resolved=resolved)))
    deleted = quoted_from_message(_discord_message(reference=SimpleNamespace(resolved=None)))

    assert quoted.message_id == MessageID(444)
    assert quoted.author_name == "bob"
    assert quoted.content == "original"
    assert deleted is None


@pytest.mark.asyncio
async def test_on_message_dispatches_guild_messages_only():
    service = MagicMock()
    bot = SimpleNamespace(user=SimpleNamespace(id=999))
    cog = RelayListenerCog(bot, service)

    await cog.on_message(_discord_message(guild=None))
    await cog.on_message(_discord_message(author=FakeAuthor(999)))
    await cog.on_message(_discord_message(channel=SimpleNamespace(id="not-a-snowflake")))
    await cog.on_message(_discord_message())

    service.dispatch.assert_called_once()
    inbound = service.dispatch.call_args.args[0]
    assert isinstance(inbound, InboundMessage)
    assert inbound.content == "hello there"


# ----------------------------------------------------------------------
# Events listener
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_on_ready_starts_service():
    service = MagicMock()
    service.start = AsyncMock()
    service.settings.channel_name = "multiverse"
    bot = SimpleNamespace(user=SimpleNamespace(id=999), change_presence=AsyncMock())
    cog = EventsListenerCog(bot, service)

    await cog.on_ready()

    assert service.bot_user_id == UserID(999)
    bot.change_presence.assert_awaited_once()
    service.start.assert_awaited_once()


@pytest.mark.asyncio
async def test_command_error_is_answered_ephemerally():
    cog = EventsListenerCog(SimpleNamespace(user=None), MagicMock())
    ctx = _context(1)
    ctx.command = SimpleNamespace(name="status")

    await cog.on_application_command_error(ctx, RuntimeError("boom"))

    ctx.respond.assert_awaited_once()
    assert ctx.respond.call_args.kwargs["ephemeral"] is True


# ----------------------------------------------------------------------
# Multiverse commands
# ----------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("123", MessageID(123)),
        ("  456 ", MessageID(456)),
        ("https://discord.com/channels/1/2/789", MessageID(789)),
        ("https://discord.com/channels/1/2/789/", MessageID(789)),
        ("not a message", None),
    ],
)
def test_parse_message_id(raw, expected):
    assert _parse_message_id(raw) == expected


@pytest.mark.asyncio
async def test_deletereply_by_author(settings, transport):
    service = await _service(settings, transport)
    message = make_message(transport.rooms[ChannelID(1)], sender_id=11)
    await service.handle_inbound(message, now=1_000)
    cog = MultiverseCog(MagicMock(), service)
    ctx = _context(11)
    link = f"https://discord.com/channels/20/2/{transport.delivered[0].message_id}"

    await cog.deletereply.callback(cog, ctx, link, False, False)

    ctx.defer.assert_awaited_once_with(ephemeral=True)
    assert ctx.send_followup.call_args.kwargs["content"] == "Deleted a total of 2 messages"
    assert len(service.ledger) == 0


@pytest.mark.asyncio
async def test_deletereply_errors_are_reported(settings, transport):
    service = await _service(settings, transport)
    message = make_message(transport.rooms[ChannelID(1)], sender_id=11)
    await service.handle_inbound(message, now=1_000)
    cog = MultiverseCog(MagicMock(), service)

    stranger = _context(12)
    await cog.deletereply.callback(cog, stranger, str(message.message_id), False, False)
    assert stranger.send_followup.call_args.kwargs["content"].startswith("❌")

    garbage = _context(11)
    await cog.deletereply.callback(cog, garbage, "nope", False, False)
    garbage.respond.assert_awaited_once()
    garbage.defer.assert_not_called()

    assert len(service.ledger) == 1


@pytest.mark.asyncio
async def test_info_message_command(settings, transport):
    service = await _service(settings, transport)
    message = make_message(transport.rooms[ChannelID(1)], sender_id=11)
    await service.handle_inbound(message, now=1_000)
    cog = MultiverseCog(MagicMock(), service)
    ctx = _context(3)

    await cog.info_message_command.callback(cog, ctx, SimpleNamespace(id=transport.delivered[0].message_id.to_int()))

    text = ctx.respond.call_args.args[0]
    assert f"Multiversal message #{message.message_id}" in text
    assert "Author uid: 11" in text


@pytest.mark.asyncio
async def test_admin_commands_check_superuser(settings, transport):
    service = await _service(settings, transport)
    cog = MultiverseCog(MagicMock(), service)

    denied = _context(5)
    await cog.blacklist.callback(cog, denied, "6")
    assert denied.respond.call_args.args[0] == "❌ Only multiverse admins can do this."

    allowed = _context(900)
    await cog.blacklist.callback(cog, allowed, "6")
    assert allowed.respond.call_args.args[0] == "✅ Blacklisted 6 (applied with the next sync)"

    invalid = _context(900)
    await cog.whitelist.callback(cog, invalid, "abc")
    assert invalid.respond.call_args.args[0].startswith("❌")

    assert service.state_manager.state.is_blacklisted("6")


@pytest.mark.asyncio
async def test_status_and_lastusers(settings, transport):
    service = await _service(settings, transport)
    cog = MultiverseCog(MagicMock(), service)

    empty = _context(1)
    await cog.lastusers.callback(cog, empty, 20)
    assert empty.respond.call_args.args[0] == "Nobody has sent anything yet."

    await service.handle_inbound(make_message(transport.rooms[ChannelID(1)], sender_id=11), now=1_000)
    busy = _context(1)
    await cog.lastusers.callback(cog, busy, 20)
    assert busy.respond.call_args.args[0] == "Guild 10 — 10 (sent 1, received 0)"

    status = _context(1)
    await cog.status.callback(cog, status)
    embed = status.respond.call_args.kwargs["embed"]
    assert isinstance(embed, discord.Embed)
    assert embed.fields[0].value == "3 connected / 3 known"


@pytest.mark.asyncio
async def test_notify_reaches_one_guild(settings, transport):
    service = await _service(settings, transport)
    cog = MultiverseCog(MagicMock(), service)

    allowed = _context(900)
    await cog.notify.callback(cog, allowed, "20", "maintenance")
    assert allowed.send_followup.call_args.kwargs["content"] == "Sent to 1 channel(s), 0 failed"
    assert [room_id for room_id, _ in transport.attempts] == [ChannelID(2)]

    denied = _context(5)
    await cog.notify.callback(cog, denied, "20", "maintenance")
    assert denied.send_followup.call_args.kwargs["content"] == "❌ Only multiverse admins can do this."

    invalid = _context(900)
    await cog.notify.callback(cog, invalid, "abc", "maintenance")
    assert invalid.send_followup.call_args.kwargs["content"].startswith("❌")
    assert len(transport.attempts) == 1
