from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from multiverse.datatypes.discord_datatypes import ChannelID, MessageID, SinkID
from multiverse.datatypes.relay_datatypes import DeliveredRef, MessageRef, OutboundPayload, Sink
from multiverse.errors import SinkUnavailable
from multiverse.transport.discord_transport import DiscordTransport, room_from_channel


def _channel(channel_id: int = 1) -> MagicMock:
    channel = MagicMock(spec=discord.TextChannel)
    channel.id = channel_id
    channel.name = "multiverse"
    channel.topic = None
    channel.guild = SimpleNamespace(id=10, name="Home", me=object())
    channel.webhooks = AsyncMock(return_value=[])
    channel.create_webhook = AsyncMock()
    return channel


def _webhook(webhook_id: int, name: str = "MultiverseWebhook", token: str | None = "token") -> MagicMock:
    webhook = MagicMock()
    webhook.id = webhook_id
    webhook.name = name
    webhook.token = token
    webhook.send = AsyncMock(return_value=SimpleNamespace(id=9000))
    webhook.delete_message = AsyncMock()
    return webhook


def _transport(channel: MagicMock) -> DiscordTransport:
    bot = MagicMock()
    bot.get_channel.side_effect = lambda cid: channel if cid == channel.id else None
    bot.guilds = [SimpleNamespace(text_channels=[channel])]
    return DiscordTransport(bot)


def test_room_from_channel():
    room = room_from_channel(_channel(5))
    assert room.room_id == ChannelID(5)
    assert room.guild_name == "Home"
    assert room.topic == ""


@pytest.mark.asyncio
async def test_list_rooms_and_permissions():
    channel = _channel()
    channel.permissions_for.return_value = SimpleNamespace(view_channel=True, send_messages=True, manage_webhooks=False)
    transport = _transport(channel)

    rooms = await transport.list_rooms()
    perms = transport.permissions(rooms[0])

    assert [room.room_id for room in rooms] == [ChannelID(1)]
    assert perms.can_view and perms.can_send
    assert perms.missing() == ["MANAGE_WEBHOOKS"]
    assert not transport.permissions(room_from_channel(_channel(2))).sufficient


@pytest.mark.asyncio
async def test_existing_webhook_is_reused():
    channel = _channel()
    channel.webhooks.return_value = [_webhook(1, name="Other"), _webhook(2, token=None), _webhook(3)]
    transport = _transport(channel)

    sink = await transport.create_or_get_sink(room_from_channel(channel))

    assert sink.sink_id == SinkID(3)
    channel.create_webhook.assert_not_called()


@pytest.mark.asyncio
async def test_webhook_is_created_when_missing():
    channel = _channel()
    channel.create_webhook.return_value = _webhook(4)
    transport = _transport(channel)

    sink = await transport.create_or_get_sink(room_from_channel(channel))

    assert sink.sink_id == SinkID(4)
    channel.create_webhook.assert_awaited_once()


@pytest.mark.asyncio
async def test_execute_posts_with_identity_and_no_mentions():
    channel = _channel()
    webhook = _webhook(4)
    transport = _transport(channel)
    sink = Sink(sink_id=SinkID(4), room_id=ChannelID(1), handle=webhook)

    ref = await transport.execute(sink, OutboundPayload(content="hi", username="alice — Home", avatar_url="a.png"))

    kwargs = webhook.send.call_args.kwargs
    assert kwargs["content"] == "hi"
    assert kwargs["username"] == "alice — Home"
    assert kwargs["wait"] is True
    assert isinstance(kwargs["allowed_mentions"], discord.AllowedMentions)
    assert ref == DeliveredRef(room_id=ChannelID(1), message_id=MessageID(9000), sink_id=SinkID(4))


@pytest.mark.asyncio
async def test_deleted_webhook_raises_sink_unavailable():
    channel = _channel()
    webhook = _webhook(4)
    webhook.send.side_effect = discord.NotFound(SimpleNamespace(status=404, reason="Not Found"), "Unknown Webhook")
    transport = _transport(channel)
    sink = Sink(sink_id=SinkID(4), room_id=ChannelID(1), handle=webhook)

    with pytest.raises(SinkUnavailable):
        await transport.execute(sink, OutboundPayload(content="hi"))


@pytest.mark.asyncio
async def test_delete_prefers_webhook_of_the_copy():
    channel = _channel()
    webhook = _webhook(4)
    channel.create_webhook.return_value = webhook
    partial = MagicMock()
    partial.delete = AsyncMock()
    channel.get_partial_message.return_value = partial
    transport = _transport(channel)
    await transport.create_or_get_sink(room_from_channel(channel))

    await transport.delete(DeliveredRef(room_id=ChannelID(1), message_id=MessageID(50), sink_id=SinkID(4)))
    await transport.delete(MessageRef(room_id=ChannelID(1), message_id=MessageID(51)))

    webhook.delete_message.assert_awaited_once_with(50)
    channel.get_partial_message.assert_called_once_with(51)
    partial.delete.assert_awaited_once()


@pytest.mark.asyncio
async def test_unreachable_room_raises_lookup_error():
    transport = _transport(_channel())

    with pytest.raises(LookupError):
        await transport.send_notice(ChannelID(99), "hello")
