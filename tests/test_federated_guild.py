import pytest

from multiverse.datatypes.discord_datatypes import GuildID
from multiverse.datatypes.relay_datatypes import Endpoint, OutboundPayload
from multiverse.federation.federated_guild import FederatedGuild

from fakes import FakeTransport, make_room


async def _guild_with_rooms(transport: FakeTransport, *room_ids: int, ttl: float = 1800.0) -> FederatedGuild:
    guild = FederatedGuild(guild_id=GuildID(10), name="Guild", refresh_ttl=ttl)
    for room_id in room_ids:
        room = transport.add_room(make_room(room_id, 10))
        guild.endpoints[room.room_id] = Endpoint(room=room, sink=await transport.create_or_get_sink(room))
    return guild


def test_display_name_fallbacks() -> None:
    guild = FederatedGuild(guild_id=GuildID(1))
    assert guild.display_name == "<DISCORD>"
    guild.name = "Server"
    assert guild.display_name == "Server"
    guild.name_override = "Override"
    assert guild.display_name == "Override"


def test_counters() -> None:
    guild = FederatedGuild(guild_id=GuildID(1))
    guild.record_sent(now=50.0)
    guild.record_sent(now=60.0)
    guild.record_received(3)

    assert guild.total_sent == 2
    assert guild.last_sent == 60.0
    assert guild.total_received == 3


@pytest.mark.asyncio
async def test_refresh_respects_ttl(transport: FakeTransport) -> None:
    guild = await _guild_with_rooms(transport, 1, 2, ttl=100.0)
    guild.last_refresh = 1000.0
    transport.drop_room(next(iter(guild.endpoints)))

    assert await guild.refresh(transport, now=1050.0) == []
    assert len(guild.endpoints) == 2

    pruned = await guild.refresh(transport, now=1100.0)

    assert len(pruned) == 1
    # removal is left to the registry
    assert len(guild.endpoints) == 2
    assert guild.last_refresh == 1100.0


@pytest.mark.asyncio
async def test_send_is_sequential_and_counts_failures(transport: FakeTransport) -> None:
    guild = await _guild_with_rooms(transport, 1, 2, 3)
    rooms = list(guild.endpoints)
    transport.failing_rooms = {rooms[1]}
    guild.endpoints[rooms[2]].sink = None

    delivered, failed = await guild.send(transport, list(guild.endpoints.values()), OutboundPayload(content="notice"))

    assert [ref.room_id for ref in delivered] == [rooms[0]]
    assert failed == 1
    assert [room_id for room_id, _ in transport.attempts] == [rooms[0], rooms[1]]


@pytest.mark.asyncio
async def test_send_skips_excluded_room(transport: FakeTransport) -> None:
    guild = await _guild_with_rooms(transport, 1, 2)
    rooms = list(guild.endpoints)

    delivered, failed = await guild.send(
        transport, list(guild.endpoints.values()), OutboundPayload(content="x"), exclude=rooms[0]
    )

    assert [ref.room_id for ref in delivered] == [rooms[1]]
    assert failed == 0


@pytest.mark.asyncio
async def test_send_reports_unavailable_sinks(transport: FakeTransport) -> None:
    guild = await _guild_with_rooms(transport, 1, 2)
    rooms = list(guild.endpoints)
    transport.unavailable_rooms = {rooms[0]}
    transport.failing_rooms = {rooms[1]}
    lost = []

    async def on_unavailable(endpoint, reason):
        lost.append((endpoint.room_id, reason))

    delivered, failed = await guild.send(
        transport, list(guild.endpoints.values()), OutboundPayload(content="x"), on_unavailable=on_unavailable
    )

    assert delivered == []
    assert failed == 2
    assert [room_id for room_id, _ in lost] == [rooms[0]]
    assert "was deleted" in lost[0][1]
