import asyncio
from unittest.mock import patch

import pytest

from multiverse.configuration.relay_settings import RelaySettings
from multiverse.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, UserID
from multiverse.datatypes.relay_datatypes import RelayOutcome
from multiverse.errors import DeliveryFailure, NotFoundInHistory, PermissionDenied
from multiverse.federation.state_store import InMemoryFederationStore
from multiverse.services.multiverse_service import (
    AUTO_BAN_NOTICE,
    NOT_ALLOWED_NOTICE,
    ORIGIN_DELETE_FAILED_NOTICE,
    SCAM_NOTICE,
    MultiverseService,
    describe_record,
)

from fakes import FakeTransport, make_message, make_room

BOT_ID = 999
ADMIN_ID = 900


async def _service(settings: RelaySettings, transport: FakeTransport, room_count: int = 3) -> MultiverseService:
    for index in range(1, room_count + 1):
        transport.add_room(make_room(index, index * 10))
    service = MultiverseService(settings, transport, InMemoryFederationStore())
    service.bot_user_id = UserID(BOT_ID)
    await service.reconciler.run_cycle()
    return service


def _mentions(count: int) -> str:
    return " ".join(f"<@{1000 + i}>" for i in range(count))


@pytest.mark.asyncio
async def test_partial_failure_relays_to_remaining_rooms(settings, transport) -> None:
    service = await _service(settings, transport)
    room_a, room_b, room_c = (transport.rooms[ChannelID(i)] for i in (1, 2, 3))
    transport.failing_rooms = {room_b.room_id}
    message = make_message(room_a, sender_id=1, content="hi")

    with patch("multiverse.relay.broadcast_engine.logger") as engine_logger:
        outcome = await service.handle_inbound(message, now=10_000)
    await service.wait_idle()

    assert outcome is RelayOutcome.RELAYED
    record = await service.info_by_reference(message.message_id)
    assert [copy.room_id for copy in record.copies] == [room_c.room_id]
    assert transport.attempts_for(room_b.room_id)
    assert transport.attempts_for(room_a.room_id) == []

    failure = engine_logger.warning.call_args.args[1]
    assert isinstance(failure, DeliveryFailure)
    assert failure.endpoint.room_id == room_b.room_id

    assert service.rate_limiter.last_accepted(UserID(1)) == 10_000
    assert transport.replies == []


@pytest.mark.asyncio
async def test_mention_flood_auto_bans_without_relaying(settings, transport) -> None:
    service = await _service(settings, transport)
    room_a = transport.rooms[ChannelID(1)]

    outcome = await service.handle_inbound(make_message(room_a, sender_id=5, content=_mentions(8)), now=1_000)
    await service.wait_idle()

    assert outcome is RelayOutcome.AUTO_BANNED
    assert transport.attempts == []
    assert len(service.ledger) == 0
    assert UserID(5) in service.safety_filter.block_list
    assert [text for _, text in transport.replies] == [AUTO_BAN_NOTICE]

    follow_up = await service.handle_inbound(make_message(room_a, sender_id=5, content="sorry"), now=60_000)
    await service.wait_idle()

    assert follow_up is RelayOutcome.NOT_ALLOWED
    assert transport.attempts == []
    assert transport.replies[-1][1] == NOT_ALLOWED_NOTICE


@pytest.mark.asyncio
async def test_rate_limit_rejects_and_reports_wait(settings, transport) -> None:
    service = await _service(settings, transport)
    room_a = transport.rooms[ChannelID(1)]

    first = await service.handle_inbound(make_message(room_a, sender_id=7), now=1_000)
    second = await service.handle_inbound(make_message(room_a, sender_id=7), now=1_500)
    third = await service.handle_inbound(make_message(room_a, sender_id=7), now=3_000)
    await service.wait_idle()

    assert (first, second, third) == (RelayOutcome.RELAYED, RelayOutcome.RATE_LIMITED, RelayOutcome.RELAYED)
    assert [text for _, text in transport.replies] == [
        "[!] You are being rate limited. Please wait 1500 milliseconds."
    ]
    assert len(service.ledger) == 2


@pytest.mark.asyncio
async def test_rejected_scam_does_not_use_up_rate_limit(settings, transport) -> None:
    service = await _service(settings, transport)
    room_a = transport.rooms[ChannelID(1)]

    scam = await service.handle_inbound(
        make_message(room_a, sender_id=8, content="free gift https://steamcommunlty.com/gift"), now=1_000
    )
    normal = await service.handle_inbound(make_message(room_a, sender_id=8, content="hello"), now=1_001)
    await service.wait_idle()

    assert scam is RelayOutcome.REJECTED
    assert normal is RelayOutcome.RELAYED
    assert transport.replies[0][1] == SCAM_NOTICE
    assert UserID(8) not in service.safety_filter.block_list


@pytest.mark.asyncio
async def test_own_and_foreign_messages_are_ignored(settings, transport) -> None:
    service = await _service(settings, transport)
    room_a = transport.rooms[ChannelID(1)]
    endpoint_b = await service.registry.get(ChannelID(2))

    from_bot = make_message(room_a, sender_id=BOT_ID)
    from_sink = make_message(room_a, sender_id=3, webhook_id=endpoint_b.sink.sink_id)
    elsewhere = make_message(make_room(77, 770, name="general"))

    assert await service.handle_inbound(from_bot) is RelayOutcome.IGNORED
    assert await service.handle_inbound(from_sink) is RelayOutcome.IGNORED
    assert await service.handle_inbound(elsewhere) is RelayOutcome.IGNORED
    assert transport.attempts == []


@pytest.mark.asyncio
async def test_duplicate_events_are_relayed_once(settings, transport) -> None:
    service = await _service(settings, transport)
    message = make_message(transport.rooms[ChannelID(1)], sender_id=2)

    first, second = await asyncio.gather(
        service.handle_inbound(message, now=1_000),
        service.handle_inbound(message, now=5_000),
    )

    assert sorted([first, second], key=str) == sorted([RelayOutcome.RELAYED, RelayOutcome.DUPLICATE], key=str)
    assert len(transport.attempts) == 2


@pytest.mark.asyncio
async def test_dispatch_runs_in_background(settings, transport) -> None:
    service = await _service(settings, transport)

    task = service.dispatch(make_message(transport.rooms[ChannelID(1)], sender_id=3))

    assert await task is RelayOutcome.RELAYED
    await service.wait_idle()
    assert service._tasks == set()


@pytest.mark.asyncio
async def test_relay_label_and_counters(settings, transport) -> None:
    service = await _service(settings, transport)
    room_a = transport.rooms[ChannelID(1)]
    service.set_usertag(UserID(ADMIN_ID), 4, "VIP")

    await service.handle_inbound(make_message(room_a, sender_id=4, sender_name="dana"), now=1_000)
    await service.handle_inbound(make_message(room_a, sender_id=ADMIN_ID, sender_name="root"), now=1_000)

    labels = [payload.username for _, payload in transport.attempts]
    assert labels[:2] == ["[VIP]dana — Guild 10"] * 2
    assert labels[2:] == ["[Admin]root — Guild 10"] * 2

    sender = service.registry.guild(GuildID(10))
    assert sender.total_sent == 2
    assert service.registry.guild(GuildID(20)).total_received == 2
    assert service.registry.guild(GuildID(30)).total_received == 2
    assert service.last_active_guilds(1) == [sender]


@pytest.mark.asyncio
async def test_admin_operations_require_superuser(settings, transport) -> None:
    service = await _service(settings, transport)

    with pytest.raises(PermissionDenied):
        service.blacklist(UserID(1), 2)
    with pytest.raises(ValueError):
        service.whitelist(UserID(ADMIN_ID), "not-an-id")

    service.blacklist(UserID(ADMIN_ID), " 6 ")
    outcome = await service.handle_inbound(make_message(transport.rooms[ChannelID(1)], sender_id=6))

    assert outcome is RelayOutcome.NOT_ALLOWED
    assert len(service.state_manager.pending) == 1


@pytest.mark.asyncio
async def test_unblacklist_lifts_auto_ban(settings, transport) -> None:
    service = await _service(settings, transport)
    room_a = transport.rooms[ChannelID(1)]
    await service.handle_inbound(make_message(room_a, sender_id=5, content=_mentions(9)), now=1_000)

    service.unblacklist(UserID(ADMIN_ID), 5)
    outcome = await service.handle_inbound(make_message(room_a, sender_id=5), now=5_000)
    await service.wait_idle()

    assert outcome is RelayOutcome.RELAYED


@pytest.mark.asyncio
async def test_blacklisted_guild_is_dropped_after_convergence(settings, transport) -> None:
    service = await _service(settings, transport)
    service.blacklist(UserID(ADMIN_ID), 20)

    await service.reconciler.run_cycle()

    assert not await service.registry.contains(ChannelID(2))
    assert service.state_manager.pending == []


@pytest.mark.asyncio
async def test_delete_by_author_removes_every_copy(settings, transport) -> None:
    service = await _service(settings, transport)
    message = make_message(transport.rooms[ChannelID(1)], sender_id=11)
    await service.handle_inbound(message, now=1_000)
    record = await service.info_by_reference(message.message_id)

    result = await service.delete_by_reference(record.copies[0].message_id, UserID(11))

    assert result.deleted == 2
    assert not result.origin_failed
    assert {ref.message_id for ref in transport.deleted} == {copy.message_id for copy in record.copies}
    assert len(service.ledger) == 0
    with pytest.raises(NotFoundInHistory):
        await service.delete_by_reference(message.message_id, UserID(11))


@pytest.mark.asyncio
async def test_delete_by_other_user_is_denied(settings, transport) -> None:
    service = await _service(settings, transport)
    message = make_message(transport.rooms[ChannelID(1)], sender_id=11)
    await service.handle_inbound(message, now=1_000)

    with pytest.raises(PermissionDenied):
        await service.delete_by_reference(message.message_id, UserID(12))

    assert len(service.ledger) == 1
    assert transport.deleted == []


@pytest.mark.asyncio
async def test_moderator_deletes_origin_too(settings, transport) -> None:
    service = await _service(settings, transport)
    message = make_message(transport.rooms[ChannelID(1)], sender_id=11)
    await service.handle_inbound(message, now=1_000)

    result = await service.delete_by_reference(message.message_id, UserID(ADMIN_ID), include_origin=True)

    assert result.deleted == 3
    assert message.message_id in {ref.message_id for ref in transport.deleted}


@pytest.mark.asyncio
async def test_origin_delete_failure_is_reported(settings, transport) -> None:
    service = await _service(settings, transport)
    loud = make_message(transport.rooms[ChannelID(1)], sender_id=11)
    quiet = make_message(transport.rooms[ChannelID(1)], sender_id=11)
    await service.handle_inbound(loud, now=1_000)
    await service.handle_inbound(quiet, now=5_000)
    transport.delete_failures = {loud.message_id, quiet.message_id}

    result = await service.delete_by_reference(loud.message_id, UserID(11), include_origin=True)
    silent = await service.delete_by_reference(
        quiet.message_id, UserID(11), include_origin=True, notify_origin=False
    )

    assert result.deleted == 2 and result.origin_failed
    assert silent.deleted == 2 and silent.origin_failed
    assert transport.replies == [(loud.origin_ref(), ORIGIN_DELETE_FAILED_NOTICE)]


@pytest.mark.asyncio
async def test_info_by_reference_does_not_mutate(settings, transport) -> None:
    service = await _service(settings, transport)
    message = make_message(transport.rooms[ChannelID(2)], sender_id=11)
    await service.handle_inbound(message, now=1_000)
    copy_id = transport.delivered[0].message_id

    record = await service.info_by_reference(copy_id)
    again = await service.info_by_reference(copy_id)

    assert record is again
    assert record.origin.author_id == UserID(11)
    assert "Guild id: 20" in describe_record(record)
    assert len(service.ledger) == 1
    with pytest.raises(NotFoundInHistory):
        await service.info_by_reference(MessageID(1))


@pytest.mark.asyncio
async def test_system_messages(settings, transport) -> None:
    service = await _service(settings, transport)

    record = await service.broadcast_system("maintenance tonight")
    delivered, failed = await service.notify_guild(UserID(ADMIN_ID), 20, "hello guild")

    assert record.origin is None
    assert record.copy_count == 3
    assert {payload.username for _, payload in transport.attempts} == {"Multiverse"}
    assert (delivered, failed) == (1, 0)
    assert service.registry.guild(GuildID(20)).total_received == 2
    assert await service.notify_guild(UserID(ADMIN_ID), 12345, "nobody") == (0, 0)
    with pytest.raises(PermissionDenied):
        await service.notify_guild(UserID(1), 20, "not an admin")


@pytest.mark.asyncio
async def test_status_summary(settings, transport) -> None:
    service = await _service(settings, transport)
    await service.handle_inbound(make_message(transport.rooms[ChannelID(1)], sender_id=1), now=1_000)
    service.whitelist(UserID(ADMIN_ID), 10)

    stats = await service.status()

    assert stats == {
        "rooms": 3,
        "eligible": 3,
        "sinkless": 0,
        "guilds": 3,
        "history": 1,
        "auto_banned": 0,
        "pending_changes": 1,
        "cycles": 1,
    }


@pytest.mark.asyncio
async def test_start_announces_and_shuts_down(transport) -> None:
    settings = RelaySettings(
        {
            "convergence_jitter_seconds": 0,
            "reconcile_initial_delay_seconds": 0,
            "reconcile_interval_seconds": 3600,
            "announce_delay_seconds": 0,
        }
    )
    for index in (1, 2):
        transport.add_room(make_room(index, index * 10))
    service = MultiverseService(settings, transport, InMemoryFederationStore())

    await service.start()
    await service.start()
    await asyncio.wait_for(service._announce_task, timeout=1)

    assert service.reconciler.running
    assert [payload.content for _, payload in transport.attempts] == [
        "***This channel is now a part of the Multiverse! There are 2 connected channels!***\n"
        "Use `/multiverse status` to see the state of the network."
    ] * 2

    await service.shutdown()

    assert not service.reconciler.running
