"""
Multiverse Service.

Wires every relay component together and owns the inbound pipeline:

  1. Loop prevention (own bot user, own sinks) and room membership
  2. Duplicate suppression against the history ledger
  3. Transmit permission (blacklist, whitelist, auto-ban list)
  4. Safety filter, then rate limiter
  5. Fan-out through the broadcast engine and guild counters

It also exposes the moderation operations (delete-by-reply, info-by-reply),
the federation admin edits and the lifecycle of the reconciler. Nothing here
knows about cogs; they translate Discord events and commands into calls on
this service.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Dict, List, Optional, Set

from multiverse.configuration.relay_settings import RelaySettings
from multiverse.datatypes.discord_datatypes import GuildID, MessageID, UserID
from multiverse.datatypes.federation_datatypes import ChangeKind, StateChange
from multiverse.datatypes.relay_datatypes import (
    BroadcastRecord,
    DeletionResult,
    DeliveredRef,
    Endpoint,
    FilterDecision,
    InboundMessage,
    OutboundPayload,
    RelayOutcome,
)
from multiverse.errors import NotFoundInHistory, PermissionDenied, RateLimited, RejectedBySafetyFilter
from multiverse.federation.endpoint_registry import EndpointRegistry
from multiverse.federation.federated_guild import FederatedGuild
from multiverse.federation.reconciler import Reconciler
from multiverse.federation.state_manager import FederationStateManager
from multiverse.federation.state_store import FederationStateStore
from multiverse.relay.broadcast_engine import BroadcastEngine
from multiverse.relay.history_ledger import HistoryLedger
from multiverse.relay.payload_builder import build_relay_content, build_username_label, finalize_payload
from multiverse.safety.rate_limiter import RateLimiter
from multiverse.safety.safety_filter import SafetyFilter, TemporaryBlockList
from multiverse.safety.scam_detector import PatternScamDetector, ScamDetector
from multiverse.transport.base import SinkTransport
from multiverse.util.logger import get_logger

logger = get_logger("multiverse_service")

NOT_ALLOWED_NOTICE = (
    "[!] You're not allowed to send messages in the multiverse. "
    "Please contact one of the admins to find out why."
)
AUTO_BAN_NOTICE = "[!] You've been auto-banned from this multiverse instance. Please wait until the next restart."
AUTO_BAN_PERSISTENT_NOTICE = "[!] You've been auto-banned from the multiverse. Please contact one of the admins."
SCAM_NOTICE = "[!] Your message contains a potential scam. If you're not a bot, remove any links and try again."
RATE_LIMIT_NOTICE = "[!] You are being rate limited. Please wait {ms} milliseconds."
ORIGIN_DELETE_FAILED_NOTICE = (
    "This message was deleted from other multiversal channels but this (original) message "
    "could not be deleted. Check whether the bot has the necessary permissions."
)
ANNOUNCEMENT = (
    "***This channel is now a part of the Multiverse! There are {count} connected channels!***\n"
    "Use `/multiverse status` to see the state of the network."
)


def _id_key(value: int | str) -> str:
    """Normalise a snowflake given by an admin into its state-document key."""
    try:
        return str(int(str(value).strip()))
    except ValueError:
        raise ValueError(f"{value!r} is not a valid ID") from None


def describe_record(record: BroadcastRecord) -> str:
    """Human-readable summary of a broadcast for info-by-reply."""
    origin = record.origin
    if origin is None:
        return f"System message\nCopies: {record.copy_count}"
    return "\n".join(
        [
            f"Multiversal message #{origin.message_id}",
            f"Author uid: {origin.author_id}",
            f"Channel id: {origin.room_id}",
            f"Guild id: {origin.guild_id}",
            f"Copies: {record.copy_count}",
        ]
    )


class MultiverseService:
    """
    Owner of the relay components.

    Parameters
    ----------
    settings:
        Typed view of the ``multiverse:`` config section.
    transport:
        Delivery capability (``DiscordTransport`` in production).
    state_store:
        Backend of the shared federation state.
    scam_detector / block_list:
        Optional overrides, mostly for tests.
    rng:
        Random source for the convergence jitter.
    """

    def __init__(
        self,
        settings: RelaySettings,
        transport: SinkTransport,
        state_store: FederationStateStore,
        scam_detector: Optional[ScamDetector] = None,
        block_list: Optional[TemporaryBlockList] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport

        self.registry = EndpointRegistry(
            transport,
            require_whitelist=settings.require_whitelist,
            guild_refresh_ttl=settings.guild_refresh_ttl,
        )
        self.ledger = HistoryLedger(settings.history_capacity)
        self.rate_limiter = RateLimiter(settings.rate_limit_ms)
        self.safety_filter = SafetyFilter(
            scam_detector or PatternScamDetector(settings.scam_patterns),
            block_list if block_list is not None else TemporaryBlockList(persistent=settings.persist_auto_bans),
            mention_threshold=settings.mention_threshold,
        )
        self.engine = BroadcastEngine(
            self.registry,
            self.ledger,
            transport,
            content_limit=settings.content_limit,
            username_limit=settings.username_limit,
            system_name=settings.system_name,
            system_avatar=settings.system_avatar,
        )
        self.state_manager = FederationStateManager(
            state_store, self.registry, jitter=settings.convergence_jitter, rng=rng
        )
        self.reconciler = Reconciler(
            self.registry,
            transport,
            self.state_manager,
            channel_name=settings.channel_name,
            match_topic=settings.match_topic,
            interval=settings.reconcile_interval,
            initial_delay=settings.reconcile_initial_delay,
            on_cycle_complete=self._after_cycle,
        )

        self.bot_user_id: Optional[UserID] = None
        self.superusers: Set[UserID] = {UserID(uid) for uid in settings.superusers}
        self._in_flight: Set[MessageID] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._announce_task: Optional[asyncio.Task] = None
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore persisted bans, start the reconciler and schedule the announcement."""
        if self._started:
            logger.debug("[SERVICE] start() called twice, ignoring")
            return
        self._started = True

        try:
            await self.safety_filter.block_list.load_persisted()
        except Exception as exc:
            logger.error("[SERVICE] Could not restore persisted auto-bans: %s", exc)

        self.reconciler.start()
        if self.settings.announce_on_start:
            self._announce_task = asyncio.create_task(self._announce_when_ready())
        logger.info("[SERVICE] Multiverse started")

    async def _announce_when_ready(self) -> None:
        await self.reconciler.first_cycle.wait()
        await asyncio.sleep(self.settings.announce_delay)
        count = len(await self.registry.list_eligible())
        await self.broadcast_system(ANNOUNCEMENT.format(count=count))
        logger.info("[SERVICE] Start-up announcement sent to %d channels", count)

    def _after_cycle(self) -> None:
        purged = self.rate_limiter.purge()
        if purged:
            logger.debug("[SERVICE] Forgot %d rate-limit entries", purged)

    async def wait_idle(self) -> None:
        """Wait for every in-flight relay and notice task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        if self._announce_task and not self._announce_task.done():
            self._announce_task.cancel()
            try:
                await self._announce_task
            except asyncio.CancelledError:
                pass

        await self.reconciler.shutdown()
        await self.wait_idle()
        await self.safety_filter.block_list.shutdown()
        self._started = False
        logger.info("[SERVICE] Multiverse shut down")

    def _spawn(self, coro: Any, what: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _cleanup(completed: asyncio.Task) -> None:
            self._tasks.discard(completed)
            if completed.cancelled():
                return
            exc = completed.exception()
            if exc is not None:
                logger.error("[SERVICE] %s failed: %s", what, exc, exc_info=exc)

        task.add_done_callback(_cleanup)
        return task

    # ------------------------------------------------------------------
    # Inbound pipeline
    # ------------------------------------------------------------------

    def is_own_message(self, message: InboundMessage) -> bool:
        if self.bot_user_id is not None and message.sender_id == self.bot_user_id:
            return True
        return self.registry.owns_sink(message.webhook_id)

    def can_transmit(self, message: InboundMessage) -> bool:
        state = self.state_manager.state
        if state.is_blacklisted(message.sender_id, message.guild_id, message.room_id):
            return False
        if self.safety_filter.is_blocked(message.sender_id):
            return False
        guild = self.registry.guild(message.guild_id)
        return guild is None or guild.whitelisted

    def is_moderator(self, user_id: UserID) -> bool:
        return user_id in self.superusers

    def dispatch(self, message: InboundMessage) -> asyncio.Task:
        """Handle ``message`` in the background; returns the task."""
        return self._spawn(self.handle_inbound(message), f"relay of {message.message_id}")

    def _admit(self, message: InboundMessage, now: Optional[int]) -> None:
        """Safety filter then rate limiter; raises when the message must be dropped."""
        verdict = self.safety_filter.evaluate(message.sender_id, message.content)
        if verdict.decision is FilterDecision.AUTO_BAN:
            raise RejectedBySafetyFilter(verdict.reason, banned=True)
        if verdict.decision is FilterDecision.REJECT:
            raise RejectedBySafetyFilter(verdict.reason)

        if not self.rate_limiter.try_accept(message.sender_id, now):
            raise RateLimited(self.rate_limiter.retry_after_ms(message.sender_id, now))

    async def handle_inbound(self, message: InboundMessage, now: Optional[int] = None) -> RelayOutcome:
        """Run one inbound message through the whole pipeline."""
        if self.is_own_message(message):
            return RelayOutcome.IGNORED

        endpoint = await self.registry.get(message.room_id)
        if endpoint is None:
            return RelayOutcome.IGNORED

        if message.message_id in self._in_flight or await self.ledger.has_origin(message.message_id):
            logger.debug("[SERVICE] Ignoring duplicate event for %s", message.message_id)
            return RelayOutcome.DUPLICATE

        if not self.can_transmit(message):
            logger.info(
                "[SERVICE] %s is not allowed to transmit: %r", message.sender_name, message.content[:200]
            )
            self._notify_sender(message, NOT_ALLOWED_NOTICE)
            return RelayOutcome.NOT_ALLOWED

        try:
            self._admit(message, now)
        except RejectedBySafetyFilter as exc:
            if exc.banned:
                notice = AUTO_BAN_PERSISTENT_NOTICE if self.safety_filter.block_list.persistent else AUTO_BAN_NOTICE
                self._notify_sender(message, notice)
                return RelayOutcome.AUTO_BANNED
            self._notify_sender(message, SCAM_NOTICE)
            return RelayOutcome.REJECTED
        except RateLimited as exc:
            self._notify_sender(message, RATE_LIMIT_NOTICE.format(ms=exc.retry_after_ms))
            return RelayOutcome.RATE_LIMITED

        self._in_flight.add(message.message_id)
        try:
            await self.relay(message, endpoint)
        finally:
            self._in_flight.discard(message.message_id)
        return RelayOutcome.RELAYED

    def _notify_sender(self, message: InboundMessage, text: str) -> None:
        self._spawn(self._reply_best_effort(message, text), f"notice to {message.sender_id}")

    async def _reply_best_effort(self, message: InboundMessage, text: str) -> None:
        try:
            await self.transport.reply(message.origin_ref(), text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("[SERVICE] Could not notify %s: %s", message.sender_id, exc)

    async def relay(self, message: InboundMessage, endpoint: Optional[Endpoint] = None) -> BroadcastRecord:
        """Fan ``message`` out to every other eligible room and update guild counters."""
        started = time.monotonic()
        state = self.state_manager.state
        guild = self.registry.guild(message.guild_id)
        guild_name = guild.display_name if guild is not None else (message.guild_name or None)

        label = build_username_label(
            message.sender_name,
            guild_name,
            usertag=state.usertag(message.sender_id),
            is_admin=self.is_moderator(message.sender_id),
            webhook_name=message.sender_name if message.webhook_id is not None else None,
        )
        body, inline = build_relay_content(
            message,
            max_file_size=self.settings.max_file_size,
            content_limit=self.settings.content_limit,
        )

        record = await self.engine.fan_out(
            message.origin_ref(),
            endpoint.room_id if endpoint is not None else message.room_id,
            label,
            message.avatar_url,
            lambda _endpoint: OutboundPayload(content=body, attachments=list(inline)),
        )

        if guild is not None:
            guild.record_sent()
        self._count_received(record.copies)

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            "[SERVICE] %s's message was relayed to %d room(s) in %.0f ms",
            message.sender_name,
            record.copy_count,
            elapsed_ms,
        )
        return record

    def _count_received(self, copies: List[DeliveredRef]) -> None:
        for copy in copies:
            if copy.guild_id is None:
                continue
            target = self.registry.guild(copy.guild_id)
            if target is not None:
                target.record_received()

    # ------------------------------------------------------------------
    # System messages
    # ------------------------------------------------------------------

    async def broadcast_system(self, text: str) -> BroadcastRecord:
        """Send ``text`` to every eligible room under the system identity."""
        record = await self.engine.broadcast_system(lambda _endpoint: text)
        self._count_received(record.copies)
        return record

    async def notify_guild(self, actor_id: UserID, guild_id: int | str, text: str) -> tuple[int, int]:
        """Send a system message to every connected room of one guild; returns (delivered, failed)."""
        self._require_superuser(actor_id)
        payload = finalize_payload(
            OutboundPayload(content=text),
            self.settings.system_name,
            self.settings.system_avatar,
            content_limit=self.settings.content_limit,
            username_limit=self.settings.username_limit,
        )
        delivered, failed = await self.registry.send_to_guild(GuildID(_id_key(guild_id)), payload)
        logger.info("[ADMIN] %s notified guild %s: %d delivered, %d failed", actor_id, guild_id, len(delivered), failed)
        self._count_received(delivered)
        return len(delivered), failed

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    async def delete_by_reference(
        self,
        message_id: MessageID,
        requester_id: UserID,
        include_origin: bool = False,
        notify_origin: bool = True,
    ) -> DeletionResult:
        """
        Delete every copy of the broadcast containing ``message_id``.

        Raises
        ------
        NotFoundInHistory
            If no recorded broadcast contains the message.
        PermissionDenied
            If the requester is neither the origin author nor a moderator.
        """
        record = await self.ledger.find_by_ref(message_id)
        if record is None:
            raise NotFoundInHistory()

        origin = record.origin
        is_author = origin is not None and origin.author_id == requester_id
        if not (is_author or self.is_moderator(requester_id)):
            raise PermissionDenied("You are not allowed to delete others' messages.")

        deleted = 0
        for copy in record.copies:
            try:
                await self.transport.delete(copy)
                deleted += 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("[MODERATION] Could not delete copy %s: %s", copy.message_id, exc)

        await self.ledger.remove(record)
        logger.info(
            "[MODERATION] %s deleted multiversal message %s (%d copies)",
            requester_id,
            origin.message_id if origin is not None else "<system>",
            deleted,
        )

        origin_failed = False
        if include_origin and origin is not None:
            try:
                await self.transport.delete(origin)
                deleted += 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                origin_failed = True
                logger.warning("[MODERATION] Could not delete origin %s: %s", origin.message_id, exc)
                if notify_origin:
                    try:
                        await self.transport.reply(origin, ORIGIN_DELETE_FAILED_NOTICE)
                    except Exception as notice_exc:
                        logger.debug("[MODERATION] Could not reply to origin: %s", notice_exc)

        return DeletionResult(deleted=deleted, origin_failed=origin_failed)

    async def info_by_reference(self, message_id: MessageID) -> BroadcastRecord:
        """Return the broadcast containing ``message_id``; never mutates the ledger."""
        record = await self.ledger.find_by_ref(message_id)
        if record is None:
            raise NotFoundInHistory()
        return record

    # ------------------------------------------------------------------
    # Federation administration
    # ------------------------------------------------------------------

    def _require_superuser(self, actor_id: UserID) -> None:
        if not self.is_moderator(actor_id):
            raise PermissionDenied("Only multiverse admins can do this.")

    def _queue(self, actor_id: UserID, change: StateChange) -> None:
        self._require_superuser(actor_id)
        self.state_manager.queue(change)
        logger.info("[ADMIN] %s queued %s %s %s", actor_id, change.kind, change.key, change.value or "")

    def blacklist(self, actor_id: UserID, target_id: int | str) -> None:
        """Blacklist a user, guild or channel ID across the federation."""
        self._queue(actor_id, StateChange(ChangeKind.BLACKLIST_ADD, _id_key(target_id)))

    def unblacklist(self, actor_id: UserID, target_id: int | str) -> None:
        """Lift a blacklist entry and any local auto-ban of the same ID."""
        self._queue(actor_id, StateChange(ChangeKind.BLACKLIST_REMOVE, _id_key(target_id)))
        self.safety_filter.block_list.remove(UserID(_id_key(target_id)))

    def whitelist(self, actor_id: UserID, guild_id: int | str) -> None:
        self._queue(actor_id, StateChange(ChangeKind.WHITELIST_ADD, _id_key(guild_id)))

    def unwhitelist(self, actor_id: UserID, guild_id: int | str) -> None:
        self._queue(actor_id, StateChange(ChangeKind.WHITELIST_REMOVE, _id_key(guild_id)))

    def set_name_override(self, actor_id: UserID, guild_id: int | str, name: str | None) -> None:
        self._queue(actor_id, StateChange(ChangeKind.SET_NAME_OVERRIDE, _id_key(guild_id), name or None))

    def set_usertag(self, actor_id: UserID, user_id: int | str, tag: str | None) -> None:
        self._queue(actor_id, StateChange(ChangeKind.SET_USERTAG, _id_key(user_id), tag or None))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def last_active_guilds(self, limit: int = 20) -> List[FederatedGuild]:
        """Guilds ordered by the time they last sent a message, newest first."""
        guilds = sorted(self.registry.guilds(), key=lambda guild: guild.last_sent, reverse=True)
        return guilds[: max(0, limit)]

    async def status(self) -> Dict[str, Any]:
        endpoints = await self.registry.all()
        return {
            "rooms": len(endpoints),
            "eligible": sum(1 for endpoint in endpoints if endpoint.is_eligible),
            "sinkless": sum(1 for endpoint in endpoints if endpoint.sink is None),
            "guilds": len(self.registry.guilds()),
            "history": len(self.ledger),
            "auto_banned": len(self.safety_filter.block_list),
            "pending_changes": len(self.state_manager.pending),
            "cycles": self.reconciler.cycles,
        }
