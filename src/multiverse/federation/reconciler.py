"""Periodic upkeep of the federation.

Every cycle runs, in order:

1. **Discover**: list reachable rooms, keep those whose name (or topic)
   contains the membership pattern and where the bot can view, send and
   manage webhooks; upsert them and prune the rest.
2. **Refresh**: re-resolve rooms of guilds whose refresh TTL has expired.
3. **Acquire sinks**: create or find a sink for every sink-less endpoint,
   reporting a failure once per room.
4. **Converge**: pull/apply/jitter/push the shared federation state.

Errors in a single room are logged and skipped; errors in a whole step are
logged and the cycle goes on with the next step.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Set

from multiverse.datatypes.discord_datatypes import ChannelID
from multiverse.datatypes.federation_datatypes import ChangeKind, StateChange
from multiverse.datatypes.relay_datatypes import Endpoint, Room
from multiverse.errors import SinkAcquisitionFailure
from multiverse.federation.endpoint_registry import EndpointRegistry
from multiverse.federation.state_manager import FederationStateManager
from multiverse.util.logger import get_logger

if TYPE_CHECKING:
    from multiverse.transport.base import SinkTransport

logger = get_logger("reconciler")

DEFAULT_INTERVAL_SECONDS = 45.0
DEFAULT_INITIAL_DELAY_SECONDS = 5.0

SINK_FAILURE_NOTICE = (
    "[ERROR] Could not acquire a webhook: {reason}\n"
    "----------\n"
    "The Multiverse cannot deliver messages into this channel without a webhook.\n"
    "Contact the server's staff or allow the bot to manage webhooks yourself."
)


class Reconciler:
    """
    Background task keeping the endpoint registry in sync with reality.

    Args:
        registry: Registry to mutate.
        transport: Source of rooms, permissions and sinks.
        state_manager: Convergence of the shared federation state.
        channel_name: Pattern a room name must contain to join.
        match_topic: Also accept rooms whose topic contains the pattern.
        interval: Seconds between two cycles.
        initial_delay: Seconds before the first cycle.
        on_cycle_complete: Optional callable (sync or async) run after each cycle.
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        transport: "SinkTransport",
        state_manager: FederationStateManager,
        channel_name: str = "multiverse",
        match_topic: bool = False,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
        on_cycle_complete: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.state_manager = state_manager
        self.channel_name = channel_name.lower()
        self.match_topic = match_topic
        self.interval = interval
        self.initial_delay = initial_delay
        self.on_cycle_complete = on_cycle_complete
        self.first_cycle = asyncio.Event()
        self.cycles = 0
        self._task: asyncio.Task | None = None

    def is_member(self, room: Room) -> bool:
        """Name/topic pattern, blacklist and permission check for one room."""
        if self.state_manager.state.is_blacklisted(room.room_id, room.guild_id):
            return False
        matches = self.channel_name in room.name.lower()
        if not matches and self.match_topic:
            matches = self.channel_name in (room.topic or "").lower()
        if not matches:
            return False
        return self.transport.permissions(room).sufficient

    async def discover(self) -> List[Endpoint]:
        """Upsert every member room and prune the ones that stopped matching."""
        rooms = await self.transport.list_rooms()

        keep: Set[ChannelID] = set()
        endpoints: List[Endpoint] = []
        known_rooms = self.state_manager.state.rooms
        for room in rooms:
            try:
                if not self.is_member(room):
                    continue
                endpoints.append(await self.registry.upsert(room))
                keep.add(room.room_id)
                if str(room.room_id) not in known_rooms:
                    self.state_manager.queue(StateChange(ChangeKind.ADD_ROOM, str(room.room_id)))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # a room that failed this time is not pruned
                keep.add(room.room_id)
                logger.warning("[RECONCILER] Failed to process room %s: %s", room.room_id, exc)

        await self.registry.prune(keep)
        return endpoints

    async def acquire_sinks(self) -> int:
        """Attach sinks to sink-less endpoints; returns how many were acquired."""
        acquired = 0
        for endpoint in await self.registry.all():
            # dormant guilds get no webhooks and no diagnostics
            if endpoint.sink is not None or not endpoint.whitelisted:
                continue
            try:
                sink = await self.transport.create_or_get_sink(endpoint.room)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failure = SinkAcquisitionFailure(endpoint, exc)
                if not endpoint.acquire_reported:
                    logger.error("[RECONCILER] %s", failure)
                await self.registry.report(
                    endpoint, SINK_FAILURE_NOTICE.format(reason=failure.describe()), acquisition=True
                )
                continue

            if await self.registry.attach_sink(endpoint.room_id, sink):
                acquired += 1
        if acquired:
            logger.info("[RECONCILER] Acquired %d sink(s)", acquired)
        return acquired

    async def run_cycle(self) -> None:
        """One full reconcile pass."""
        steps: List[tuple[str, Callable[[], Awaitable[Any]]]] = [
            ("discover", self.discover),
            ("refresh", self.registry.refresh_guilds),
            ("acquire sinks", self.acquire_sinks),
            ("converge", self.state_manager.converge),
        ]
        for name, step in steps:
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("[RECONCILER] Step '%s' failed: %s", name, exc)

        self.cycles += 1
        self.first_cycle.set()

        if self.on_cycle_complete is not None:
            try:
                result = self.on_cycle_complete()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[RECONCILER] Cycle hook failed: %s", exc)

    async def _run_loop(self) -> None:
        logger.info(
            "[RECONCILER] Starting (first run in %.1fs, then every %.1fs)", self.initial_delay, self.interval
        )
        try:
            await asyncio.sleep(self.initial_delay)
            while True:
                try:
                    await self.run_cycle()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("[RECONCILER] Unexpected error during cycle: %s", exc)
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.info("[RECONCILER] Cancelled")
            raise

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background loop if not already running."""
        if self.running:
            logger.warning("[RECONCILER] Already running")
            return
        self._task = asyncio.create_task(self._run_loop())

    async def shutdown(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("[RECONCILER] Shutdown complete")
