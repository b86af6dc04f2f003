"""
Fan-out of one message to every eligible endpoint.

Each delivery runs as its own task and is isolated from the others: a failed
or slow endpoint never affects the rest, and nothing raised by a delivery
escapes :meth:`BroadcastEngine.fan_out`. Only successful copies end up in
the :class:`BroadcastRecord` appended to the history ledger.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable, List, Optional, Union

from multiverse.datatypes.discord_datatypes import ChannelID
from multiverse.datatypes.relay_datatypes import (
    BroadcastRecord,
    DeliveredRef,
    Endpoint,
    MessageRef,
    OutboundPayload,
)
from multiverse.errors import DeliveryFailure, SinkUnavailable
from multiverse.federation.endpoint_registry import EndpointRegistry
from multiverse.relay.history_ledger import HistoryLedger
from multiverse.relay.payload_builder import finalize_payload
from multiverse.util.logger import get_logger

if TYPE_CHECKING:
    from multiverse.transport.base import SinkTransport

logger = get_logger("broadcast_engine")

ContentBuilder = Callable[[Endpoint], Union[OutboundPayload, str]]


class BroadcastEngine:
    """Delivers payloads through the sinks of the registry's endpoints."""

    def __init__(
        self,
        registry: EndpointRegistry,
        ledger: HistoryLedger,
        transport: "SinkTransport",
        *,
        content_limit: int = 1999,
        username_limit: int = 75,
        system_name: str = "Multiverse",
        system_avatar: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.transport = transport
        self.content_limit = content_limit
        self.username_limit = username_limit
        self.system_name = system_name
        self.system_avatar = system_avatar

    async def _deliver(
        self,
        endpoint: Endpoint,
        sender_label: str,
        avatar_url: Optional[str],
        content_builder: ContentBuilder,
    ) -> Optional[DeliveredRef]:
        """Build and execute one payload; returns None on any failure."""
        sink = endpoint.sink
        if sink is None:
            return None
        try:
            built = content_builder(endpoint)
            payload = built if isinstance(built, OutboundPayload) else OutboundPayload(content=built)
            payload = finalize_payload(
                payload,
                sender_label,
                avatar_url,
                content_limit=self.content_limit,
                username_limit=self.username_limit,
            )
            ref = await self.transport.execute(sink, payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = DeliveryFailure(endpoint, exc)
            logger.warning("[BROADCAST] %s", failure)
            if isinstance(exc, SinkUnavailable):
                await self.registry.invalidate(endpoint, str(exc))
            return None

        return DeliveredRef(
            room_id=ref.room_id,
            message_id=ref.message_id,
            author_id=ref.author_id,
            guild_id=endpoint.guild_id,
            sink_id=ref.sink_id,
        )

    async def fan_out(
        self,
        origin: Optional[MessageRef],
        exclude: Optional[ChannelID],
        sender_label: str,
        avatar_url: Optional[str],
        content_builder: ContentBuilder,
    ) -> BroadcastRecord:
        """
        Deliver to every eligible endpoint except ``exclude`` and record the result.

        Args:
            origin: The message being relayed, or None for system broadcasts.
            exclude: Room the message came from; it is not delivered back there.
            sender_label: Username shown on every copy.
            avatar_url: Avatar shown on every copy.
            content_builder: Called once per endpoint to build its payload.

        Returns:
            The appended :class:`BroadcastRecord`, holding successful copies only.
        """
        targets = [endpoint for endpoint in await self.registry.list_eligible() if endpoint.room_id != exclude]

        results = await asyncio.gather(
            *(self._deliver(endpoint, sender_label, avatar_url, content_builder) for endpoint in targets)
        )
        copies: List[DeliveredRef] = [ref for ref in results if ref is not None]

        record = BroadcastRecord(origin=origin, copies=copies)
        await self.ledger.append(record)

        failed = len(targets) - len(copies)
        if failed:
            logger.info("[BROADCAST] Delivered to %d/%d endpoints (%d failed)", len(copies), len(targets), failed)
        else:
            logger.debug("[BROADCAST] Delivered to %d endpoints", len(copies))
        return record

    async def broadcast_system(self, content_builder: ContentBuilder) -> BroadcastRecord:
        """Fan out a message under the system name and avatar to every endpoint."""
        return await self.fan_out(None, None, self.system_name, self.system_avatar, content_builder)
