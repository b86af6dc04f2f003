"""
Capability interface between the relay core and whatever actually delivers
messages.

The core never touches Discord objects directly; it asks a transport to
enumerate rooms, inspect permissions, create or look up a sink in a room,
execute a payload against a sink and delete delivered messages.
:class:`multiverse.transport.discord_transport.DiscordTransport` implements this
on top of py-cord webhooks; tests use in-memory fakes.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from multiverse.datatypes.discord_datatypes import ChannelID
from multiverse.datatypes.relay_datatypes import (
    DeliveredRef,
    MessageRef,
    OutboundPayload,
    Room,
    RoomPermissions,
    Sink,
)


class SinkTransport(Protocol):
    async def list_rooms(self) -> List[Room]:
        """Every text room the process can currently reach."""
        ...

    async def resolve_room(self, room_id: ChannelID) -> Optional[Room]:
        """The room with this ID, or None if it no longer resolves."""
        ...

    def permissions(self, room: Room) -> RoomPermissions:
        ...

    async def create_or_get_sink(self, room: Room) -> Sink:
        """Find the relay's sink in ``room`` or create one. Raises on failure."""
        ...

    async def execute(self, sink: Sink, payload: OutboundPayload) -> DeliveredRef:
        """Deliver ``payload`` through ``sink``. Raises on failure."""
        ...

    async def delete(self, ref: MessageRef) -> None:
        ...

    async def send_notice(self, room_id: ChannelID, text: str) -> None:
        """Post a plain bot message into a room (diagnostics, announcements)."""
        ...

    async def reply(self, ref: MessageRef, text: str) -> None:
        """Reply to a message in its own room (notices to the sender)."""
        ...
