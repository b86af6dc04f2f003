"""
Data structures flowing through the relay pipeline.

Inbound events are normalised into :class:`InboundMessage`, delivered copies are
tracked as :class:`DeliveredRef` and a whole fan-out is summarised by a
:class:`BroadcastRecord`. Nothing in this module talks to Discord.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Union

from multiverse.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, SinkID, UserID


@dataclass(frozen=True, slots=True)
class Room:
    """A text channel the bot can reach, as seen by the transport."""

    room_id: ChannelID
    guild_id: GuildID
    name: str
    guild_name: str = ""
    topic: str = ""


@dataclass(frozen=True, slots=True)
class RoomPermissions:
    """Effective permissions of the bot inside one room."""

    can_view: bool = False
    can_send: bool = False
    can_manage_sink: bool = False

    @property
    def sufficient(self) -> bool:
        return self.can_view and self.can_send and self.can_manage_sink

    def missing(self) -> List[str]:
        """Discord permission names the bot still lacks."""
        names = []
        if not self.can_view:
            names.append("VIEW_CHANNEL")
        if not self.can_send:
            names.append("SEND_MESSAGES")
        if not self.can_manage_sink:
            names.append("MANAGE_WEBHOOKS")
        return names


@dataclass(slots=True)
class Sink:
    """Delivery handle bound to one room.

    ``handle`` is whatever the transport needs to execute against the sink
    (a ``discord.Webhook`` for the Discord transport).
    """

    sink_id: SinkID
    room_id: ChannelID
    name: str = ""
    handle: Any = None


@dataclass(slots=True)
class Endpoint:
    """One destination room plus its (possibly missing) sink."""

    room: Room
    sink: Optional[Sink] = None
    has_reported: bool = False
    acquire_reported: bool = False
    whitelisted: bool = True

    @property
    def room_id(self) -> ChannelID:
        return self.room.room_id

    @property
    def guild_id(self) -> GuildID:
        return self.room.guild_id

    @property
    def is_eligible(self) -> bool:
        """True when the endpoint can take part in a fan-out."""
        return self.sink is not None and self.whitelisted


@dataclass(slots=True)
class AttachmentRef:
    """A file attached to an inbound message.

    ``source`` optionally carries the transport object the bytes can be
    fetched from (``discord.Attachment``).
    """

    filename: str
    url: str
    size: int
    source: Any = None


@dataclass(slots=True)
class OutboundPayload:
    """What gets executed against a sink.

    The broadcast engine fills ``username`` and ``avatar_url`` and enforces
    the content limit; content builders only provide ``content`` and inline
    ``attachments``.
    """

    content: str = ""
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    attachments: List[AttachmentRef] = field(default_factory=list)
    suppress_mentions: bool = True


@dataclass(frozen=True, slots=True)
class MessageRef:
    """Reference to a message that exists in some room."""

    room_id: ChannelID
    message_id: MessageID
    author_id: Optional[UserID] = None
    guild_id: Optional[GuildID] = None


@dataclass(frozen=True, slots=True)
class DeliveredRef(MessageRef):
    """Reference to a relayed copy, together with the sink that produced it."""

    sink_id: Optional[SinkID] = None


@dataclass(frozen=True, slots=True)
class QuotedMessage:
    """The message an inbound message replies to."""

    message_id: MessageID
    author_name: str
    content: str


@dataclass(slots=True)
class InboundMessage:
    """A message-created event, normalised away from Discord objects."""

    room_id: ChannelID
    guild_id: GuildID
    message_id: MessageID
    sender_id: UserID
    sender_name: str
    content: str = ""
    avatar_url: Optional[str] = None
    guild_name: str = ""
    webhook_id: Optional[SinkID] = None
    attachments: List[AttachmentRef] = field(default_factory=list)
    reply_to: Optional[QuotedMessage] = None

    def origin_ref(self) -> MessageRef:
        return MessageRef(
            room_id=self.room_id,
            message_id=self.message_id,
            author_id=self.sender_id,
            guild_id=self.guild_id,
        )


@dataclass(slots=True)
class BroadcastRecord:
    """Outcome of one fan-out: the origin message and every delivered copy."""

    origin: Optional[MessageRef]
    copies: List[DeliveredRef] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def contains(self, ref: Union[MessageRef, MessageID]) -> bool:
        """Return True if ``ref`` is the origin or any of the copies."""
        message_id = ref.message_id if isinstance(ref, MessageRef) else ref
        if self.origin is not None and self.origin.message_id == message_id:
            return True
        return any(copy.message_id == message_id for copy in self.copies)

    def __contains__(self, ref: Union[MessageRef, MessageID]) -> bool:
        return self.contains(ref)

    @property
    def copy_count(self) -> int:
        return len(self.copies)


@dataclass(frozen=True, slots=True)
class DeletionResult:
    """Outcome of a delete-by-reply request."""

    deleted: int
    origin_failed: bool = False


class FilterDecision(Enum):
    """Result classes of the safety filter."""

    ALLOW = "allow"
    REJECT = "reject"
    AUTO_BAN = "auto_ban"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class FilterVerdict:
    decision: FilterDecision
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.decision is FilterDecision.ALLOW

    @classmethod
    def allow(cls) -> "FilterVerdict":
        return cls(FilterDecision.ALLOW)

    @classmethod
    def reject(cls, reason: str) -> "FilterVerdict":
        return cls(FilterDecision.REJECT, reason)

    @classmethod
    def auto_ban(cls, reason: str) -> "FilterVerdict":
        return cls(FilterDecision.AUTO_BAN, reason)


class RelayOutcome(Enum):
    """What happened to an inbound message."""

    RELAYED = "relayed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    NOT_ALLOWED = "not_allowed"
    REJECTED = "rejected"
    AUTO_BANNED = "auto_banned"
    RATE_LIMITED = "rate_limited"

    def __str__(self) -> str:
        return self.value
