"""
Builders for the text and payload of relayed messages.

``build_relay_content`` turns an inbound message into the body every copy
shares; ``finalize_payload`` applies the per-send limits right before a
payload reaches a sink.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from multiverse.datatypes.relay_datatypes import AttachmentRef, InboundMessage, OutboundPayload
from multiverse.util.text_utils import escape_asterisks, quote_line, strip_everyone, truncate

NO_CONTENT = "<no content>"
UNKNOWN_USER = "unknown user"
UNKNOWN_GUILD = "<DISCORD>"


def build_username_label(
    sender_name: str,
    guild_name: Optional[str],
    *,
    usertag: Optional[str] = None,
    is_admin: bool = False,
    webhook_name: Optional[str] = None,
) -> str:
    """
    Build the display name used for relayed copies, e.g. ``[Admin]bob — Cool Server``.

    A custom usertag wins over the admin tag. Messages that were themselves
    posted by a foreign webhook are labelled ``webhook<name>``.
    """
    if webhook_name is not None:
        author = f"webhook<{webhook_name}>"
    else:
        author = escape_asterisks(sender_name) if sender_name else UNKNOWN_USER

    if usertag:
        prefix = f"[{usertag}]"
    elif is_admin:
        prefix = "[Admin]"
    else:
        prefix = ""

    return f"{prefix}{author} — {guild_name or UNKNOWN_GUILD}"


def split_attachments(
    attachments: Iterable[AttachmentRef], max_file_size: int
) -> Tuple[List[AttachmentRef], List[AttachmentRef]]:
    """Split attachments into (uploaded inline, relayed as links)."""
    inline: List[AttachmentRef] = []
    linked: List[AttachmentRef] = []
    for attachment in attachments:
        (linked if attachment.size >= max_file_size else inline).append(attachment)
    return inline, linked


def build_relay_content(
    message: InboundMessage, *, max_file_size: int, content_limit: int
) -> Tuple[str, List[AttachmentRef]]:
    """
    Return the shared body of every copy and the attachments to upload inline.

    Oversized attachments become trailing links. A reply gets a one-line
    quote of the referenced message on top. Messages without text or
    attachments are relayed as ``<no content>``. When the result would be
    longer than ``content_limit`` the message text is cut first, so the
    quote and the attachment links survive.
    """
    inline, linked = split_attachments(message.attachments, max_file_size)

    quote = ""
    if message.reply_to is not None:
        quote = quote_line(message.reply_to.author_name, message.reply_to.content)
    links = "".join("\n" + attachment.url for attachment in linked)

    room = content_limit - (len(quote) + 1 if quote else 0)
    body = truncate(message.content or "", room - len(links)) + links
    # only bites when the links alone do not fit
    body = truncate(body, room)

    if not body and not message.attachments:
        body = NO_CONTENT

    if quote:
        body = f"{quote}\n{body}" if body else quote

    return body, inline


def finalize_payload(
    payload: OutboundPayload,
    username: Optional[str],
    avatar_url: Optional[str],
    *,
    content_limit: int,
    username_limit: int,
) -> OutboundPayload:
    """Apply name/avatar, length limits and mention neutralisation to a payload."""
    content = strip_everyone(truncate(payload.content or "", content_limit))
    return OutboundPayload(
        content=content,
        username=truncate(username or UNKNOWN_USER, username_limit),
        avatar_url=avatar_url,
        attachments=list(payload.attachments),
        suppress_mentions=True,
    )
