"""
Text helpers for relayed messages.

Everything here is pure string manipulation so it can be shared between the
broadcast engine, the safety filter and the cogs without touching Discord.
"""

from __future__ import annotations

import re

# <@123>, <@!123> (legacy nickname form) and <@&123> (role)
MENTION_PATTERN = re.compile(r"<@[!&]?\d+>")
MASS_MENTION_PATTERN = re.compile(r"@(everyone|here)")

ZERO_WIDTH_SPACE = "\u200b"


def count_mentions(text: str | None) -> int:
    """Return the number of user and role mentions in the raw message text.

    Every occurrence counts, so pinging the same user twice counts twice.
    ``@everyone`` / ``@here`` count as one mention each.
    """
    if not text:
        return 0
    return len(MENTION_PATTERN.findall(text)) + len(MASS_MENTION_PATTERN.findall(text))


def strip_everyone(text: str) -> str:
    """Break ``@everyone`` and ``@here`` so they cannot ping even if mentions leak through."""
    return MASS_MENTION_PATTERN.sub(lambda m: "@" + ZERO_WIDTH_SPACE + m.group(1), text)


def truncate(text: str, limit: int, ellipsis: str = "") -> str:
    """Cut ``text`` to at most ``limit`` characters, ellipsis included."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    if ellipsis and limit > len(ellipsis):
        return text[: limit - len(ellipsis)] + ellipsis
    return text[:limit]


def escape_asterisks(text: str) -> str:
    """Escape ``*`` so usernames like ``**bob**`` render literally."""
    return text.replace("*", "\\*")


def quote_line(author: str, content: str, limit: int = 100) -> str:
    """Build the single quote line placed above a relayed reply."""
    preview = " ".join(content.split())
    preview = truncate(preview, limit, ellipsis="...") or "<no content>"
    return f"> **{escape_asterisks(author)}**: {preview}"
