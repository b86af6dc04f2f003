"""
Pattern-based scam detection.

The relay only needs ``has_scam(text) -> bool``; :class:`PatternScamDetector`
is the default matcher and can be replaced by anything exposing that method.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Protocol

from multiverse.util.logger import get_logger

logger = get_logger("scam_detector")


class ScamDetector(Protocol):
    def has_scam(self, text: str) -> bool: ...


DEFAULT_PHRASES = [
    r"free\s+(discord\s+)?nitro",
    r"nitro\s+(for\s+free|giveaway|generator)",
    r"claim\s+your\s+(free\s+)?(nitro|gift|reward|prize)",
    r"steam\s*(community)?\s*gift\s*card",
    r"(airdrop|giveaway).{0,40}(connect|claim).{0,20}wallet",
]

# Hosts imitating discord.com / steamcommunity.com
LOOKALIKE_HOST_TOKENS = [
    "dlscord", "d1scord", "discorcl", "discrod", "disocrd", "dicsord", "discordd",
    "discord-nitro", "discordnitro", "nitro-discord", "discord-gift", "discordgift",
    "steamcommunlty", "stearncommunity", "steamcomunity", "steamcommnuity",
]

URL_HOST_PATTERN = re.compile(r"https?://([^/\s<>]+)", re.IGNORECASE)


class PatternScamDetector:
    """Flags known scam phrasing and lookalike link hosts.

    Args:
        extra_patterns: Additional case-insensitive regular expressions, usually
            taken from the ``scam_patterns`` config key. Invalid expressions are
            logged and skipped.
    """

    def __init__(self, extra_patterns: Iterable[str] = ()) -> None:
        self.patterns: List[re.Pattern[str]] = []
        for raw in list(DEFAULT_PHRASES) + list(extra_patterns):
            try:
                self.patterns.append(re.compile(raw, re.IGNORECASE | re.DOTALL))
            except re.error as exc:
                logger.warning("[SCAM DETECTOR] Ignoring invalid pattern %r: %s", raw, exc)

    def has_lookalike_link(self, text: str) -> bool:
        for host in URL_HOST_PATTERN.findall(text):
            host = host.lower()
            if any(token in host for token in LOOKALIKE_HOST_TOKENS):
                return True
        return False

    def has_scam(self, text: str) -> bool:
        if not text:
            return False
        if self.has_lookalike_link(text):
            return True
        return any(pattern.search(text) for pattern in self.patterns)
