"""
Shared federation state and the changes instances queue against it.

The state document is what every running instance agrees on eventually:
which IDs are blacklisted or whitelisted, display-name overrides for guilds,
per-user tags and the set of rooms known to the federation. IDs are stored
as strings so the document serialises to plain JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set


@dataclass(slots=True)
class FederationState:
    """Eventually-consistent federation membership data."""

    whitelist: Set[str] = field(default_factory=set)
    blacklist: Set[str] = field(default_factory=set)
    name_overrides: Dict[str, str] = field(default_factory=dict)
    usertags: Dict[str, str] = field(default_factory=dict)
    rooms: Set[str] = field(default_factory=set)

    def is_blacklisted(self, *ids: Any) -> bool:
        """Return True if any of the given IDs is blacklisted."""
        return any(str(value) in self.blacklist for value in ids if value is not None)

    def is_whitelisted(self, value: Any) -> bool:
        return str(value) in self.whitelist

    def name_override(self, guild_id: Any) -> Optional[str]:
        name = self.name_overrides.get(str(guild_id))
        return name or None

    def usertag(self, user_id: Any) -> Optional[str]:
        tag = self.usertags.get(str(user_id))
        return tag or None

    def copy(self) -> "FederationState":
        return FederationState(
            whitelist=set(self.whitelist),
            blacklist=set(self.blacklist),
            name_overrides=dict(self.name_overrides),
            usertags=dict(self.usertags),
            rooms=set(self.rooms),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "whitelist": sorted(self.whitelist),
            "blacklist": sorted(self.blacklist),
            "name_overrides": dict(sorted(self.name_overrides.items())),
            "usertags": dict(sorted(self.usertags.items())),
            "rooms": sorted(self.rooms),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FederationState":
        """Build a state from a loaded document, ignoring malformed sections."""
        if not isinstance(data, dict):
            return cls()

        def _set(key: str) -> Set[str]:
            value = data.get(key) or []
            return {str(item) for item in value} if isinstance(value, (list, set, tuple)) else set()

        def _map(key: str) -> Dict[str, str]:
            value = data.get(key) or {}
            return {str(k): str(v) for k, v in value.items()} if isinstance(value, dict) else {}

        return cls(
            whitelist=_set("whitelist"),
            blacklist=_set("blacklist"),
            name_overrides=_map("name_overrides"),
            usertags=_map("usertags"),
            rooms=_set("rooms"),
        )


class ChangeKind(Enum):
    """Kinds of local edits an instance can push to the shared state."""

    BLACKLIST_ADD = "blacklist_add"
    BLACKLIST_REMOVE = "blacklist_remove"
    WHITELIST_ADD = "whitelist_add"
    WHITELIST_REMOVE = "whitelist_remove"
    SET_NAME_OVERRIDE = "set_name_override"
    SET_USERTAG = "set_usertag"
    ADD_ROOM = "add_room"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class StateChange:
    """A single queued edit; ``value`` is only used by the ``SET_*`` kinds.

    An empty ``value`` clears the override/tag.
    """

    kind: ChangeKind
    key: str
    value: Optional[str] = None

    def apply(self, state: FederationState) -> None:
        """Apply this change to ``state`` in place."""
        if self.kind is ChangeKind.BLACKLIST_ADD:
            state.blacklist.add(self.key)
        elif self.kind is ChangeKind.BLACKLIST_REMOVE:
            state.blacklist.discard(self.key)
        elif self.kind is ChangeKind.WHITELIST_ADD:
            state.whitelist.add(self.key)
        elif self.kind is ChangeKind.WHITELIST_REMOVE:
            state.whitelist.discard(self.key)
        elif self.kind is ChangeKind.SET_NAME_OVERRIDE:
            if self.value:
                state.name_overrides[self.key] = self.value
            else:
                state.name_overrides.pop(self.key, None)
        elif self.kind is ChangeKind.SET_USERTAG:
            if self.value:
                state.usertags[self.key] = self.value
            else:
                state.usertags.pop(self.key, None)
        elif self.kind is ChangeKind.ADD_ROOM:
            state.rooms.add(self.key)
