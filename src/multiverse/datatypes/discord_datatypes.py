"""
Type-safe wrappers for Discord snowflake identifiers.

Snowflakes are 64-bit integers but travel as strings in JSON (the federation
state document, the SQLite store), so every wrapper keeps its value as a
string and converts to ``int`` only at the Discord API boundary.
"""

from __future__ import annotations

from typing import Union


class Snowflake:
    """
    Base class for typed snowflake IDs.

    Subclasses only differ in name, which keeps a ``GuildID`` from being
    compared equal to a ``ChannelID`` by accident.

    Example:
        >>> cid = ChannelID(123456789012345678)
        >>> cid.to_int()
        123456789012345678
        >>> str(cid)
        '123456789012345678'
        >>> ChannelID("123456789012345678") == cid
        True
    """

    __slots__ = ("_value",)

    def __init__(self, value: Union[str, int, "Snowflake"]) -> None:
        """
        Args:
            value: The snowflake as a string, int, or wrapper of the same type.

        Raises:
            ValueError: If the value cannot be converted to a snowflake.
        """
        if isinstance(value, Snowflake):
            if type(value) is not type(self):
                raise ValueError(f"Cannot create {type(self).__name__} from {type(value).__name__}")
            self._value = value._value
        elif isinstance(value, bool):
            raise ValueError(f"Cannot create {type(self).__name__} from bool")
        elif isinstance(value, int):
            self._value = str(value)
        elif isinstance(value, str):
            self._value = str(int(value.strip()))
        else:
            raise ValueError(f"Cannot create {type(self).__name__} from {type(value).__name__}: {value}")

    @classmethod
    def from_int(cls, value: int):
        return cls(value)

    def to_int(self) -> int:
        """Convert to an integer for Discord API calls."""
        return int(self._value)

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._value!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Snowflake):
            return type(other) is type(self) and self._value == other._value
        if isinstance(other, str):
            return self._value == other
        if isinstance(other, int) and not isinstance(other, bool):
            return self._value == str(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((type(self).__name__, self._value))


class UserID(Snowflake):
    """Discord user ID."""

    __slots__ = ()


class GuildID(Snowflake):
    """Discord guild (community) ID."""

    __slots__ = ()


class ChannelID(Snowflake):
    """Discord channel ID. A channel is a *room* of the federation."""

    __slots__ = ()


class MessageID(Snowflake):
    """Discord message ID."""

    __slots__ = ()


class SinkID(Snowflake):
    """ID of a delivery sink (a Discord webhook)."""

    __slots__ = ()
