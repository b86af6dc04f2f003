"""
Exceptions raised by the relay.

None of these is fatal to the process. Safety and rate-limit rejections are
reported to the sender only, delivery and sink failures stay local to one
endpoint, and history/permission errors end up as command replies.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from multiverse.datatypes.relay_datatypes import Endpoint


class MultiverseError(Exception):
    """Base class for relay errors."""


class RejectedBySafetyFilter(MultiverseError):
    """The message was refused by the safety filter."""

    def __init__(self, reason: str, *, banned: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.banned = banned


class RateLimited(MultiverseError):
    """The sender posted again before the minimum interval elapsed."""

    def __init__(self, retry_after_ms: int) -> None:
        super().__init__(f"rate limited, retry in {retry_after_ms} ms")
        self.retry_after_ms = retry_after_ms


class DeliveryFailure(MultiverseError):
    """Executing a payload against one endpoint's sink failed."""

    def __init__(self, endpoint: "Endpoint", cause: BaseException) -> None:
        super().__init__(f"delivery into {endpoint.room_id} failed: {cause}")
        self.endpoint = endpoint
        self.cause = cause


class SinkUnavailable(MultiverseError):
    """Raised by transports when a sink no longer exists or may not be used.

    The broadcast engine invalidates the endpoint's sink on this error so the
    next reconcile cycle acquires a fresh one.
    """


class SinkAcquisitionFailure(MultiverseError):
    """No sink could be created or found for an endpoint."""

    def __init__(self, endpoint: "Endpoint", cause: BaseException) -> None:
        super().__init__(f"could not acquire a sink for {endpoint.room_id}: {cause}")
        self.endpoint = endpoint
        self.cause = cause

    @property
    def missing_permission(self) -> bool:
        """True when the underlying error is a permission problem."""
        if isinstance(self.cause, PermissionDenied):
            return True
        text = str(self.cause).lower()
        return "missing permission" in text or "forbidden" in text or "50013" in text

    def describe(self) -> str:
        """Human-readable reason shown to the affected room."""
        if self.missing_permission:
            return "missing 'MANAGE_WEBHOOKS' permission!"
        return str(self.cause)


class NotFoundInHistory(MultiverseError):
    """The referenced message is not part of any recorded broadcast."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "This message wasn't found in the history. Perhaps it was sent too long ago or is not a multiversal message?"
        )


class PermissionDenied(MultiverseError):
    """The caller (or the bot) lacks the permission required for an operation."""
