"""
Ratmas Errors - Typed failures for the event engine

Every failure a command handler can show to a user is a RatmasError, so the
cog can catch one base class and reply with str(error).
"""

from __future__ import annotations

from typing import Optional


class RatmasError(Exception):
    """Base class for all Ratmas failures"""


class NotFound(RatmasError):
    """Referenced event, participant or pairing does not exist"""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class InvalidTransition(RatmasError):
    """Requested status change is not in the transition table"""

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid status transition from {_status_text(current)} to {_status_text(requested)}"
        )


class StatusConflict(RatmasError):
    """Operation is not legal for the event's current status"""

    def __init__(self, action: str, status):
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} for event with status: {_status_text(status)}")


class ActiveEventExists(RatmasError):
    """Guild already has a non-terminal event"""

    def __init__(self, guild_id: str, status):
        self.guild_id = guild_id
        self.status = status
        super().__init__(f"Guild already has active event (status: {_status_text(status)})")


class InvalidEventConfig(RatmasError, ValueError):
    """Bad dates, timezone or wishlist URL"""


class AlreadyParticipant(RatmasError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} is already a participant")


class NotAParticipant(RatmasError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} is not a participant")


class InsufficientParticipants(RatmasError):
    def __init__(self, required: int, actual: int):
        self.required = required
        self.actual = actual
        super().__init__(f"Need at least {required} participants, found {actual}")


class DerangementFailed(RatmasError):
    """Shuffle bound exhausted. Retryable, not data corruption."""

    def __init__(self, attempts: int, size: int):
        self.attempts = attempts
        self.size = size
        super().__init__(
            f"Could not find a valid pairing for {size} participants after {attempts} attempts (try again)"
        )


class DeliveryFailed(RatmasError):
    """A single Santa could not be reached. Collected, never raised out of a batch."""

    def __init__(self, user_id: str, reason: Optional[str] = None, pairing_id: Optional[str] = None):
        self.user_id = user_id
        self.reason = reason or "unknown error"
        self.pairing_id = pairing_id
        super().__init__(f"Failed to DM {user_id}: {self.reason}")


class StorageError(RatmasError):
    """Persisting a change failed; the change was rolled back"""


def _status_text(status) -> str:
    return getattr(status, "value", status)
