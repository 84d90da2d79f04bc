"""
Error taxonomy for the matching pipeline.

Only ``ValidationError``, ``AlreadyQueuedError`` and ``InfrastructureError``
ever reach a caller. ``StaleSignalError`` and ``NotFoundError`` are raised
and swallowed inside the core to express "nothing to do" without side
effects.
"""

from __future__ import annotations


class MatchingError(Exception):
    """Base class for every error raised by the matching core."""


class ValidationError(MatchingError):
    """Malformed join / cancel / requeue payload."""


class AlreadyQueuedError(MatchingError):
    """The user already has a pending match request."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id!r} already has a pending match request")


class InfrastructureError(MatchingError):
    """Store or broker unreachable; the caller may retry."""


class StaleSignalError(MatchingError):
    """An expiration signal from a superseded or finished lifecycle."""

    def __init__(self, user_id: str, reason: str) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Stale signal for {user_id!r}: {reason}")


class NotFoundError(MatchingError):
    """No queue entry for the user; treated as a successful no-op."""


class SessionUnavailableError(MatchingError):
    """The collaboration session could not be created for a match."""
