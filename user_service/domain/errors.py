"""Domain errors raised by user workflows."""

from __future__ import annotations


class UserValidationError(ValueError):
    """Attribute payload rejected before any mutation took place."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class TransitionDenied(RuntimeError):
    """A lifecycle event could not be applied to the user."""

    def __init__(self, event: str, user_id: int, reason: str) -> None:
        super().__init__(f"{event} denied for user {user_id}: {reason}")
        self.event = event
        self.user_id = user_id
        self.reason = reason
