"""User accounts: access resolution and lifecycle."""

from .domain.authorization import AuthorizationResolver
from .domain.errors import TransitionDenied, UserValidationError
from .domain.lifecycle import LifecycleStateMachine
from .domain.service import UserService
from .domain.user import User, UserState

__all__ = [
    "AuthorizationResolver",
    "LifecycleStateMachine",
    "TransitionDenied",
    "User",
    "UserService",
    "UserState",
    "UserValidationError",
]
