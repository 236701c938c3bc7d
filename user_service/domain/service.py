"""User service orchestrating persistence, lifecycle and authorization."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from ..config import Settings, get_settings
from ..memberships import MembershipIndex
from ..repository import UserRepository
from ..schemas import validate_username
from ..security.tokens import fingerprint_token
from .abilities import Policy
from .authorization import AuthorizationResolver
from .errors import UserValidationError
from .factory import UserFactory
from .lifecycle import LifecycleStateMachine
from .user import User

logger = logging.getLogger(__name__)


class UserService:
    """User workflows backed by Postgres storage."""

    def __init__(
        self,
        users: UserRepository,
        memberships: MembershipIndex,
        *,
        settings: Settings | None = None,
        policies: Mapping[str, Policy] | None = None,
    ) -> None:
        """Store dependencies used to orchestrate user workflows."""
        self._users = users
        self._memberships = memberships
        self._settings = settings or get_settings()
        self._policies = policies
        self._factory = UserFactory(self._settings.user_defaults())
        self._lifecycle = LifecycleStateMachine(users, memberships)

    @property
    def lifecycle(self) -> LifecycleStateMachine:
        return self._lifecycle

    def create_user(self, attrs: dict[str, Any], *, as_admin: bool = False) -> User:
        """Validate ``attrs``, apply defaults and persist the user with its namespace."""
        payload = self._factory.build_user(attrs, as_admin=as_admin)
        self._ensure_username_available(payload.username)
        user = self._users.create_user(payload)
        logger.info(
            "user %s created as %s (token %s)",
            user.id,
            user.username,
            fingerprint_token(user.authentication_token or ""),
        )
        return user

    def get_user(self, user_id: int) -> User | None:
        return self._users.get_user(user_id)

    def find_by_username(self, username: str) -> User | None:
        return self._users.find_by_username(username)

    def find_by_username_or_id(self, name_or_id: str) -> User | None:
        return self._users.find_by_username_or_id(name_or_id)

    def find_for_authentication(self, login: str) -> User | None:
        """Resolve a sign-in login that may be either a username or an email."""
        return self._users.find_for_authentication(login)

    def search(self, query: str) -> list[User]:
        return self._users.search(query)

    def list_users(self, filter_name: str | None = None) -> list[User]:
        return self._users.list_users(filter_name)

    def created_by(self, user: User) -> User | None:
        if user.created_by_id is None:
            return None
        return self._users.get_user(user.created_by_id)

    def requires_ssh_key(self, user: User) -> bool:
        return self._users.count_keys(user.id) == 0

    def can_change_username(self, user: User) -> bool:
        return self._settings.username_changing_enabled

    def change_username(self, user: User, username: str) -> User:
        """Rename ``user``, moving its personal namespace path as well."""
        if not self.can_change_username(user):
            raise UserValidationError("username: changing usernames is disabled", field="username")
        username = validate_username(username)
        if username == user.username:
            return user
        self._ensure_username_available(username, user=user)
        self._users.update_username(user.id, username)
        logger.info("user %s renamed %s -> %s", user.id, user.username, username)
        user.username = username
        return user

    def destroy_user(self, user: User) -> bool:
        deleted = self._users.destroy_user(user.id)
        if deleted:
            logger.info("user %s destroyed", user.id)
        return deleted

    def block(self, user: User) -> bool:
        return self._lifecycle.block(user)

    def activate(self, user: User) -> bool:
        return self._lifecycle.activate(user)

    def resolver(self) -> AuthorizationResolver:
        """Return a fresh resolver for one unit of work."""
        return AuthorizationResolver(self._memberships, self._policies)

    def _ensure_username_available(self, username: str, user: User | None = None) -> None:
        user_id = user.id if user is not None else None
        if self._users.username_taken(username, exclude_user_id=user_id):
            raise UserValidationError("username: has already been taken", field="username")
        if self._users.namespace_path_exists(username, exclude_owner_id=user_id):
            raise UserValidationError("username: already exists as a namespace", field="username")
