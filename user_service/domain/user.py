from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class UserState(str, Enum):
    active = "active"
    blocked = "blocked"


@dataclass(slots=True)
class User:
    """Aggregate root for a platform user account."""

    id: int
    username: str
    email: str
    name: str
    created_at: datetime
    state: UserState = UserState.active
    admin: bool = False
    projects_limit: int = 10
    can_create_group: bool = True
    theme_id: int = 1
    bio: str | None = None
    extern_uid: str | None = None
    provider: str | None = None
    authentication_token: str | None = None
    created_by_id: int | None = None
    namespace_id: int | None = None

    @property
    def is_admin(self) -> bool:
        return self.admin

    @property
    def is_active(self) -> bool:
        return self.state is UserState.active

    @property
    def is_blocked(self) -> bool:
        return self.state is UserState.blocked

    @property
    def is_ldap_user(self) -> bool:
        return bool(self.extern_uid) and self.provider == "ldap"

    @property
    def first_name(self) -> str | None:
        parts = self.name.split() if self.name else []
        return parts[0] if parts else None

    @property
    def name_with_username(self) -> str:
        return f"{self.name} ({self.username})"

    def to_param(self) -> str:
        """Return the identifier used in URLs and namespace paths."""
        return self.username
