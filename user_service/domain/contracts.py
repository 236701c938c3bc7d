"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class NewUserInput:
    """Validated attributes required to persist a user and its namespace."""

    username: str
    email: str
    name: str
    projects_limit: int
    can_create_group: bool
    theme_id: int
    admin: bool = False
    bio: str | None = None
    extern_uid: str | None = None
    provider: str | None = None
    authentication_token: str | None = None
    created_by_id: int | None = None
