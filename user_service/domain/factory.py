"""Builds validated new-user inputs with configuration defaults applied."""

from __future__ import annotations

from typing import Any

from ..config import UserDefaults
from ..schemas import ADMIN_ONLY_FIELDS, parse_user_attributes
from ..security.tokens import generate_private_token
from .contracts import NewUserInput


class UserFactory:
    """Apply admin-supplied attributes or system defaults to new users."""

    def __init__(self, defaults: UserDefaults) -> None:
        self._defaults = defaults

    def defaults(self) -> dict[str, Any]:
        return {
            "projects_limit": self._defaults.projects_limit,
            "can_create_group": self._defaults.can_create_group,
            "theme_id": self._defaults.theme_id,
        }

    def build_user(self, attrs: dict[str, Any], *, as_admin: bool = False) -> NewUserInput:
        """Validate ``attrs`` and return the input used to persist the user.

        Admins may set any attribute; unset ones fall back to the defaults.
        Everyone else gets the defaults forced over their payload and
        admin-only attributes dropped.
        """
        if as_admin:
            supplied = {key: value for key, value in attrs.items() if value is not None}
            payload = {**self.defaults(), **supplied}
        else:
            payload = {key: value for key, value in attrs.items() if key not in ADMIN_ONLY_FIELDS}
            payload.update(self.defaults())

        validated = parse_user_attributes(payload)
        return NewUserInput(
            username=validated.username,
            email=str(validated.email),
            name=validated.name,
            projects_limit=validated.projects_limit
            if validated.projects_limit is not None
            else self._defaults.projects_limit,
            can_create_group=validated.can_create_group
            if validated.can_create_group is not None
            else self._defaults.can_create_group,
            theme_id=validated.theme_id if validated.theme_id is not None else self._defaults.theme_id,
            admin=validated.admin,
            bio=validated.bio,
            extern_uid=validated.extern_uid,
            provider=validated.provider,
            authentication_token=attrs.get("authentication_token") or generate_private_token(),
            created_by_id=validated.created_by_id,
        )
