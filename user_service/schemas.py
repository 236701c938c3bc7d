"""Pydantic models validating user attribute payloads."""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
)

from .domain.errors import UserValidationError

USERNAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_.\-]*$"

# Top-level paths owned by the platform itself.
RESERVED_PATHS = frozenset(
    {
        "admin",
        "api",
        "assets",
        "dashboard",
        "files",
        "groups",
        "help",
        "hooks",
        "issues",
        "merge_requests",
        "new",
        "notes",
        "profile",
        "projects",
        "public",
        "repository",
        "s",
        "search",
        "services",
        "snippets",
        "teams",
        "u",
        "unsubscribes",
        "users",
    }
)

ADMIN_ONLY_FIELDS = frozenset({"admin", "projects_limit", "can_create_group"})


def _not_reserved(value: str) -> str:
    if value.lower() in RESERVED_PATHS:
        raise ValueError(f"{value} is a reserved name")
    return value


Username = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=1, max_length=255, pattern=USERNAME_PATTERN),
    AfterValidator(_not_reserved),
]

_username_adapter: TypeAdapter[str] = TypeAdapter(Username)


class UserAttributes(BaseModel):
    """Attributes accepted when building a user."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    username: Username
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)
    bio: str | None = Field(default=None, max_length=255)
    projects_limit: int | None = Field(default=None, ge=0)
    can_create_group: bool | None = None
    theme_id: int | None = None
    admin: bool = False
    extern_uid: str | None = None
    provider: str | None = None
    created_by_id: int | None = None


def _translate(exc: ValidationError, default_field: str | None = None) -> UserValidationError:
    error = exc.errors()[0]
    field = ".".join(str(part) for part in error["loc"]) or default_field
    return UserValidationError(f"{field}: {error['msg']}", field=field)


def parse_user_attributes(payload: dict[str, Any]) -> UserAttributes:
    """Validate ``payload`` and translate pydantic failures into domain errors."""
    try:
        return UserAttributes.model_validate(payload)
    except ValidationError as exc:
        raise _translate(exc) from exc


def validate_username(username: str) -> str:
    """Validate a username on its own, as used by renames."""
    try:
        return _username_adapter.validate_python(username)
    except ValidationError as exc:
        raise _translate(exc, default_field="username") from exc
