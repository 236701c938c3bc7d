"""Projects, groups and the membership join records linking users to them."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar


class AccessLevel(IntEnum):
    GUEST = 10
    REPORTER = 20
    DEVELOPER = 30
    MASTER = 40
    OWNER = 50


@dataclass(slots=True, frozen=True)
class Project:
    """Project projection carrying the owning namespace's display data."""

    kind: ClassVar[str] = "project"

    id: int
    name: str
    path: str
    namespace_id: int
    namespace_name: str
    namespace_owner_id: int | None
    namespace_is_group: bool = False
    creator_id: int | None = None


@dataclass(slots=True, frozen=True)
class Group:
    """Group-backed namespace."""

    kind: ClassVar[str] = "group"

    id: int
    name: str
    path: str
    owner_id: int | None


@dataclass(slots=True, frozen=True)
class ProjectMembership:
    """A ``users_projects`` row joined with the project's owner."""

    id: int
    user_id: int
    project_id: int
    project_access: AccessLevel
    project_owner_id: int | None


@dataclass(slots=True, frozen=True)
class GroupMembership:
    """A ``users_groups`` row."""

    id: int
    user_id: int
    group_id: int
    group_access: AccessLevel

    @property
    def is_owner(self) -> bool:
        return self.group_access >= AccessLevel.OWNER


def subject_kind(subject: object | None) -> str:
    """Return the variant tag used to dispatch ability policies."""
    if subject is None:
        return "global"
    kind = getattr(type(subject), "kind", None)
    if not isinstance(kind, str):
        raise TypeError(f"unsupported ability subject: {type(subject).__name__}")
    return kind
