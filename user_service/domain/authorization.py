"""Resolution of the projects and groups a user can access."""

from __future__ import annotations

from typing import Mapping

from ..memberships import MembershipIndex
from .abilities import AbilityGate, Policy
from .resources import Group, Project, ProjectMembership
from .user import User


class AuthorizationResolver:
    """Per-request view of what users may see and do.

    Every derived collection is memoized by user id on the instance. Build a
    fresh resolver for each unit of work and discard it afterwards; results
    are never refreshed after a membership change.
    """

    def __init__(self, index: MembershipIndex, policies: Mapping[str, Policy] | None = None) -> None:
        self._index = index
        self._project_ids: dict[int, frozenset[int]] = {}
        self._projects: dict[int, list[Project]] = {}
        self._group_ids: dict[int, frozenset[int]] = {}
        self._groups: dict[int, list[Group]] = {}
        self._personal_counts: dict[int, int] = {}
        self._owner_access: dict[int, frozenset[int]] = {}
        self.abilities = AbilityGate(self, policies)

    def authorized_project_ids(self, user: User) -> frozenset[int]:
        """Union of every path through which the user reaches a project."""
        if user.id not in self._project_ids:
            group_ids = {*self._index.owned_group_ids(user.id), *self._index.joined_group_ids(user.id)}
            self._project_ids[user.id] = frozenset(
                {
                    *self._index.owned_namespace_project_ids(user.id),
                    *self._index.project_ids_in_namespaces(sorted(group_ids)),
                    *self._index.direct_project_ids(user.id),
                    *self._index.created_project_ids(user.id),
                }
            )
        return self._project_ids[user.id]

    def authorized_projects(self, user: User) -> list[Project]:
        """Accessible projects ordered by namespace name, then project id."""
        if user.id not in self._projects:
            projects = self._index.projects_by_ids(sorted(self.authorized_project_ids(user)))
            self._projects[user.id] = sorted(projects, key=lambda project: (project.namespace_name, project.id))
        return self._projects[user.id]

    def authorized_group_ids(self, user: User) -> frozenset[int]:
        if user.id not in self._group_ids:
            self._group_ids[user.id] = frozenset(group.id for group in self.authorized_groups(user))
        return self._group_ids[user.id]

    def authorized_groups(self, user: User) -> list[Group]:
        """Joined, owned and project-implied groups ordered by name, then id."""
        if user.id not in self._groups:
            candidate_ids = {
                *self._index.joined_group_ids(user.id),
                *self._index.owned_group_ids(user.id),
                *(project.namespace_id for project in self.authorized_projects(user) if project.namespace_is_group),
            }
            groups = self._index.groups_by_ids(sorted(candidate_ids))
            self._groups[user.id] = sorted(groups, key=lambda group: (group.name, group.id))
        return self._groups[user.id]

    def owner_access_group_ids(self, user: User) -> frozenset[int]:
        if user.id not in self._owner_access:
            self._owner_access[user.id] = frozenset(self._index.owner_access_group_ids(user.id))
        return self._owner_access[user.id]

    def personal_project_count(self, user: User) -> int:
        if user.id not in self._personal_counts:
            self._personal_counts[user.id] = len(self._index.personal_project_ids(user.id))
        return self._personal_counts[user.id]

    def projects_limit_remaining(self, user: User) -> int:
        """Remaining personal project slots; negative when the limit was lowered."""
        return user.projects_limit - self.personal_project_count(user)

    def projects_limit_percent_used(self, user: User) -> float:
        if user.projects_limit == 0:
            return 100.0
        return self.personal_project_count(user) / user.projects_limit * 100

    def can_create_project(self, user: User) -> bool:
        return self.projects_limit_remaining(user) > 0

    def can_create_group(self, user: User) -> bool:
        return self.abilities.allowed(user, "create_group", None)

    def can(self, user: User, action: str, subject: object | None = None) -> bool:
        return self.abilities.allowed(user, action, subject)

    def several_namespaces(self, user: User) -> bool:
        return len(self._index.namespace_ids_owned(user.id)) > 1 or bool(self.owner_access_group_ids(user))

    def can_select_namespace(self, user: User) -> bool:
        return self.several_namespaces(user) or user.admin

    def solo_owned_groups(self, user: User) -> list[Group]:
        """OWNER-level groups in which the user is the only owner."""
        solo = [
            group_id
            for group_id in sorted(self.owner_access_group_ids(user))
            if self._index.group_owner_ids(group_id) == [user.id]
        ]
        return self._index.groups_by_ids(solo)

    def memberships_in_authorized_projects(self, user: User) -> list[ProjectMembership]:
        return self._index.project_memberships_in(
            user.id, [project.id for project in self.authorized_projects(user)]
        )
