"""Ability policies and the gate that dispatches to them."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Mapping, Protocol

from .resources import Group, Project, subject_kind
from .user import User

if TYPE_CHECKING:
    from .authorization import AuthorizationResolver

logger = logging.getLogger(__name__)


class Policy(Protocol):
    """Computes every action a user may take on one subject variant."""

    def abilities(
        self, user: User, subject: object | None, resolver: AuthorizationResolver
    ) -> frozenset[str]: ...


class GlobalPolicy:
    def abilities(self, user: User, subject: None, resolver: AuthorizationResolver) -> frozenset[str]:
        granted: set[str] = set()
        if user.admin or user.can_create_group:
            granted.add("create_group")
        if resolver.can_create_project(user):
            granted.add("create_project")
        return frozenset(granted)


class ProjectPolicy:
    def abilities(self, user: User, subject: Project, resolver: AuthorizationResolver) -> frozenset[str]:
        granted: set[str] = set()
        if user.admin or subject.id in resolver.authorized_project_ids(user):
            granted.add("read_project")
        if user.admin or subject.namespace_owner_id == user.id:
            granted.add("admin_project")
        return frozenset(granted)


class GroupPolicy:
    def abilities(self, user: User, subject: Group, resolver: AuthorizationResolver) -> frozenset[str]:
        granted: set[str] = set()
        if user.admin or subject.id in resolver.authorized_group_ids(user):
            granted.add("read_group")
        if user.admin or subject.owner_id == user.id or subject.id in resolver.owner_access_group_ids(user):
            granted.add("manage_group")
        return frozenset(granted)


def default_policies() -> dict[str, Policy]:
    return {
        "global": GlobalPolicy(),
        "project": ProjectPolicy(),
        "group": GroupPolicy(),
    }


class AbilityGate:
    """Answers ``allowed(user, action, subject)`` for one unit of work.

    Ability sets are memoized per user and subject for the lifetime of the
    gate, which lives exactly as long as its owning resolver. Blocked users
    are denied everything.
    """

    def __init__(
        self,
        resolver: AuthorizationResolver,
        policies: Mapping[str, Policy] | None = None,
    ) -> None:
        self._resolver = resolver
        self._policies: dict[str, Policy] = dict(policies) if policies is not None else default_policies()
        self._cache: dict[tuple[int, str, object], frozenset[str]] = {}

    def register(self, kind: str, policy: Policy) -> None:
        """Install or replace the policy for a subject variant."""
        self._policies[kind] = policy
        self._cache = {key: value for key, value in self._cache.items() if key[1] != kind}

    def abilities_for(self, user: User, subject: object | None) -> frozenset[str]:
        kind = subject_kind(subject)
        key = (user.id, kind, getattr(subject, "id", None))
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        if user.is_blocked:
            granted: frozenset[str] = frozenset()
        else:
            policy = self._policies.get(kind)
            if policy is None:
                logger.debug("no ability policy registered for %s subjects", kind)
                granted = frozenset()
            else:
                granted = policy.abilities(user, subject, self._resolver)
        self._cache[key] = granted
        return granted

    def allowed(self, user: User, action: str, subject: object | None = None) -> bool:
        return action in self.abilities_for(user, subject)
