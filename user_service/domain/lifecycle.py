"""Account lifecycle: ``active`` ⇄ ``blocked`` with membership revocation on block."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

import psycopg

from ..memberships import DestroyResult, MembershipIndex
from ..repository import UserRepository
from .errors import TransitionDenied
from .resources import GroupMembership, ProjectMembership
from .user import User, UserState

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, tuple[UserState, UserState]] = {
    "block": (UserState.active, UserState.blocked),
    "activate": (UserState.blocked, UserState.active),
}


@dataclass(slots=True)
class BlockPlan:
    """Memberships a block removes, and the ones it leaves in place."""

    user_id: int
    project_memberships: list[ProjectMembership] = field(default_factory=list)
    group_memberships: list[GroupMembership] = field(default_factory=list)
    kept_project_memberships: list[ProjectMembership] = field(default_factory=list)
    kept_group_memberships: list[GroupMembership] = field(default_factory=list)


class LifecycleStateMachine:
    """Runs lifecycle events for users under a per-user lock held by the store.

    Everything done while the lock is held, planning included, runs on the
    lock's connection.

    Blocking is two-phase: the plan is computed first, then applied one
    membership at a time. The state change is committed only when every
    planned destroy succeeded. A failed destroy denies the transition but
    does not restore memberships removed earlier in the same pass.
    """

    def __init__(self, users: UserRepository, memberships: MembershipIndex) -> None:
        self._users = users
        self._memberships = memberships

    def plan_block(self, user: User, memberships: MembershipIndex | None = None) -> BlockPlan:
        if memberships is None:
            memberships = self._memberships
        plan = BlockPlan(user_id=user.id)
        for membership in memberships.project_memberships(user.id):
            if membership.project_owner_id == user.id:
                plan.kept_project_memberships.append(membership)
            else:
                plan.project_memberships.append(membership)
        for membership in memberships.group_memberships(user.id):
            if self._is_last_owner(membership, memberships):
                plan.kept_group_memberships.append(membership)
            else:
                plan.group_memberships.append(membership)
        return plan

    def block(self, user: User) -> bool:
        """Block ``user``; return ``False`` when the transition was denied."""
        return self._attempt(self.block_or_raise, user)

    def activate(self, user: User) -> bool:
        """Reactivate ``user`` without restoring any membership."""
        return self._attempt(self.activate_or_raise, user)

    def block_or_raise(self, user: User) -> None:
        self._fire("block", user, self._revoke_memberships)

    def activate_or_raise(self, user: User) -> None:
        self._fire("activate", user)

    def _attempt(self, event: Callable[[User], None], user: User) -> bool:
        try:
            event(user)
        except TransitionDenied as exc:
            logger.warning("%s", exc)
            return False
        return True

    def _fire(
        self,
        event: str,
        user: User,
        on_enter: Callable[[User, MembershipIndex], None] | None = None,
    ) -> None:
        source, target = TRANSITIONS[event]
        with self._users.lock_user(user.id) as locked:
            if locked is None:
                raise TransitionDenied(event, user.id, "user not found")
            if locked.state is not source:
                raise TransitionDenied(event, user.id, f"cannot {event} a user in state {locked.state.value}")
            if on_enter is not None:
                on_enter(user, self._memberships.bound_to(locked.connection))
            locked.set_state(target)
        user.state = target
        logger.info("user %s transitioned %s -> %s via %s", user.id, source.value, target.value, event)

    def _revoke_memberships(self, user: User, memberships: MembershipIndex) -> None:
        plan = self.plan_block(user, memberships)
        for kept in plan.kept_project_memberships:
            logger.debug("keeping owned project membership %s of user %s", kept.id, user.id)
        for kept_group in plan.kept_group_memberships:
            logger.debug("keeping last-owner group membership %s of user %s", kept_group.id, user.id)

        for membership in plan.project_memberships:
            try:
                result = memberships.destroy_project_membership(membership.id)
            except psycopg.Error as exc:
                logger.warning("destroying project membership %s failed: %s", membership.id, exc)
                raise TransitionDenied("block", user.id, "membership removal failed") from exc
            if result is not DestroyResult.destroyed:
                raise TransitionDenied("block", user.id, "membership removal failed")

        for group_membership in plan.group_memberships:
            try:
                result = memberships.destroy_group_membership(group_membership, guard_last_owner=True)
            except psycopg.Error as exc:
                logger.warning("destroying group membership %s failed: %s", group_membership.id, exc)
                raise TransitionDenied("block", user.id, "membership removal failed") from exc
            if result is DestroyResult.kept:
                logger.debug(
                    "group membership %s of user %s became the last owner, keeping it",
                    group_membership.id,
                    user.id,
                )
            elif result is not DestroyResult.destroyed:
                raise TransitionDenied("block", user.id, "membership removal failed")

    def _is_last_owner(self, membership: GroupMembership, memberships: MembershipIndex) -> bool:
        owners = memberships.group_owner_ids(membership.group_id)
        return owners == [membership.user_id]
