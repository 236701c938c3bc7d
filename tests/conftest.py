from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

import psycopg
import pytest

from user_service.config import Settings
from user_service.domain.contracts import NewUserInput
from user_service.domain.resources import AccessLevel, GroupMembership, Project, Group, ProjectMembership
from user_service.domain.service import UserService
from user_service.domain.user import User, UserState
from user_service.memberships import DestroyResult


@dataclass
class FakeNamespace:
    id: int
    name: str
    path: str
    owner_id: int | None
    type: str | None = None


@dataclass
class FakeProject:
    id: int
    name: str
    namespace_id: int
    creator_id: int | None = None


@dataclass
class FakeMembership:
    id: int
    user_id: int
    target_id: int
    access: AccessLevel


@dataclass
class FakeContent:
    id: int
    table: str
    author_id: int
    assignee_id: int | None = None


@dataclass
class FakeDatabase:
    """In-memory tables mimicking the Postgres layout."""

    users: dict[int, User] = field(default_factory=dict)
    namespaces: dict[int, FakeNamespace] = field(default_factory=dict)
    projects: dict[int, FakeProject] = field(default_factory=dict)
    users_projects: dict[int, FakeMembership] = field(default_factory=dict)
    users_groups: dict[int, FakeMembership] = field(default_factory=dict)
    keys: dict[int, int] = field(default_factory=dict)
    content: dict[int, FakeContent] = field(default_factory=dict)
    # membership ids whose removal raises a store error or is refused
    raise_on_destroy: set[int] = field(default_factory=set)
    refuse_destroy: set[int] = field(default_factory=set)
    destroyed_project_memberships: list[int] = field(default_factory=list)
    destroyed_group_memberships: list[int] = field(default_factory=list)
    _seq: int = 0

    def next_id(self) -> int:
        self._seq += 1
        return self._seq

    def add_user(self, username: str, **attrs) -> User:
        user_id = self.next_id()
        namespace = FakeNamespace(id=self.next_id(), name=username, path=username, owner_id=user_id)
        self.namespaces[namespace.id] = namespace
        user = User(
            id=user_id,
            username=username,
            email=attrs.pop("email", f"{username}@example.com"),
            name=attrs.pop("name", username.title()),
            created_at=datetime.now(timezone.utc),
            namespace_id=namespace.id,
            **attrs,
        )
        self.users[user_id] = user
        return replace(user)

    def add_group(self, name: str, owner: User | None = None) -> FakeNamespace:
        group = FakeNamespace(
            id=self.next_id(),
            name=name,
            path=name.lower(),
            owner_id=owner.id if owner else None,
            type="Group",
        )
        self.namespaces[group.id] = group
        return group

    def add_project(self, name: str, namespace_id: int, creator: User | None = None) -> FakeProject:
        project = FakeProject(
            id=self.next_id(),
            name=name,
            namespace_id=namespace_id,
            creator_id=creator.id if creator else None,
        )
        self.projects[project.id] = project
        return project

    def add_project_member(
        self, user: User, project: FakeProject, access: AccessLevel = AccessLevel.DEVELOPER
    ) -> FakeMembership:
        membership = FakeMembership(id=self.next_id(), user_id=user.id, target_id=project.id, access=access)
        self.users_projects[membership.id] = membership
        return membership

    def add_group_member(
        self, user: User, group: FakeNamespace, access: AccessLevel = AccessLevel.DEVELOPER
    ) -> FakeMembership:
        membership = FakeMembership(id=self.next_id(), user_id=user.id, target_id=group.id, access=access)
        self.users_groups[membership.id] = membership
        return membership

    def add_content(self, table: str, author: User, assignee: User | None = None) -> FakeContent:
        item = FakeContent(
            id=self.next_id(),
            table=table,
            author_id=author.id,
            assignee_id=assignee.id if assignee else None,
        )
        self.content[item.id] = item
        return item

    def state_of(self, user: User) -> UserState:
        return self.users[user.id].state


@dataclass
class FakeLockedUser:
    user_id: int
    state: UserState
    connection: object = None

    def set_state(self, state: UserState) -> None:
        self.state = state


class FakeUserRepository:
    """In-memory stand-in for :class:`UserRepository`."""

    def __init__(self, db: FakeDatabase) -> None:
        self._db = db
        self.lock_count = 0

    def create_user(self, payload: NewUserInput) -> User:
        user = self._db.add_user(
            payload.username,
            email=payload.email,
            name=payload.name,
            admin=payload.admin,
            projects_limit=payload.projects_limit,
            can_create_group=payload.can_create_group,
            theme_id=payload.theme_id,
            bio=payload.bio,
            extern_uid=payload.extern_uid,
            provider=payload.provider,
            authentication_token=payload.authentication_token,
            created_by_id=payload.created_by_id,
        )
        return user

    def get_user(self, user_id: int):
        user = self._db.users.get(user_id)
        return replace(user) if user else None

    def find_by_username(self, username: str):
        return self._first(lambda user: user.username == username)

    def find_by_username_or_id(self, name_or_id: str):
        return self._first(lambda user: user.username == name_or_id or str(user.id) == name_or_id)

    def find_for_authentication(self, login: str):
        value = login.lower()
        return self._first(lambda user: user.username.lower() == value or user.email.lower() == value)

    def search(self, query: str):
        return [
            replace(user)
            for user in self._db.users.values()
            if query in user.name or query in user.email or query in user.username
        ]

    def list_users(self, filter_name: str | None = None):
        if filter_name == "admins":
            selected = [user for user in self._db.users.values() if user.admin]
        elif filter_name == "blocked":
            selected = [user for user in self._db.users.values() if user.is_blocked]
        elif filter_name == "wop":
            members = {membership.user_id for membership in self._db.users_projects.values()}
            selected = [user for user in self._db.users.values() if user.id not in members]
        else:
            selected = [user for user in self._db.users.values() if user.is_active]
        return [replace(user) for user in sorted(selected, key=lambda user: user.name)]

    def namespace_path_exists(self, path: str, *, exclude_owner_id: int | None = None) -> bool:
        return any(
            namespace.path == path
            and not (namespace.type is None and namespace.owner_id == exclude_owner_id)
            for namespace in self._db.namespaces.values()
        )

    def username_taken(self, username: str, *, exclude_user_id: int | None = None) -> bool:
        return any(
            user.username == username and user.id != exclude_user_id for user in self._db.users.values()
        )

    def update_username(self, user_id: int, username: str) -> None:
        self._db.users[user_id].username = username
        for namespace in self._db.namespaces.values():
            if namespace.owner_id == user_id and namespace.type is None:
                namespace.name = namespace.path = username

    def count_keys(self, user_id: int) -> int:
        return self._db.keys.get(user_id, 0)

    @contextmanager
    def lock_user(self, user_id: int):
        self.lock_count += 1
        row = self._db.users.get(user_id)
        if row is None:
            yield None
            return
        locked = FakeLockedUser(user_id=user_id, state=row.state, connection=f"lock:{user_id}")
        yield locked
        row.state = locked.state

    def destroy_user(self, user_id: int) -> bool:
        db = self._db
        if user_id not in db.users:
            return False
        for namespace in [ns for ns in db.namespaces.values() if ns.owner_id == user_id and ns.type is None]:
            for project in [p for p in db.projects.values() if p.namespace_id == namespace.id]:
                for membership_id in [m.id for m in db.users_projects.values() if m.target_id == project.id]:
                    del db.users_projects[membership_id]
                del db.projects[project.id]
            del db.namespaces[namespace.id]
        for table in (db.users_projects, db.users_groups):
            for membership_id in [m.id for m in table.values() if m.user_id == user_id]:
                del table[membership_id]
        db.keys.pop(user_id, None)
        for item in list(db.content.values()):
            if item.author_id == user_id:
                del db.content[item.id]
            elif item.assignee_id == user_id:
                item.assignee_id = None
        del db.users[user_id]
        return True

    def _first(self, predicate):
        for user in sorted(self._db.users.values(), key=lambda user: user.id):
            if predicate(user):
                return replace(user)
        return None


class FakeMembershipIndex:
    """In-memory stand-in for :class:`MembershipIndex`."""

    def __init__(self, db: FakeDatabase) -> None:
        self._db = db
        self.calls: list[str] = []
        self.bound_connections: list[object] = []

    def bound_to(self, connection: object) -> FakeMembershipIndex:
        self.bound_connections.append(connection)
        return self

    def owned_group_ids(self, user_id: int) -> list[int]:
        self.calls.append("owned_group_ids")
        return sorted(ns.id for ns in self._db.namespaces.values() if ns.type == "Group" and ns.owner_id == user_id)

    def joined_group_ids(self, user_id: int) -> list[int]:
        self.calls.append("joined_group_ids")
        return sorted(m.target_id for m in self._db.users_groups.values() if m.user_id == user_id)

    def owner_access_group_ids(self, user_id: int) -> list[int]:
        return sorted(
            m.target_id
            for m in self._db.users_groups.values()
            if m.user_id == user_id and m.access >= AccessLevel.OWNER
        )

    def personal_project_ids(self, user_id: int) -> list[int]:
        self.calls.append("personal_project_ids")
        return sorted(
            p.id
            for p in self._db.projects.values()
            if self._db.namespaces[p.namespace_id].owner_id == user_id
            and self._db.namespaces[p.namespace_id].type is None
        )

    def owned_namespace_project_ids(self, user_id: int) -> list[int]:
        self.calls.append("owned_namespace_project_ids")
        return sorted(
            p.id for p in self._db.projects.values() if self._db.namespaces[p.namespace_id].owner_id == user_id
        )

    def direct_project_ids(self, user_id: int) -> list[int]:
        self.calls.append("direct_project_ids")
        return sorted(m.target_id for m in self._db.users_projects.values() if m.user_id == user_id)

    def created_project_ids(self, user_id: int) -> list[int]:
        return sorted(p.id for p in self._db.projects.values() if p.creator_id == user_id)

    def namespace_ids_owned(self, user_id: int) -> list[int]:
        return sorted(ns.id for ns in self._db.namespaces.values() if ns.owner_id == user_id)

    def project_ids_in_namespaces(self, namespace_ids) -> list[int]:
        wanted = set(namespace_ids)
        return sorted(p.id for p in self._db.projects.values() if p.namespace_id in wanted)

    def projects_by_ids(self, project_ids) -> list[Project]:
        wanted = set(project_ids)
        projects = [self.project(p.id) for p in self._db.projects.values() if p.id in wanted]
        return sorted(projects, key=lambda project: (project.namespace_name, project.id))

    def groups_by_ids(self, group_ids) -> list[Group]:
        wanted = set(group_ids)
        groups = [
            Group(id=ns.id, name=ns.name, path=ns.path, owner_id=ns.owner_id)
            for ns in self._db.namespaces.values()
            if ns.type == "Group" and ns.id in wanted
        ]
        return sorted(groups, key=lambda group: (group.name, group.id))

    def project_memberships(self, user_id: int) -> list[ProjectMembership]:
        return [
            self._project_membership(m)
            for m in sorted(self._db.users_projects.values(), key=lambda m: m.id)
            if m.user_id == user_id
        ]

    def project_memberships_in(self, user_id: int, project_ids) -> list[ProjectMembership]:
        wanted = set(project_ids)
        return [m for m in self.project_memberships(user_id) if m.project_id in wanted]

    def group_memberships(self, user_id: int) -> list[GroupMembership]:
        return [
            GroupMembership(id=m.id, user_id=m.user_id, group_id=m.target_id, group_access=m.access)
            for m in sorted(self._db.users_groups.values(), key=lambda m: m.id)
            if m.user_id == user_id
        ]

    def group_owner_ids(self, group_id: int) -> list[int]:
        return sorted(
            m.user_id
            for m in self._db.users_groups.values()
            if m.target_id == group_id and m.access >= AccessLevel.OWNER
        )

    def destroy_project_membership(self, membership_id: int) -> DestroyResult:
        if membership_id in self._db.raise_on_destroy:
            raise psycopg.OperationalError("server closed the connection unexpectedly")
        if membership_id in self._db.refuse_destroy:
            return DestroyResult.failed
        if self._db.users_projects.pop(membership_id, None) is None:
            return DestroyResult.destroyed
        self._db.destroyed_project_memberships.append(membership_id)
        return DestroyResult.destroyed

    def destroy_group_membership(self, membership: GroupMembership, *, guard_last_owner: bool = True) -> DestroyResult:
        if membership.id in self._db.raise_on_destroy:
            raise psycopg.OperationalError("server closed the connection unexpectedly")
        if guard_last_owner and self.group_owner_ids(membership.group_id) == [membership.user_id]:
            return DestroyResult.kept
        if membership.id in self._db.refuse_destroy:
            return DestroyResult.failed
        if self._db.users_groups.pop(membership.id, None) is None:
            return DestroyResult.destroyed
        self._db.destroyed_group_memberships.append(membership.id)
        return DestroyResult.destroyed

    def project(self, project_id: int) -> Project:
        project = self._db.projects[project_id]
        namespace = self._db.namespaces[project.namespace_id]
        return Project(
            id=project.id,
            name=project.name,
            path=project.name.lower(),
            namespace_id=namespace.id,
            namespace_name=namespace.name,
            namespace_owner_id=namespace.owner_id,
            namespace_is_group=namespace.type == "Group",
            creator_id=project.creator_id,
        )

    def group(self, group_id: int) -> Group:
        return self.groups_by_ids([group_id])[0]

    def _project_membership(self, membership: FakeMembership) -> ProjectMembership:
        project = self._db.projects[membership.target_id]
        return ProjectMembership(
            id=membership.id,
            user_id=membership.user_id,
            project_id=project.id,
            project_access=membership.access,
            project_owner_id=self._db.namespaces[project.namespace_id].owner_id,
        )


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def users(db: FakeDatabase) -> FakeUserRepository:
    return FakeUserRepository(db)


@pytest.fixture
def index(db: FakeDatabase) -> FakeMembershipIndex:
    return FakeMembershipIndex(db)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        default_projects_limit=10,
        default_can_create_group=True,
        default_theme_id=2,
        username_changing_enabled=True,
    )


@pytest.fixture
def service(users: FakeUserRepository, index: FakeMembershipIndex, settings: Settings) -> UserService:
    """Provide a user service over isolated in-memory state."""
    return UserService(users, index, settings=settings)
