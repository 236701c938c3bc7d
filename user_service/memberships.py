"""Read-mostly query layer over project and group membership records."""

from __future__ import annotations

from contextlib import contextmanager
from enum import Enum
from typing import Iterable, Iterator

from psycopg import Connection
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool

from .domain.resources import AccessLevel, Group, GroupMembership, Project, ProjectMembership

_PROJECT_SELECT = """
    SELECT p.id, p.name, p.path, p.namespace_id, n.name, n.owner_id, n.type = 'Group', p.creator_id
    FROM projects p
    JOIN namespaces n ON n.id = p.namespace_id
"""


class DestroyResult(str, Enum):
    """Outcome of removing one membership; a row already gone counts as destroyed."""

    destroyed = "destroyed"
    kept = "kept"
    failed = "failed"


class MembershipIndex:
    """Postgres-backed answers to "what is this user related to"."""

    def __init__(self, pool: ConnectionPool, connection: Connection | None = None) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool
        self._bound = connection

    def bound_to(self, connection: Connection) -> MembershipIndex:
        """Return an index running every query on ``connection`` instead of the pool."""
        return MembershipIndex(self._pool, connection)

    def owned_group_ids(self, user_id: int) -> list[int]:
        """Groups whose namespace is owned by the user."""
        return self._ids(
            "SELECT id FROM namespaces WHERE owner_id = %s AND type = 'Group' ORDER BY id",
            (user_id,),
        )

    def joined_group_ids(self, user_id: int) -> list[int]:
        """Groups reached through ``users_groups`` rows."""
        return self._ids(
            "SELECT group_id FROM users_groups WHERE user_id = %s ORDER BY group_id",
            (user_id,),
        )

    def owner_access_group_ids(self, user_id: int) -> list[int]:
        """Groups where the user's membership carries OWNER access."""
        return self._ids(
            """
            SELECT group_id FROM users_groups
            WHERE user_id = %s AND group_access >= %s
            ORDER BY group_id
            """,
            (user_id, int(AccessLevel.OWNER)),
        )

    def personal_project_ids(self, user_id: int) -> list[int]:
        return self._ids(
            """
            SELECT p.id
            FROM projects p
            JOIN namespaces n ON n.id = p.namespace_id
            WHERE n.owner_id = %s AND n.type IS NULL
            ORDER BY p.id
            """,
            (user_id,),
        )

    def owned_namespace_project_ids(self, user_id: int) -> list[int]:
        """Projects under the personal namespace and every group namespace the user owns."""
        return self._ids(
            """
            SELECT p.id
            FROM projects p
            JOIN namespaces n ON n.id = p.namespace_id
            WHERE n.owner_id = %s
            ORDER BY p.id
            """,
            (user_id,),
        )

    def direct_project_ids(self, user_id: int) -> list[int]:
        return self._ids(
            "SELECT project_id FROM users_projects WHERE user_id = %s ORDER BY project_id",
            (user_id,),
        )

    def created_project_ids(self, user_id: int) -> list[int]:
        return self._ids(
            "SELECT id FROM projects WHERE creator_id = %s ORDER BY id",
            (user_id,),
        )

    def namespace_ids_owned(self, user_id: int) -> list[int]:
        return self._ids(
            "SELECT id FROM namespaces WHERE owner_id = %s ORDER BY id",
            (user_id,),
        )

    def project_ids_in_namespaces(self, namespace_ids: Iterable[int]) -> list[int]:
        ids = list(namespace_ids)
        if not ids:
            return []
        return self._ids(
            "SELECT id FROM projects WHERE namespace_id = ANY(%s) ORDER BY id",
            (ids,),
        )

    def projects_by_ids(self, project_ids: Iterable[int]) -> list[Project]:
        """Load projects ordered by namespace name, then id."""
        ids = list(project_ids)
        if not ids:
            return []
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"{_PROJECT_SELECT} WHERE p.id = ANY(%s) ORDER BY n.name ASC, p.id ASC",
                    (ids,),
                )
                rows = cur.fetchall()
        return [self._map_project(row) for row in rows]

    def groups_by_ids(self, group_ids: Iterable[int]) -> list[Group]:
        """Load group namespaces ordered by name, then id; personal namespaces are ignored."""
        ids = list(group_ids)
        if not ids:
            return []
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT id, name, path, owner_id
                    FROM namespaces
                    WHERE type = 'Group' AND id = ANY(%s)
                    ORDER BY name ASC, id ASC
                    """,
                    (ids,),
                )
                rows = cur.fetchall()
        return [Group(id=row[0], name=row[1], path=row[2], owner_id=row[3]) for row in rows]

    def project_memberships(self, user_id: int) -> list[ProjectMembership]:
        """All ``users_projects`` rows of the user with each project's owner."""
        return self._project_memberships("WHERE up.user_id = %s", (user_id,))

    def project_memberships_in(self, user_id: int, project_ids: Iterable[int]) -> list[ProjectMembership]:
        ids = list(project_ids)
        if not ids:
            return []
        return self._project_memberships(
            "WHERE up.user_id = %s AND up.project_id = ANY(%s)",
            (user_id, ids),
        )

    def group_memberships(self, user_id: int) -> list[GroupMembership]:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT id, user_id, group_id, group_access
                    FROM users_groups
                    WHERE user_id = %s
                    ORDER BY id
                    """,
                    (user_id,),
                )
                rows = cur.fetchall()
        return [
            GroupMembership(id=row[0], user_id=row[1], group_id=row[2], group_access=AccessLevel(row[3]))
            for row in rows
        ]

    def group_owner_ids(self, group_id: int) -> list[int]:
        return self._ids(
            """
            SELECT user_id FROM users_groups
            WHERE group_id = %s AND group_access >= %s
            ORDER BY user_id
            """,
            (group_id, int(AccessLevel.OWNER)),
        )

    def destroy_project_membership(self, membership_id: int) -> DestroyResult:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("DELETE FROM users_projects WHERE id = %s", (membership_id,))
                conn.commit()
        return DestroyResult.destroyed

    def destroy_group_membership(
        self, membership: GroupMembership, *, guard_last_owner: bool = True
    ) -> DestroyResult:
        """Delete a group membership, keeping it when it holds the group's last owner.

        The owner rows of the group are locked before the check so that two
        concurrent removals cannot both pass it.
        """
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                if guard_last_owner:
                    cur.execute(
                        """
                        SELECT user_id FROM users_groups
                        WHERE group_id = %s AND group_access >= %s
                        FOR UPDATE
                        """,
                        (membership.group_id, int(AccessLevel.OWNER)),
                    )
                    owners = [row[0] for row in cur.fetchall()]
                    if owners == [membership.user_id]:
                        conn.commit()
                        return DestroyResult.kept
                cur.execute("DELETE FROM users_groups WHERE id = %s", (membership.id,))
                conn.commit()
        return DestroyResult.destroyed

    def _project_memberships(self, where_sql: str, params: tuple) -> list[ProjectMembership]:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT up.id, up.user_id, up.project_id, up.project_access, n.owner_id
                    FROM users_projects up
                    JOIN projects p ON p.id = up.project_id
                    JOIN namespaces n ON n.id = p.namespace_id
                    {where_sql}
                    ORDER BY up.id
                    """,
                    params,
                )
                rows = cur.fetchall()
        return [
            ProjectMembership(
                id=row[0],
                user_id=row[1],
                project_id=row[2],
                project_access=AccessLevel(row[3]),
                project_owner_id=row[4],
            )
            for row in rows
        ]

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        if self._bound is not None:
            yield self._bound
        else:
            with self._pool.connection() as conn:
                yield conn

    def _ids(self, query: str, params: tuple) -> list[int]:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                return [row[0] for row in cur.fetchall()]

    def _map_project(self, row: tuple) -> Project:
        return Project(
            id=row[0],
            name=row[1],
            path=row[2],
            namespace_id=row[3],
            namespace_name=row[4],
            namespace_owner_id=row[5],
            namespace_is_group=bool(row[6]),
            creator_id=row[7],
        )
