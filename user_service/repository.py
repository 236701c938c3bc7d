"""Database repository for user accounts and their personal namespaces."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from psycopg import Connection
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool

from .domain.contracts import NewUserInput
from .domain.user import User, UserState

_USER_COLUMNS = """
    u.id, u.username, u.email, u.name, u.created_at, u.state, u.admin,
    u.projects_limit, u.can_create_group, u.theme_id, u.bio, u.extern_uid,
    u.provider, u.authentication_token, u.created_by_id, n.id
"""

_USER_FROM = """
    FROM users u
    LEFT JOIN namespaces n ON n.owner_id = u.id AND n.type IS NULL
"""

# Tables whose rows are removed together with their author.
_AUTHORED_TABLES = ("snippets", "issues", "notes", "merge_requests", "events")

# Tables keeping rows authored by others while clearing the assignee.
_ASSIGNABLE_TABLES = ("issues", "merge_requests")

# Advisory lock class reserved for user lifecycle events.
_USER_LOCK_CLASS = 1001


@dataclass(slots=True)
class LockedUser:
    """Handle on a user held under a session-level advisory lock.

    Work done while the lock is held runs on ``connection``; commits on it
    keep the lock.
    """

    user_id: int
    state: UserState
    connection: Connection

    def set_state(self, state: UserState) -> None:
        with self.connection.cursor() as cur:
            cur.execute(
                "UPDATE users SET state = %s, updated_at = NOW() WHERE id = %s",
                (state.value, self.user_id),
            )
        self.connection.commit()
        self.state = state


class UserRepository:
    """Postgres-backed user persistence."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def create_user(self, payload: NewUserInput) -> User:
        """Insert the user and its personal namespace in one transaction."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    INSERT INTO users (
                        username, email, name, state, admin, projects_limit, can_create_group,
                        theme_id, bio, extern_uid, provider, authentication_token, created_by_id,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW(), NOW())
                    RETURNING id
                    """,
                    (
                        payload.username,
                        payload.email,
                        payload.name,
                        UserState.active.value,
                        payload.admin,
                        payload.projects_limit,
                        payload.can_create_group,
                        payload.theme_id,
                        payload.bio,
                        payload.extern_uid,
                        payload.provider,
                        payload.authentication_token,
                        payload.created_by_id,
                    ),
                )
                user_id = cur.fetchone()[0]
                cur.execute(
                    """
                    INSERT INTO namespaces (name, path, owner_id, type, created_at, updated_at)
                    VALUES (%s, %s, %s, NULL, NOW(), NOW())
                    """,
                    (payload.username, payload.username, user_id),
                )
                cur.execute(f"SELECT {_USER_COLUMNS} {_USER_FROM} WHERE u.id = %s", (user_id,))
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row)

    def get_user(self, user_id: int) -> User | None:
        """Fetch a user by primary key or return ``None``."""
        return self._fetch_one("WHERE u.id = %s", (user_id,))

    def find_by_username(self, username: str) -> User | None:
        return self._fetch_one("WHERE u.username = %s", (username,))

    def find_by_username_or_id(self, name_or_id: str) -> User | None:
        """Match either the username or, for numeric input, the id."""
        user_id = int(name_or_id) if name_or_id.isdigit() else None
        return self._fetch_one(
            "WHERE u.username = %s OR u.id = %s ORDER BY u.id LIMIT 1",
            (name_or_id, user_id),
        )

    def find_for_authentication(self, login: str) -> User | None:
        """Look a user up by username or email, case-insensitively."""
        value = login.lower()
        return self._fetch_one(
            "WHERE lower(u.username) = %s OR lower(u.email) = %s ORDER BY u.id LIMIT 1",
            (value, value),
        )

    def search(self, query: str) -> list[User]:
        pattern = f"%{query}%"
        return self._fetch_all(
            "WHERE u.name LIKE %s OR u.email LIKE %s OR u.username LIKE %s ORDER BY u.id",
            (pattern, pattern, pattern),
        )

    def list_users(self, filter_name: str | None = None) -> list[User]:
        """Return users for one of the admin filters, defaulting to active users."""
        if filter_name == "admins":
            return self._fetch_all("WHERE u.admin = TRUE ORDER BY u.name ASC", ())
        if filter_name == "blocked":
            return self._fetch_all("WHERE u.state = %s ORDER BY u.name ASC", (UserState.blocked.value,))
        if filter_name == "wop":
            return self._fetch_all(
                """
                WHERE u.id NOT IN (SELECT DISTINCT user_id FROM users_projects)
                ORDER BY u.name ASC
                """,
                (),
            )
        return self._fetch_all("WHERE u.state = %s ORDER BY u.name ASC", (UserState.active.value,))

    def namespace_path_exists(self, path: str, *, exclude_owner_id: int | None = None) -> bool:
        """Return ``True`` when any namespace other than the owner's personal one uses ``path``."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT 1
                    FROM namespaces
                    WHERE path = %s
                      AND NOT (type IS NULL AND owner_id IS NOT DISTINCT FROM %s)
                    LIMIT 1
                    """,
                    (path, exclude_owner_id),
                )
                return cur.fetchone() is not None

    def username_taken(self, username: str, *, exclude_user_id: int | None = None) -> bool:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT 1 FROM users WHERE username = %s AND id IS DISTINCT FROM %s LIMIT 1",
                    (username, exclude_user_id),
                )
                return cur.fetchone() is not None

    def update_username(self, user_id: int, username: str) -> None:
        """Rename the user and move its personal namespace path along with it."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE users SET username = %s, updated_at = NOW() WHERE id = %s",
                    (username, user_id),
                )
                cur.execute(
                    """
                    UPDATE namespaces
                    SET name = %s, path = %s, updated_at = NOW()
                    WHERE owner_id = %s AND type IS NULL
                    """,
                    (username, username, user_id),
                )
                conn.commit()

    def count_keys(self, user_id: int) -> int:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("SELECT COUNT(*) FROM keys WHERE user_id = %s", (user_id,))
                return int(cur.fetchone()[0])

    @contextmanager
    def lock_user(self, user_id: int) -> Iterator[LockedUser | None]:
        """Serialize lifecycle events for one user on a single pooled connection.

        Yields ``None`` when the user does not exist. The advisory lock outlives
        the commits made through the yielded handle and is released on exit;
        an uncommitted transaction is rolled back when the block raises.
        """
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("SELECT pg_advisory_lock(%s, %s)", (_USER_LOCK_CLASS, user_id))
                cur.execute("SELECT state FROM users WHERE id = %s", (user_id,))
                row = cur.fetchone()
            conn.commit()
            try:
                if row is None:
                    yield None
                else:
                    yield LockedUser(user_id=user_id, state=UserState(row[0] or "active"), connection=conn)
            except BaseException:
                if not conn.broken:
                    conn.rollback()
                raise
            finally:
                if not conn.broken:
                    with conn.cursor() as cur:
                        cur.execute("SELECT pg_advisory_unlock(%s, %s)", (_USER_LOCK_CLASS, user_id))
                    conn.commit()

    def destroy_user(self, user_id: int) -> bool:
        """Delete the user together with everything it owns personally."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT id FROM namespaces WHERE owner_id = %s AND type IS NULL",
                    (user_id,),
                )
                namespace_row = cur.fetchone()
                if namespace_row is not None:
                    cur.execute(
                        """
                        DELETE FROM users_projects
                        WHERE project_id IN (SELECT id FROM projects WHERE namespace_id = %s)
                        """,
                        (namespace_row[0],),
                    )
                    cur.execute("DELETE FROM projects WHERE namespace_id = %s", (namespace_row[0],))
                    cur.execute("DELETE FROM namespaces WHERE id = %s", (namespace_row[0],))

                cur.execute("DELETE FROM users_projects WHERE user_id = %s", (user_id,))
                cur.execute("DELETE FROM users_groups WHERE user_id = %s", (user_id,))
                cur.execute("DELETE FROM keys WHERE user_id = %s", (user_id,))
                for table in _AUTHORED_TABLES:
                    cur.execute(f"DELETE FROM {table} WHERE author_id = %s", (user_id,))
                for table in _ASSIGNABLE_TABLES:
                    cur.execute(
                        f"UPDATE {table} SET assignee_id = NULL WHERE assignee_id = %s",
                        (user_id,),
                    )
                cur.execute("DELETE FROM users WHERE id = %s RETURNING id", (user_id,))
                deleted = cur.fetchone() is not None
                conn.commit()
        return deleted

    def _fetch_one(self, where_sql: str, params: tuple) -> User | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_USER_COLUMNS} {_USER_FROM} {where_sql}", params)
                row = cur.fetchone()
                if not row:
                    return None
        return self._map_record(row)

    def _fetch_all(self, where_sql: str, params: tuple) -> list[User]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_USER_COLUMNS} {_USER_FROM} {where_sql}", params)
                rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def _map_record(self, row: tuple) -> User:
        """Convert a raw database tuple into the domain ``User`` dataclass."""
        return User(
            id=row[0],
            username=row[1],
            email=row[2],
            name=row[3],
            created_at=row[4],
            state=UserState(row[5] or "active"),
            admin=row[6],
            projects_limit=row[7],
            can_create_group=row[8],
            theme_id=row[9],
            bio=row[10],
            extern_uid=row[11],
            provider=row[12],
            authentication_token=row[13],
            created_by_id=row[14],
            namespace_id=row[15],
        )
