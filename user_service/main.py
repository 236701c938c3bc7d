"""Process wiring for the user service."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from psycopg_pool import ConnectionPool

from .config import Settings, configure_logging, get_settings
from .domain.service import UserService
from .memberships import MembershipIndex
from .repository import UserRepository


@contextmanager
def open_service(settings: Settings | None = None) -> Iterator[UserService]:
    """Initialise shared resources (Postgres pool, service) for the process lifecycle."""
    settings = settings or get_settings()
    configure_logging(settings)
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    try:
        yield UserService(UserRepository(pool), MembershipIndex(pool), settings=settings)
    finally:
        pool.close()
