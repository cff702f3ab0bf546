"""Async connection wrapper over libsql for the remote store.

Provides a thin async facade around the synchronous ``libsql`` driver using
``asyncio.to_thread()``. Connection target is determined by settings:

- **Signed-in sync**: ``TURSO_DATABASE_URL`` + ``TURSO_AUTH_TOKEN`` → remote Turso
- **Tests**: ``local_path_override`` → local libSQL file
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import libsql

from nexus.config import settings
from nexus.errors import ConfigurationError

if TYPE_CHECKING:
    from pathlib import Path


class _AsyncCursor:
    """Thin async wrapper around a synchronous libsql cursor."""

    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    async def fetchone(self) -> tuple | None:
        return await asyncio.to_thread(self._cursor.fetchone)

    async def fetchall(self) -> list[tuple]:
        return await asyncio.to_thread(self._cursor.fetchall)

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount


class _AsyncConnection:
    """Thin async wrapper around a synchronous libsql connection."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    async def execute(self, sql: str, params: tuple = ()) -> _AsyncCursor:
        cursor = await asyncio.to_thread(self._conn.execute, sql, params)
        return _AsyncCursor(cursor)

    async def commit(self) -> None:
        await asyncio.to_thread(self._conn.commit)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)


def _open_local(path: str) -> Any:
    """Open a local libsql connection with WAL mode and busy timeout."""
    conn = libsql.connect(path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection(local_path_override: Path | None = None) -> _AsyncConnection:
    """Return an async-wrapped libsql connection to the remote store.

    If *local_path_override* is given (test isolation), it takes priority.
    Otherwise ``TURSO_DATABASE_URL`` must be set.

    Raises:
        ConfigurationError: No remote database is configured.
    """
    if local_path_override:
        local_path_override.parent.mkdir(parents=True, exist_ok=True)
        conn = await asyncio.to_thread(_open_local, str(local_path_override))
        return _AsyncConnection(conn)

    if not settings.remote_sync_configured:
        msg = "TURSO_DATABASE_URL is not configured"
        raise ConfigurationError(msg)

    conn = await asyncio.to_thread(
        libsql.connect,
        database=settings.turso_database_url,
        auth_token=settings.turso_auth_token,
    )
    return _AsyncConnection(conn)
