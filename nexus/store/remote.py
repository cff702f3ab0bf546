"""Remote document store keyed by user identity.

The remote side holds one document per user with four top-level fields:
``preferences``, ``api_keys``, ``chats`` and ``memories``. A merge-write
replaces only the fields it names, so preference pushes and collection
pushes never clobber each other.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

from nexus.db import get_connection
from nexus.errors import SyncError
from nexus.store.models import utc_now

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

DOCUMENT_FIELDS = ("preferences", "api_keys", "chats", "memories")

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS user_documents (
    user_id TEXT NOT NULL,
    field TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, field)
)
"""


class RemoteStore(Protocol):
    """Document-shaped get/merge-write keyed by user id."""

    async def load(self, user_id: str) -> dict[str, Any] | None:
        """Return the user's document, or None if nothing was ever written."""
        ...

    async def merge(self, user_id: str, fields: dict[str, Any]) -> None:
        """Overwrite the named top-level fields, leaving the others alone."""
        ...


class LibsqlRemoteStore:
    """RemoteStore backed by a libSQL/Turso table, one row per document field."""

    def __init__(self, local_path_override: Path | None = None) -> None:
        self._local_path_override = local_path_override
        self._initialised = False

    async def _connect(self):
        conn = await get_connection(local_path_override=self._local_path_override)
        if not self._initialised:
            await conn.execute(_CREATE_TABLE)
            await conn.commit()
            self._initialised = True
        return conn

    async def load(self, user_id: str) -> dict[str, Any] | None:
        try:
            conn = await self._connect()
            try:
                cursor = await conn.execute(
                    "SELECT field, value FROM user_documents WHERE user_id = ?", (user_id,)
                )
                rows = await cursor.fetchall()
            finally:
                await conn.close()
        except Exception as exc:
            msg = f"Failed to load remote document: {exc}"
            raise SyncError(msg) from exc

        if not rows:
            logger.info("No remote document for user %s", user_id)
            return None
        return {field: json.loads(value) for field, value in rows}

    async def merge(self, user_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - set(DOCUMENT_FIELDS)
        if unknown:
            msg = f"Unknown document fields: {sorted(unknown)}"
            raise ValueError(msg)

        now = utc_now()
        try:
            conn = await self._connect()
            try:
                for field, value in fields.items():
                    await conn.execute(
                        """
                        INSERT INTO user_documents (user_id, field, value, updated_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(user_id, field) DO UPDATE SET
                            value = excluded.value,
                            updated_at = excluded.updated_at
                        """,
                        (user_id, field, json.dumps(value), now),
                    )
                await conn.commit()
            finally:
                await conn.close()
        except Exception as exc:
            msg = f"Failed to write remote document: {exc}"
            raise SyncError(msg) from exc

        logger.debug("Remote merge for %s: %s", user_id, ", ".join(fields))
