"""Debounced reconciliation between the local store and the remote store.

Two independent timer-backed queues push local state upward while a user
is signed in: a fast one for small, frequently-changing preferences and a
slow one for the chat and memory collections. Each new change restarts its
queue's timer, so a burst of mutations becomes a single remote write.
Remote failures are logged and picked up by the next cycle; they never
reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from nexus.config import settings
from nexus.errors import PersistenceError, SyncError
from nexus.store.models import Conversation, Memory, Preferences

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from nexus.store.local import LocalStore
    from nexus.store.remote import RemoteStore

logger = logging.getLogger(__name__)


class Debouncer:
    """Coalesces rapid triggers into one delayed call of *action*.

    ``trigger()`` (re)starts the timer. When it fires, the action runs in
    the background; a trigger arriving while the action is running starts
    a fresh timer instead of interrupting it.
    """

    def __init__(self, name: str, delay: float, action: Callable[[], Awaitable[None]]) -> None:
        self.name = name
        self.delay = delay
        self._action = action
        self._timer: asyncio.Task[None] | None = None
        self._running: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> bool:
        """True while a timer is waiting to fire."""
        return self._timer is not None and not self._timer.done()

    def trigger(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.ensure_future(self._wait_then_fire())

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def flush(self) -> None:
        """Fire now if a timer is pending, and wait for in-flight runs."""
        if self.pending:
            self.cancel()
            await self._fire()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)

    async def _wait_then_fire(self) -> None:
        await asyncio.sleep(self.delay)
        # Detach before running so a new trigger does not cancel this push.
        self._timer = None
        task = asyncio.ensure_future(self._fire())
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _fire(self) -> None:
        try:
            await self._action()
        except SyncError as exc:
            logger.warning("%s sync failed, will retry on next change: %s", self.name, exc)
        except Exception:
            logger.exception("%s sync failed unexpectedly", self.name)


@dataclass
class MergeResult:
    """What a sign-in merge did."""

    remote_found: bool
    chats_from_remote: bool = False
    memories_from_remote: bool = False


class SyncReconciler:
    """Keeps a signed-in user's remote document in step with the local store."""

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        *,
        preference_delay: float | None = None,
        collection_delay: float | None = None,
    ) -> None:
        self._local = local
        self._remote = remote
        self._user_id: str | None = None
        self._merged = False
        self._preferences = Debouncer(
            "preferences",
            settings.preference_sync_debounce_seconds if preference_delay is None else preference_delay,
            self.push_preferences,
        )
        self._collections = Debouncer(
            "collections",
            settings.collection_sync_debounce_seconds if collection_delay is None else collection_delay,
            self.push_collections,
        )

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def active(self) -> bool:
        """True once a user is signed in and the initial merge succeeded."""
        return self._user_id is not None and self._merged

    # -- Sign in / out ---------------------------------------------------------

    async def sign_in(self, user_id: str) -> MergeResult:
        """Merge the remote document into the local store, remote winning where present.

        Preferences: each remote field that is set overrides the local one.
        Chats and memories: a non-empty remote collection replaces the local
        one wholesale; an empty one keeps local and schedules it for upload.

        Raises:
            PersistenceError: Applying the merge to the local store failed.
        """
        self._user_id = user_id
        self._merged = False
        try:
            document = await self._remote.load(user_id)
        except SyncError as exc:
            # Without the remote snapshot a push could overwrite newer remote data.
            logger.warning("Remote load failed for %s; sync paused until next sign-in: %s", user_id, exc)
            return MergeResult(remote_found=False)

        document = document or {}
        result = MergeResult(remote_found=bool(document))

        local_prefs = await self._local.load_preferences()
        await self._local.save_preferences(_merge_preferences(local_prefs, document))

        remote_chats = [Conversation.model_validate(c) for c in document.get("chats") or []]
        if remote_chats:
            await self._local.replace_chats(remote_chats)
            result.chats_from_remote = True

        remote_memories = [Memory.model_validate(m) for m in document.get("memories") or []]
        if remote_memories:
            await self._local.replace_memories(remote_memories)
            result.memories_from_remote = True

        self._merged = True
        logger.info(
            "Signed in %s (remote document: %s, chats from remote: %s, memories from remote: %s)",
            user_id,
            result.remote_found,
            result.chats_from_remote,
            result.memories_from_remote,
        )

        self._preferences.trigger()
        if not (result.chats_from_remote and result.memories_from_remote):
            self._collections.trigger()
        return result

    async def sign_out(self) -> None:
        """Push anything pending, then stop syncing."""
        await self.flush()
        self._preferences.cancel()
        self._collections.cancel()
        logger.info("Signed out %s", self._user_id)
        self._user_id = None
        self._merged = False

    # -- Change notifications --------------------------------------------------

    def preferences_changed(self) -> None:
        if self.active:
            self._preferences.trigger()

    def collections_changed(self) -> None:
        if self.active:
            self._collections.trigger()

    async def flush(self) -> None:
        """Run both queues now instead of waiting for their timers."""
        await self._preferences.flush()
        await self._collections.flush()

    # -- Pushes ----------------------------------------------------------------

    async def push_preferences(self) -> None:
        if not self.active:
            return
        try:
            prefs = await self._local.load_preferences()
        except PersistenceError as exc:
            raise SyncError(str(exc)) from exc
        await self._remote.merge(self._user_id, prefs.remote_fields())
        logger.debug("Pushed preferences for %s", self._user_id)

    async def push_collections(self) -> None:
        if not self.active:
            return
        try:
            chats = await self._local.list_chats()
            memories = await self._local.list_memories()
        except PersistenceError as exc:
            raise SyncError(str(exc)) from exc
        await self._remote.merge(
            self._user_id,
            {
                "chats": [chat.model_dump(mode="json") for chat in chats],
                "memories": [memory.model_dump(mode="json") for memory in memories],
            },
        )
        logger.debug("Pushed %d chats and %d memories for %s", len(chats), len(memories), self._user_id)


def _merge_preferences(local: Preferences, document: dict[str, Any]) -> Preferences:
    """Remote values win when present; absent or null ones fall back to local."""
    merged = local.model_dump(mode="json")
    remote = document.get("preferences") or {}
    for key, value in remote.items():
        if key in merged and key != "api_keys" and value is not None:
            merged[key] = value
    if document.get("api_keys"):
        merged["api_keys"] = document["api_keys"]
    return Preferences.model_validate(merged)
