"""Persistence facade: local writes first, remote sync scheduled afterwards."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from nexus.store.local import LocalStore
from nexus.store.sync import MergeResult, SyncReconciler

if TYPE_CHECKING:
    from nexus.store.models import (
        Conversation,
        ExportedDocument,
        Memory,
        Message,
        Preferences,
    )
    from nexus.store.remote import RemoteStore

logger = logging.getLogger(__name__)


class Persistence:
    """The only storage API the orchestrator talks to.

    Every mutation is committed to the local store before the call returns.
    While a user is signed in, chat/message/memory mutations restart the
    slow collection queue and preference mutations restart the fast one.
    Without a remote store the facade is purely local.
    """

    def __init__(
        self,
        local: LocalStore | None = None,
        remote: RemoteStore | None = None,
        *,
        reconciler: SyncReconciler | None = None,
    ) -> None:
        self.local = local or LocalStore()
        if reconciler is None and remote is not None:
            reconciler = SyncReconciler(self.local, remote)
        self.sync = reconciler

    # -- Identity --------------------------------------------------------------

    @property
    def signed_in_user(self) -> str | None:
        return self.sync.user_id if self.sync else None

    async def sign_in(self, user_id: str) -> MergeResult | None:
        if self.sync is None:
            logger.warning("Sign-in requested but no remote store is configured")
            return None
        return await self.sync.sign_in(user_id)

    async def sign_out(self) -> None:
        if self.sync is not None:
            await self.sync.sign_out()

    async def flush(self) -> None:
        if self.sync is not None:
            await self.sync.flush()

    def _collections_changed(self) -> None:
        if self.sync is not None:
            self.sync.collections_changed()

    def _preferences_changed(self) -> None:
        if self.sync is not None:
            self.sync.preferences_changed()

    # -- Conversations ---------------------------------------------------------

    async def commit_conversation(self, chat: Conversation) -> Conversation:
        await self.local.save_chat(chat)
        self._collections_changed()
        return chat

    async def get_conversation(self, chat_id: str) -> Conversation | None:
        return await self.local.get_chat(chat_id)

    async def list_conversations(self) -> list[Conversation]:
        return await self.local.list_chats()

    async def delete_conversation(self, chat_id: str) -> bool:
        deleted = await self.local.delete_chat(chat_id)
        if deleted:
            self._collections_changed()
        return deleted

    # -- Messages --------------------------------------------------------------

    async def commit_message(self, message: Message) -> Message:
        await self.local.add_message(message)
        self._collections_changed()
        return message

    async def list_messages(self, chat_id: str) -> list[Message]:
        return await self.local.list_messages(chat_id)

    async def attach_export(self, message_id: str, export: ExportedDocument) -> bool:
        return await self.local.attach_export(message_id, export)

    # -- Memories --------------------------------------------------------------

    async def commit_memory(self, memory: Memory) -> Memory:
        await self.local.save_memory(memory)
        self._collections_changed()
        return memory

    async def list_memories(self, *, enabled_only: bool = False) -> list[Memory]:
        return await self.local.list_memories(enabled_only=enabled_only)

    async def get_memory(self, memory_id: str) -> Memory | None:
        return await self.local.get_memory(memory_id)

    async def set_memory_enabled(self, memory_id: str, enabled: bool) -> bool:
        updated = await self.local.set_memory_enabled(memory_id, enabled)
        if updated:
            self._collections_changed()
        return updated

    async def delete_memory(self, memory_id: str) -> bool:
        deleted = await self.local.delete_memory(memory_id)
        if deleted:
            self._collections_changed()
        return deleted

    # -- Preferences -----------------------------------------------------------

    async def load_preferences(self) -> Preferences:
        return await self.local.load_preferences()

    async def save_preferences(self, preferences: Preferences) -> Preferences:
        await self.local.save_preferences(preferences)
        self._preferences_changed()
        return preferences

    async def save_credential(self, provider_id: str, secret: str) -> Preferences:
        """Store an API key for *provider_id*; an empty secret removes it."""
        prefs = await self.local.load_preferences()
        keys = dict(prefs.api_keys)
        if secret:
            keys[provider_id] = secret
        else:
            keys.pop(provider_id, None)
        prefs = prefs.model_copy(update={"api_keys": keys})
        await self.save_preferences(prefs)
        logger.info("Credential for %s %s", provider_id, "saved" if secret else "removed")
        return prefs
