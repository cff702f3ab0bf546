from nexus.store.local import LocalStore
from nexus.store.models import (
    Conversation,
    ExportedDocument,
    Memory,
    MemoryKind,
    Message,
    Preferences,
    PromptMode,
    RelatedLink,
    Role,
    SearchMode,
    WebSearchResult,
)
from nexus.store.persistence import Persistence
from nexus.store.remote import LibsqlRemoteStore, RemoteStore
from nexus.store.sync import Debouncer, MergeResult, SyncReconciler

__all__ = [
    "Conversation",
    "Debouncer",
    "ExportedDocument",
    "LibsqlRemoteStore",
    "LocalStore",
    "Memory",
    "MemoryKind",
    "MergeResult",
    "Message",
    "Persistence",
    "Preferences",
    "PromptMode",
    "RelatedLink",
    "RemoteStore",
    "Role",
    "SearchMode",
    "SyncReconciler",
    "WebSearchResult",
]
