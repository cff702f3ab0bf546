"""Durable records: conversations, messages, memories and preferences."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MemoryKind(StrEnum):
    PROFILE_FACT = "profile-fact"
    PREFERENCE = "preference"
    FACT = "fact"


class PromptMode(StrEnum):
    STANDARD = "standard"
    COMPACT = "compact"
    DEVELOPER = "developer"
    CODER = "coder"


class SearchMode(StrEnum):
    AI = "ai"
    WEB = "web"


class RelatedLink(BaseModel):
    text: str
    url: str


class WebSearchResult(BaseModel):
    """Normalized web-search answer used for grounding."""

    title: str
    summary: str
    source: str
    related: list[RelatedLink] = Field(default_factory=list)


class ExportedDocument(BaseModel):
    """Reference to a document produced by the export service."""

    title: str
    path: str
    size_bytes: int
    created_at: str = Field(default_factory=utc_now)


class Conversation(BaseModel):
    """A chat thread. Deleting it deletes its messages."""

    model_config = ConfigDict(protected_namespaces=())

    id: str = Field(default_factory=new_id)
    title: str
    provider_id: str
    model_id: str
    memory_enabled: bool = True
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.title,
            self.provider_id,
            self.model_id,
            int(self.memory_enabled),
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Conversation:
        return cls(
            id=row[0],
            title=row[1],
            provider_id=row[2],
            model_id=row[3],
            memory_enabled=bool(row[4]),
            created_at=row[5],
            updated_at=row[6],
        )


class Message(BaseModel):
    """One entry in a conversation. Content is frozen once committed."""

    id: str = Field(default_factory=new_id)
    conversation_id: str
    role: Role
    content: str
    created_at: str = Field(default_factory=utc_now)
    web_result: WebSearchResult | None = None
    export: ExportedDocument | None = None

    def to_row(self) -> tuple:
        return (
            self.id,
            self.conversation_id,
            self.role.value,
            self.content,
            self.created_at,
            self.web_result.model_dump_json() if self.web_result else None,
            self.export.model_dump_json() if self.export else None,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Message:
        return cls(
            id=row[0],
            conversation_id=row[1],
            role=Role(row[2]),
            content=row[3],
            created_at=row[4],
            web_result=WebSearchResult.model_validate_json(row[5]) if row[5] else None,
            export=ExportedDocument.model_validate_json(row[6]) if row[6] else None,
        )


class Memory(BaseModel):
    """A user fact referenced when composing system prompts."""

    id: str = Field(default_factory=new_id)
    kind: MemoryKind
    title: str
    content: str
    enabled: bool = True
    created_at: str = Field(default_factory=utc_now)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.kind.value,
            self.title,
            self.content,
            int(self.enabled),
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Memory:
        return cls(
            id=row[0],
            kind=MemoryKind(row[1]),
            title=row[2],
            content=row[3],
            enabled=bool(row[4]),
            created_at=row[5],
        )


class Preferences(BaseModel):
    """Lightweight session settings that follow the user between devices."""

    model_config = ConfigDict(protected_namespaces=())

    provider_id: str | None = None
    model_id: str | None = None
    prompt_mode: PromptMode = PromptMode.STANDARD
    search_mode: SearchMode = SearchMode.AI
    memory_enabled: bool = True
    api_keys: dict[str, str] = Field(default_factory=dict, repr=False)

    def to_rows(self) -> list[tuple[str, str]]:
        """Serialize to ``(key, json)`` pairs for the preferences table."""
        return [(key, json.dumps(value)) for key, value in self.model_dump(mode="json").items()]

    @classmethod
    def from_rows(cls, rows: list[tuple]) -> Preferences:
        data: dict[str, Any] = {row[0]: json.loads(row[1]) for row in rows if row[0] in cls.model_fields}
        return cls.model_validate(data)

    def remote_fields(self) -> dict[str, Any]:
        """Shape used in the remote document: keys split from the rest."""
        data = self.model_dump(mode="json")
        api_keys = data.pop("api_keys")
        return {"preferences": data, "api_keys": api_keys}
