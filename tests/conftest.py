"""Shared test fixtures."""

import json
from pathlib import Path

import pytest

from nexus.store.local import LocalStore
from nexus.store.persistence import Persistence


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("nexus.config.settings.turso_database_url", "")


@pytest.fixture
def local_store(tmp_path: Path) -> LocalStore:
    """A LocalStore backed by a temp database."""
    return LocalStore(db_path=tmp_path / "nexus.db")


@pytest.fixture
def persistence(local_store: LocalStore) -> Persistence:
    """Local-only persistence (no remote store)."""
    return Persistence(local_store)


def sse_frame(payload: object) -> bytes:
    """Encode one ``data:`` frame the way vendors send it."""
    return f"data: {json.dumps(payload)}\n\n".encode()


def openai_chunk(text: str = "", finish: str | None = None) -> bytes:
    return sse_frame({"choices": [{"delta": {"content": text}, "finish_reason": finish}]})


@pytest.fixture
def openai_stream():
    """Build an OpenAI-dialect SSE body from text pieces."""

    def build(*texts: str, done: bool = True) -> bytes:
        body = b"".join(openai_chunk(t) for t in texts)
        body += openai_chunk(finish="stop")
        if done:
            body += b"data: [DONE]\n\n"
        return body

    return build
