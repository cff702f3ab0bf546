"""Incremental ``text/event-stream`` decoder.

Turns an async byte stream into ``Token`` values using a per-dialect
extraction function. Bytes are decoded with a stateful UTF-8 decoder so
multi-byte characters split across network chunks come out intact, and
lines are reassembled across chunk boundaries. Tokens are yielded in the
order their frames arrive; nothing is buffered beyond the current line.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from nexus.errors import DecodeError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class Token:
    """One decoded unit of assistant output."""

    text: str
    terminal: bool = False


# Maps one parsed JSON frame to zero or one token.
Dialect = Callable[[Any], "Token | None"]


def dig(data: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists, returning None as soon as a step is missing."""
    current = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
        if current is None:
            return None
    return current


def parse_frame(line: str) -> Any | None:
    """Return the JSON payload of a ``data:`` line, or None for lines to skip.

    Raises:
        DecodeError: The payload is not valid JSON.
    """
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):].strip()
    if not payload or payload == DONE_SENTINEL:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        msg = f"Malformed SSE frame: {payload[:80]!r}"
        raise DecodeError(msg) from exc


def _decode_line(line: str, dialect: Dialect) -> Token | None:
    line = line.rstrip("\r")
    try:
        data = parse_frame(line)
    except DecodeError as exc:
        logger.debug("Skipping frame: %s", exc)
        return None
    if data is None:
        return None
    return dialect(data)


async def decode_sse(chunks: AsyncIterable[bytes], dialect: Dialect) -> AsyncIterator[Token]:
    """Decode an SSE byte stream into tokens.

    The sequence ends when the byte stream ends or a terminal token has
    been yielded. A malformed frame only drops that frame.

    Args:
        chunks: Raw response bytes, in arbitrary chunk sizes.
        dialect: Extracts a token from one parsed JSON frame.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            token = _decode_line(line, dialect)
            if token is None:
                continue
            yield token
            if token.terminal:
                return

    buffer += decoder.decode(b"", final=True)
    if buffer:
        token = _decode_line(buffer, dialect)
        if token is not None:
            yield token
