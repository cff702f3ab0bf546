"""Phrase matching for memory capture and document export.

Pure functions from user text to a tagged result. The orchestrator decides
what to do with a match; nothing here touches storage or the network.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from nexus.store.models import MemoryKind


@dataclass(frozen=True)
class NoMatch:
    pass


@dataclass(frozen=True)
class MemoryCapture:
    title: str
    content: str
    kind: MemoryKind


@dataclass(frozen=True)
class ExportIntent:
    pass


Intent = NoMatch | MemoryCapture | ExportIntent

NO_MATCH = NoMatch()

_I = re.IGNORECASE

_MEMORY_TRIGGERS = [
    re.compile(r"\b(save|remember|store|keep|note|memorize)\s+(this|that|it)\b", _I),
    re.compile(r"\b(save|store|put|add|keep)\s+(this\s+)?(in|to)\s+(your\s+)?memory\b", _I),
    re.compile(r"\bmemorize\b", _I),
    re.compile(r"\bmy\s+name\s+is\s+\w+", _I),
    re.compile(r"\bcall\s+me\s+\w+", _I),
    re.compile(r"\bremember\s+that\s+.+", _I),
    re.compile(r"\bsave\s+.+\s+to\s+memory", _I),
    re.compile(r"\bdon'?t\s+forget\b", _I),
    re.compile(r"\bkeep\s+in\s+mind\b", _I),
    re.compile(r"\bplease\s+(save|remember|store|memorize)\b", _I),
    re.compile(r",?\s*(save|remember|memorize|store)\s+it\s*[.!]?\s*$", _I),
]

_NAME = [
    re.compile(r"\bmy\s+name\s+is\s+(\w+)", _I),
    re.compile(r"\bcall\s+me\s+(\w+)", _I),
]
_PREFERENCE = re.compile(
    r"\b(?:remember|don'?t\s+forget|keep\s+in\s+mind)\s+(?:that\s+)?"
    r"(i\s+(?:prefer|like|love|hate|dislike|enjoy|want)\s+.+)",
    _I,
)
_REMEMBER_THAT = re.compile(r"\b(?:remember|don'?t\s+forget)\s+that\s+(.+)", _I)
_COLON = re.compile(
    r"\b(?:save|store|remember|memorize)\s*(?:this|that|it)?\s*"
    r"(?:in\s+(?:your\s+)?memory)?\s*[:\-]\s*(.+)",
    _I,
)
_BEFORE_SAVE = re.compile(
    r"^(.+?)[,;]\s*(?:save|remember|store|memorize)\s+(?:this|that|it)\s*[.!]?\s*$", _I
)
_GENERIC_SAVE = re.compile(
    r"^(.+?)[\s,]*(?:save|remember|store|memorize)\s*(?:this|that|it)?"
    r"(?:\s+(?:in|to)\s+(?:your\s+)?memory)?\s*[.!]?\s*$",
    _I,
)
_SUBJECT = re.compile(r"^(?:my\s+)?(\w+(?:\s+\w+)?)\s+(?:is|are)\s+", _I)
_FILLER = re.compile(r"^(?:please|kindly|pls|can you|could you|will you)$", _I)
# A clause that stops on one of these is leading into the trigger verb, not stating a fact.
_DANGLING = re.compile(
    r"(?:\b(?:to|gonna|wanna|gotta|will|would|can|could|should|shall|must|might|"
    r"let\s+me|let'?s|i|i'm|you|we|they|not|dont|cant|wont)|'ll|n't)$",
    _I,
)

_EXPORT_TRIGGERS = [
    re.compile(r"\b(export|save|download|convert)\b.*\b(as|to|into)\s+(an?\s+)?pdf\b", _I),
    re.compile(r"\bdownload\s+(this|that|it)\b", _I),
    re.compile(r"\b(make|generate|create)\s+(an?\s+)?pdf\b", _I),
]


def _clean(value: str) -> str:
    return re.sub(r"[.!,\s]+$", "", value).strip()


def _title_from(value: str) -> str:
    match = _SUBJECT.match(value)
    if not match:
        return "Note"
    subject = match.group(1)
    return subject[0].upper() + subject[1:]


def _extract(text: str) -> MemoryCapture | None:
    for pattern in _NAME:
        match = pattern.search(text)
        if match:
            return MemoryCapture("Name", match.group(1), MemoryKind.PROFILE_FACT)

    match = _PREFERENCE.search(text)
    if match:
        return MemoryCapture("Preference", _clean(match.group(1)), MemoryKind.PREFERENCE)

    match = _REMEMBER_THAT.search(text)
    if match and _clean(match.group(1)):
        return MemoryCapture("Fact", _clean(match.group(1)), MemoryKind.FACT)

    match = _COLON.search(text)
    if match and _clean(match.group(1)):
        return MemoryCapture("Note", _clean(match.group(1)), MemoryKind.FACT)

    match = _BEFORE_SAVE.match(text)
    if match and match.group(1).strip():
        value = match.group(1).strip()
        return MemoryCapture(_title_from(value), value, MemoryKind.FACT)

    match = _GENERIC_SAVE.match(text)
    if match:
        value = re.sub(r"[,;]\s*$", "", match.group(1).strip())
        if len(value) > 2 and not _FILLER.match(value) and not _DANGLING.search(value):
            return MemoryCapture(_title_from(value), value, MemoryKind.FACT)

    return None


def match_memory_capture(text: str) -> MemoryCapture | NoMatch:
    """Return the memory a message asks to be saved, if any.

    A trigger phrase with nothing worth saving ("remember this.") is a
    ``NoMatch``: the message names no content of its own.
    """
    text = text.strip()
    if not any(pattern.search(text) for pattern in _MEMORY_TRIGGERS):
        return NO_MATCH
    return _extract(text) or NO_MATCH


def match_export_intent(text: str) -> ExportIntent | NoMatch:
    if any(pattern.search(text) for pattern in _EXPORT_TRIGGERS):
        return ExportIntent()
    return NO_MATCH


def detect_intent(text: str) -> Intent:
    """First matching intent, memory capture taking precedence over export."""
    memory = match_memory_capture(text)
    if isinstance(memory, MemoryCapture):
        return memory
    return match_export_intent(text)
