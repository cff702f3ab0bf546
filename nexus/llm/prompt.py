"""System prompt assembly: persona, identity, web grounding and user memory."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from urllib.parse import urlparse

from nexus.store.models import Memory, PromptMode, WebSearchResult

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent.parent.parent / "config"

DEFAULT_PERSONA = "You are Nexus AI, a helpful assistant. Never invent dates or official information."
DEFAULT_ENHANCER = (
    "Rewrite the user's input as a clearer, more specific prompt that keeps its intent. "
    "Do not answer it. Output only the improved prompt text."
)

_AUTHORITATIVE_HOST = re.compile(r"(?:^|\.)(?:gov|edu|nic|mil|ac|int)(?:\.[a-z]{2})?$", re.IGNORECASE)
_OFFICIAL_QUERY = re.compile(
    r"\b(exam|timetable|result|schedule|notification|board|date|class-12|rbse|cbse|ssc|hsc)\b",
    re.IGNORECASE,
)


def _read_config(filename: str) -> str:
    """Read a config markdown file, returning empty string if missing."""
    path = CONFIG_DIR / filename
    if path.exists():
        return path.read_text(encoding="utf-8").strip()
    return ""


def persona(mode: PromptMode | str) -> str:
    text = _read_config(f"prompts/{PromptMode(mode).value}.md")
    if not text:
        logger.debug("No persona file for mode %s, using default", mode)
        return DEFAULT_PERSONA
    return text


def enhancer_prompt() -> str:
    return _read_config("prompts/enhance.md") or DEFAULT_ENHANCER


def identity_line(model_name: str, model_id: str, provider_name: str) -> str:
    return (
        f"You are currently running as {model_name} ({model_id}) served by {provider_name}. "
        "If asked which model you are, answer with exactly this."
    )


def is_authoritative(url: str) -> bool:
    """True for hosts under a government or institutional domain (gov, edu, nic, ...)."""
    host = urlparse(url).hostname or ""
    return bool(_AUTHORITATIVE_HOST.search(host))


def format_grounding(query: str, result: WebSearchResult, *, year: int | None = None) -> str:
    """Render a search result as grounding context with source-trust tags."""
    year = year or datetime.now().year
    lines = [
        f'CRITICAL GROUNDING CONTEXT for "{query}":',
        f"SEARCH SUMMARY: {result.summary}",
    ]
    if result.related:
        lines.append("")
        lines.append("SOURCE LIST:")
        for link in result.related[:5]:
            tag = "AUTHORITATIVE" if is_authoritative(link.url) else "THIRD-PARTY"
            lines.append(f"- [{tag}] {link.text}: {link.url}")

    lines.append("")
    lines.append("STRICT INSTRUCTIONS FOR OFFICIAL DATA:")
    if _OFFICIAL_QUERY.search(query):
        lines.extend(
            [
                "1. This query asks for OFFICIAL DATA (dates, results, schedules).",
                "2. RULE: You may ONLY state dates that a source tagged [AUTHORITATIVE] "
                "or a known official board website confirms.",
                f"3. RULE: If no [AUTHORITATIVE] source confirms the {year} dates, you MUST answer with: "
                f'"The [Official Body] has not yet released the official [Item] for {year}. '
                'Based on previous years, it is usually published around [Month], but no dates are confirmed yet."',
                '4. FORBIDDEN: Do not repeat "tentative" or "expected" dates from THIRD-PARTY sites.',
                "5. Do not invent timetables or days of the week.",
            ]
        )
    else:
        lines.append(
            "Use the information above as grounding context. If it is insufficient, rely on your "
            "own knowledge but never state unverified facts as certainty."
        )
    return "\n".join(lines)


def format_memories(memories: list[Memory]) -> str:
    enabled = [m for m in memories if m.enabled]
    if not enabled:
        return ""
    lines = ["## User Memory", "Use this information to personalize responses:"]
    lines.extend(f"- {m.title}: {m.content}" for m in enabled)
    return "\n".join(lines)


def build_system_prompt(
    mode: PromptMode | str,
    *,
    model_name: str,
    model_id: str,
    provider_name: str,
    grounding: tuple[str, WebSearchResult] | None = None,
    memories: list[Memory] | None = None,
) -> str:
    """Assemble the system prompt for one turn.

    Args:
        mode: Prompt mode selecting the persona file.
        model_name: Display name of the active model.
        model_id: Vendor id of the active model.
        provider_name: Display name of the active provider.
        grounding: ``(query, result)`` when web grounding is on.
        memories: Memories to list; pass None when memory is off.

    Returns:
        Sections joined by blank lines, in order: persona, identity,
        grounding, memory.
    """
    sections = [persona(mode), identity_line(model_name, model_id, provider_name)]
    if grounding is not None:
        sections.append(format_grounding(*grounding))
    if memories:
        block = format_memories(memories)
        if block:
            sections.append(block)
    return "\n\n".join(sections)
