"""Web search grounding via the DuckDuckGo Instant Answer API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from nexus.config import settings
from nexus.store.models import RelatedLink, WebSearchResult

logger = logging.getLogger(__name__)

MAX_RELATED = 5
NO_SUMMARY = (
    "The search query did not yield a direct summary. Rely on internal knowledge "
    "and say so when you do."
)


def _related_topics(topics: list[dict[str, Any]]) -> list[RelatedLink]:
    """Flatten RelatedTopics, including grouped ``Topics`` entries."""
    links: list[RelatedLink] = []
    for topic in topics:
        if topic.get("Text") and topic.get("FirstURL"):
            links.append(RelatedLink(text=topic["Text"], url=topic["FirstURL"]))
        for sub in topic.get("Topics") or []:
            if sub.get("Text") and sub.get("FirstURL"):
                links.append(RelatedLink(text=sub["Text"], url=sub["FirstURL"]))
    return links


def normalize_answer(query: str, data: dict[str, Any]) -> WebSearchResult:
    related = _related_topics(data.get("RelatedTopics") or [])
    summary = data.get("Answer") or data.get("Abstract") or data.get("AbstractText") or ""
    if not summary:
        summary = related[0].text if related else NO_SUMMARY
    if data.get("AbstractSource"):
        source = data["AbstractSource"]
    elif data.get("Answer"):
        source = "DuckDuckGo Answer"
    else:
        source = "DuckDuckGo"
    return WebSearchResult(
        title=data.get("Heading") or query,
        summary=summary,
        source=source,
        related=related[:MAX_RELATED],
    )


def unavailable_result() -> WebSearchResult:
    return WebSearchResult(
        title="Search unavailable",
        summary="The web search tool could not be reached.",
        source="System",
    )


async def search_web(query: str, *, client: httpx.AsyncClient | None = None) -> WebSearchResult:
    """Look up *query* and normalize the answer. Never raises."""
    params = {
        "q": query,
        "format": "json",
        "no_redirect": "1",
        "no_html": "1",
        "t": settings.app_title.lower(),
    }
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=20) as own_client:
                resp = await own_client.get(settings.web_search_url, params=params)
        else:
            resp = await client.get(settings.web_search_url, params=params)

        if resp.status_code != 200:
            logger.warning("Web search returned %s for %r", resp.status_code, query)
            return unavailable_result()

        data = resp.json()
    except (httpx.HTTPError, ValueError):
        logger.exception("Web search request failed")
        return unavailable_result()

    if not isinstance(data, dict):
        return unavailable_result()
    return normalize_answer(query, data)
