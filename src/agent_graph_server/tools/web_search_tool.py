"""Web search through a SearxNG instance."""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any

import httpx
from langchain_core.tools import InjectedToolArg, tool

from ..config import get_settings

logger = logging.getLogger(__name__)

NO_RESULTS = "No good search result found"


def _to_citation(result: dict[str, Any]) -> dict[str, Any]:
    return {
        "title": result.get("title", ""),
        "link": result.get("url", ""),
        "snippet": (result.get("content") or "")[:500],
        "engine": result.get("engine"),
    }


@tool
async def web_search(
    query: str,
    agent_context: Annotated[dict | None, InjectedToolArg] = None,
) -> str:
    """Retrieve accurate, up-to-date information from the internet.

    Use this tool when the query involves real-time events, live updates, current
    data or time-sensitive information: ongoing news, stock prices, weather, sports
    results, business hours, event schedules, or when the user explicitly asks for
    the latest information.

    When presenting results, write an engaging summary rather than a bare list:
    lead with a clear introduction, give each item detailed context from the
    snippets, attribute sources with links, and offer to dig deeper.

    Args:
        query: The search query.

    Returns:
        JSON list of results, each with title, link and snippet.
    """
    settings = get_settings()
    endpoint = f"{settings.searxng_api_url.rstrip('/')}/search"
    params = {"q": query.strip(), "format": "json"}

    async with httpx.AsyncClient(timeout=settings.tool_timeout_seconds) as client:
        response = await client.get(endpoint, params=params)
    response.raise_for_status()

    results = response.json().get("results", [])[: settings.searxng_max_results]
    logger.info("[TOOLS] web_search %r returned %d result(s)", query[:80], len(results))
    if not results:
        return NO_RESULTS
    return json.dumps([_to_citation(r) for r in results], ensure_ascii=False)
