"""Generate a chat title from the first user message using a small model of the chat's provider."""

from __future__ import annotations

import json
import logging
import re

from langchain_core.messages import HumanMessage, SystemMessage

from .config import Settings, get_settings
from .llm import build_model_handle
from .messages import text_of
from .persistence import ConversationStore
from .providers import DEFAULT_PROVIDER, ProviderDescriptor

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"

SYSTEM_PROMPT = """You are a chat title generator. Your sole task is to produce a title based strictly on the user prompt provided.

Entity weighting:
- Highest: unique person names, client names.
- Medium: company names, locations, events.
- Lowest: unique or uncommon terms.

Constraints:
- The title must be 8 to 10 words.
- Only letters, numbers and spaces. No punctuation.
- Capture what is distinctive about the conversation.

Respond with JSON only, on a single line, with the single key "title":
{"title":"<your 8-10 word title>"}"""


def title_model_for(provider: ProviderDescriptor) -> str:
    return provider.default_title_model or DEFAULT_PROVIDER.default_title_model


def parse_title(raw: str) -> str | None:
    raw = re.sub(r"^```(?:json)?\s*|\s*```$", "", raw.strip()).strip()
    if not raw:
        return None
    parsed = json.loads(raw)
    title = parsed.get("title") if isinstance(parsed, dict) else None
    if not isinstance(title, str) or not title.strip():
        return None
    return title.strip()[:100]


async def generate_title(
    query: str,
    provider: ProviderDescriptor,
    api_key: str | None,
    *,
    chat_id: str | None = None,
    store: ConversationStore | None = None,
    settings: Settings | None = None,
) -> str:
    """Ask the provider's title model for a title and persist it.

    Any failure yields the default title.
    """
    resolved = settings or get_settings()
    text = (query or "").strip()
    if not text or not api_key:
        return DEFAULT_TITLE

    try:
        handle = build_model_handle(
            provider,
            title_model_for(provider),
            api_key,
            settings=resolved,
            streaming=False,
        )
        response = await handle.ainvoke([SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=text)])
        title = parse_title(text_of(response.content)) or DEFAULT_TITLE
    except json.JSONDecodeError as e:
        logger.debug("Title model returned invalid JSON: %s", e)
        title = DEFAULT_TITLE
    except Exception as e:
        logger.warning("Title generation failed: %s", e)
        title = DEFAULT_TITLE

    if store is not None and chat_id:
        try:
            await store.update_title(chat_id, title)
        except Exception as e:
            logger.error("Failed to save title for chat %s: %s", chat_id, e)
    return title
