"""Client-visible stream events and the translator from LangGraph events."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .cost import CostAccountingSink, UsageStore
from .messages import text_of
from .tools import IMAGE_GENERATION_TOOL, WEB_SEARCH_TOOL

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    WEB_SEARCH_START = "web-search-start"
    IMAGE_GENERATION_START = "image-generation-start"
    IMAGE_GENERATION_RESULT = "image-generation-result"
    CITATION_LIST = "citation-list"
    AGENT_ENABLED = "agent-enabled"
    RAG_ENABLED = "rag-enabled"
    RAG_DISABLED = "rag-disabled"
    RESPONSE_DONE = "response-done"
    RESPONSE_ERROR = "response-error"


# Tools with user-facing copy; other tools start silently
TOOL_START_COPY: dict[str, tuple[EventKind, str]] = {
    WEB_SEARCH_TOOL: (EventKind.WEB_SEARCH_START, "Searching the web..."),
    IMAGE_GENERATION_TOOL: (EventKind.IMAGE_GENERATION_START, "Generating image..."),
}
TOOL_RESULT_KINDS: dict[str, EventKind] = {
    IMAGE_GENERATION_TOOL: EventKind.IMAGE_GENERATION_RESULT,
}


class StreamEvent:
    """Base for every event of a request's outbound stream."""

    def to_wire(self) -> dict[str, Any] | None:
        raise NotImplementedError


@dataclass(frozen=True)
class Token(StreamEvent):
    text: str

    def to_wire(self) -> dict[str, Any]:
        return {"chunk": self.text}


@dataclass(frozen=True)
class ToolStarted(StreamEvent):
    name: str
    kind: EventKind
    message: str

    def to_wire(self) -> dict[str, Any]:
        return {"event": self.kind.value, "chunk": self.message}


@dataclass(frozen=True)
class ToolFinished(StreamEvent):
    name: str
    output: str
    kind: EventKind | None = None

    def to_wire(self) -> dict[str, Any] | None:
        if self.kind is None:
            return None
        return {"event": self.kind.value, "chunk": self.output}


@dataclass(frozen=True)
class Citation(StreamEvent):
    citations: list[Any] = field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        return {"event": EventKind.CITATION_LIST.value, "chunk": self.citations}


@dataclass(frozen=True)
class Notice(StreamEvent):
    """agent-enabled, rag-enabled and rag-disabled notifications."""

    kind: EventKind
    message: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {"event": self.kind.value, "chunk": self.message}


@dataclass(frozen=True)
class Done(StreamEvent):
    text: str

    def to_wire(self) -> dict[str, Any]:
        return {"event": EventKind.RESPONSE_DONE.value, "chunk": self.text}


@dataclass(frozen=True)
class Error(StreamEvent):
    kind: str
    message: str

    def to_wire(self) -> dict[str, Any]:
        return {"event": EventKind.RESPONSE_ERROR.value, "chunk": self.message}


def parse_citations(output: Any) -> list[Any] | None:
    """Return the list when a tool output is a JSON array, else None."""
    if isinstance(output, list):
        return output
    if not isinstance(output, str):
        return None
    stripped = output.strip()
    if not stripped.startswith("["):
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, list) else None


def _tool_output_text(output: Any) -> Any:
    # Tools invoked with a ToolCall return a ToolMessage
    content = getattr(output, "content", output)
    return content


class EventTranslator:
    """Maps ``astream_events(version="v2")`` events of one request to StreamEvents.

    Model text is accumulated for the final Done event. At each model end the
    sink's pending usage is flushed to the store.
    """

    def __init__(
        self,
        sink: CostAccountingSink | None = None,
        store: UsageStore | None = None,
        thread_id: str | None = None,
    ) -> None:
        self.sink = sink
        self.store = store
        self.thread_id = thread_id
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    async def translate(self, event: dict[str, Any]) -> list[StreamEvent]:
        kind = event.get("event")
        name = event.get("name", "")
        data = event.get("data") or {}

        if kind == "on_chat_model_stream":
            chunk = data.get("chunk")
            token = text_of(getattr(chunk, "content", ""))
            if not token:
                return []
            self._parts.append(token)
            return [Token(token)]

        if kind == "on_tool_start":
            copy = TOOL_START_COPY.get(name)
            if copy is None:
                return []
            logger.info("[STREAM] Tool started: %s", name)
            return [ToolStarted(name, *copy)]

        if kind == "on_tool_end":
            output = _tool_output_text(data.get("output"))
            events: list[StreamEvent] = []
            citations = parse_citations(output)
            text = output if isinstance(output, str) else json.dumps(output, ensure_ascii=False, default=str)
            events.append(ToolFinished(name, text, TOOL_RESULT_KINDS.get(name)))
            if citations is not None:
                events.append(Citation(citations))
            return events

        if kind == "on_chat_model_end":
            if self.sink is not None:
                await self.sink.flush(self.store, self.thread_id)
            return []

        return []

    def finish(self) -> Done:
        return Done(self.text)
