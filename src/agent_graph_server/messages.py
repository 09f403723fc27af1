"""Message roles and conversions between stored envelopes and LangChain messages."""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from .schemas import MessageEnvelope


class MessageRole(str, Enum):
    SYSTEM = "system"
    HUMAN = "human"
    AI = "ai"
    TOOL = "tool"


_ROLE_BY_CLASS: tuple[tuple[type[BaseMessage], MessageRole], ...] = (
    (SystemMessage, MessageRole.SYSTEM),
    (HumanMessage, MessageRole.HUMAN),
    (AIMessage, MessageRole.AI),
    (ToolMessage, MessageRole.TOOL),
)


def role_of(message: BaseMessage) -> MessageRole:
    """Return the role tag of a message from its class."""
    for cls, role in _ROLE_BY_CLASS:
        if isinstance(message, cls):
            return role
    raise TypeError(f"Unsupported message type: {type(message).__name__}")


def is_system(message: BaseMessage) -> bool:
    return role_of(message) is MessageRole.SYSTEM


def text_of(content: Any) -> str:
    """Extract text from message content (string or list of segments)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return ""


def from_envelope(envelope: MessageEnvelope) -> BaseMessage:
    if envelope.role == "user":
        return HumanMessage(content=envelope.content)
    if envelope.role == "assistant":
        return AIMessage(content=envelope.content)
    if envelope.role == "tool":
        if not envelope.tool_call_id:
            raise ValueError("tool messages must include tool_call_id")
        return ToolMessage(content=envelope.content, tool_call_id=envelope.tool_call_id)
    return SystemMessage(content=envelope.content)


def from_envelopes(raw: Iterable[MessageEnvelope]) -> list[BaseMessage]:
    return [from_envelope(envelope) for envelope in raw]
