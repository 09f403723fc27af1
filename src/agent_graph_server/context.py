"""Context assembly: the ordered message list sent to the model for one turn."""

from __future__ import annotations

from typing import Sequence

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from .messages import is_system, text_of
from .providers import ProviderDescriptor
from .schemas import AgentConfig

CUSTOM_INSTRUCTION_PREFIX = "Please note these additional instructions: "


def persona_text(agent: AgentConfig | None, rag_context: str | None = None) -> str:
    """System text for a bound agent, with retrieved context appended when present."""
    if agent is None:
        return ""
    text = agent.system_prompt.strip()
    if rag_context:
        text += (
            "\n\n----\nContext from uploaded documents:\n"
            f"{rag_context.strip()}\n----\n\n"
            "Use the above document context when relevant to answer the user's question."
        )
    return text.strip()


def _append_text(turn: HumanMessage, extra: str) -> HumanMessage:
    content = turn.content
    if isinstance(content, str):
        return HumanMessage(content=content + extra)
    segments = list(content)
    for index, segment in enumerate(segments):
        if isinstance(segment, dict) and segment.get("type") == "text":
            segments[index] = {**segment, "text": segment.get("text", "") + extra}
            break
    else:
        segments.insert(0, {"type": "text", "text": extra.strip()})
    return HumanMessage(content=segments)


def build_context(
    history: Sequence[BaseMessage],
    provider: ProviderDescriptor,
    current_turn: HumanMessage,
    *,
    agent: AgentConfig | None = None,
    custom_instruction: str | None = None,
    rag_context: str | None = None,
) -> list[BaseMessage]:
    """Assemble history, system instructions and the current turn.

    Providers flagged ``consolidate_system`` get every system instruction merged
    into one leading SystemMessage: the agent persona first, then the system
    messages found in history. A custom instruction that would add a second
    system message to such a provider is sent as a human message instead.

    Without a bound agent, retrieved context is appended to the current turn.
    Inputs are never mutated, so repeated calls return equal lists.
    """
    context: list[BaseMessage] = list(history)
    persona = persona_text(agent, rag_context)
    consolidated = ""

    if provider.consolidate_system:
        consolidated = "\n\n".join(text_of(m.content) for m in context if is_system(m))
        context = [m for m in context if not is_system(m)]
        if persona:
            consolidated = f"{persona}\n\n{consolidated}" if consolidated else persona
    elif persona:
        agent_message = SystemMessage(content=persona)
        first_system = next((i for i, m in enumerate(context) if is_system(m)), None)
        if first_system is None:
            context.insert(0, agent_message)
        else:
            context[first_system] = agent_message

    instruction = (custom_instruction or "").strip()
    if instruction:
        if provider.consolidate_system and consolidated:
            context.append(HumanMessage(content=f"{CUSTOM_INSTRUCTION_PREFIX}{instruction}"))
        else:
            context.insert(0, SystemMessage(content=instruction))

    if consolidated:
        context.insert(0, SystemMessage(content=consolidated))

    if rag_context and agent is None:
        current_turn = _append_text(current_turn, rag_context)
    context.append(current_turn)
    return context
