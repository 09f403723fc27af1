"""Shared test helpers: a scripted chat model and in-memory collaborators."""

from __future__ import annotations

import json
from typing import Any, Iterator

from langchain_core.callbacks import CallbackManagerForLLMRun
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatGenerationChunk, ChatResult

from agent_graph_server.cost import UsageRecord
from agent_graph_server.errors import MissingCredentialError
from agent_graph_server.llm import ModelHandle
from agent_graph_server.providers import OPEN_AI
from agent_graph_server.schemas import AgentConfig


def tool_call(name: str, call_id: str, **args: Any) -> dict[str, Any]:
    return {"name": name, "args": args, "id": call_id, "type": "tool_call"}


def ai_with_calls(*calls: dict[str, Any], content: str = "") -> AIMessage:
    return AIMessage(content=content, tool_calls=list(calls))


class ScriptedChatModel(BaseChatModel):
    """Returns the scripted AI messages in order, one per invocation.

    Streaming splits the text on spaces and sends tool calls as a final chunk.
    """

    responses: list[AIMessage]
    calls: list[list[BaseMessage]] = []
    position: int = 0

    @property
    def _llm_type(self) -> str:
        return "scripted"

    def _next(self, messages: list[BaseMessage]) -> AIMessage:
        self.calls.append(list(messages))
        message = self.responses[self.position]
        self.position += 1
        return message

    def _generate(
        self,
        messages: list[BaseMessage],
        stop: list[str] | None = None,
        run_manager: CallbackManagerForLLMRun | None = None,
        **kwargs: Any,
    ) -> ChatResult:
        return ChatResult(generations=[ChatGeneration(message=self._next(messages))])

    def _stream(
        self,
        messages: list[BaseMessage],
        stop: list[str] | None = None,
        run_manager: CallbackManagerForLLMRun | None = None,
        **kwargs: Any,
    ) -> Iterator[ChatGenerationChunk]:
        message = self._next(messages)
        text = message.content if isinstance(message.content, str) else ""
        words = text.split(" ")
        for index, word in enumerate(words):
            piece = word if index == len(words) - 1 else f"{word} "
            if piece:
                yield ChatGenerationChunk(message=AIMessageChunk(content=piece))
        if message.tool_calls:
            yield ChatGenerationChunk(
                message=AIMessageChunk(
                    content="",
                    tool_call_chunks=[
                        {
                            "name": call["name"],
                            "args": json.dumps(call["args"]),
                            "id": call["id"],
                            "index": index,
                        }
                        for index, call in enumerate(message.tool_calls)
                    ],
                )
            )


class FailingChatModel(BaseChatModel):
    error: str = "upstream unavailable"

    @property
    def _llm_type(self) -> str:
        return "failing"

    def _generate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        raise RuntimeError(self.error)


def scripted_handle(*responses: AIMessage, callbacks: list | None = None, model_name: str = "gpt-4o-mini") -> ModelHandle:
    model = ScriptedChatModel(responses=list(responses), calls=[], callbacks=callbacks)
    return ModelHandle(model, OPEN_AI, model_name)


def scripted_factory(*responses: AIMessage):
    """A model_factory for the orchestrator that records what it was asked to build."""
    built: dict[str, Any] = {}

    def factory(provider, model_name, api_key, *, settings=None, temperature=None, tools=(), callbacks=None, **kwargs):
        built.update(
            provider=provider,
            model_name=model_name,
            api_key=api_key,
            temperature=temperature,
            tools=[tool.name for tool in tools],
        )
        if not api_key:
            raise MissingCredentialError(provider.code)
        model = ScriptedChatModel(responses=list(responses), calls=[], callbacks=callbacks)
        return ModelHandle(model, provider, model_name)

    factory.built = built  # type: ignore[attr-defined]
    return factory


class InMemoryStore:
    def __init__(self, history: list[BaseMessage] | None = None, fail_usage: bool = False) -> None:
        self.history = history or []
        self.turns: list[dict[str, Any]] = []
        self.usage: list[tuple[str, UsageRecord]] = []
        self.titles: dict[str, str] = {}
        self.fail_usage = fail_usage

    async def load_history(self, chat_id: str) -> list[BaseMessage]:
        return list(self.history)

    async def save_turn(self, *, thread_id, chat_id, query, answer, used_credit) -> None:
        self.turns.append(
            {"thread_id": thread_id, "chat_id": chat_id, "query": query, "answer": answer, "used_credit": used_credit}
        )

    async def update_usage(self, thread_id: str, record: UsageRecord) -> None:
        if self.fail_usage:
            raise ConnectionError("firestore unavailable")
        self.usage.append((thread_id, record))

    async def update_title(self, chat_id: str, title: str) -> None:
        self.titles[chat_id] = title


class InMemoryAgents:
    def __init__(self, agents: dict[str, AgentConfig] | None = None, instructions: dict[str, str] | None = None) -> None:
        self.agents = agents or {}
        self.instructions = instructions or {}

    async def get_agent(self, agent_id: str) -> AgentConfig | None:
        return self.agents.get(agent_id)

    async def get_custom_instruction(self, brain_id: str) -> str | None:
        return self.instructions.get(brain_id)
