"""Runs one chat turn end to end and yields its client-visible events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

import httpx
from langchain_core.messages import BaseMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool

from .config import Settings, get_settings
from .context import build_context
from .cost import CostAccountingSink
from .credentials import CredentialDecryptor
from .errors import AgentGraphError
from .events import Error, EventKind, EventTranslator, Notice, StreamEvent
from .executor import ToolExecutor
from .graph import create_graph, recursion_limit_for
from .llm import ModelHandle, build_model_handle
from .persistence import AgentDirectory, ConversationStore
from .providers import OPEN_AI, ProviderDescriptor, infer_provider, resolve_provider
from .retrieval import RetrievalGate, RetrievalOutcome
from .schemas import AgentConfig, ChatRequest
from .title_generator import generate_title
from .tools import build_tool_registry, tools_for_provider
from .vision import build_user_turn

logger = logging.getLogger(__name__)

RESPONSE_ERROR_MESSAGE = "conversation error"


@dataclass(frozen=True)
class ModelSelection:
    provider: ProviderDescriptor
    model_name: str
    api_key: str | None
    temperature: float | None = None


def select_model(
    request: ChatRequest,
    agent: AgentConfig | None,
    decryptor: CredentialDecryptor,
    settings: Settings,
) -> ModelSelection:
    """The agent's response model wins over the request's model when one is bound.

    An agent model without an explicit provider gets one inferred from its name,
    and falls back to the request's API key when it has none of its own.
    """
    default = resolve_provider(settings.default_provider)
    response_model = agent.response_model if agent else None
    if response_model and response_model.name:
        if response_model.provider:
            provider = resolve_provider(response_model.provider, default)
        else:
            provider = infer_provider(response_model.name, default)
        encrypted = response_model.api_key_encrypted or request.api_key_encrypted
        temperature = response_model.temperature
        if temperature is None:
            temperature = settings.agent_default_temperature
        return ModelSelection(provider, response_model.name, decryptor.safe_decrypt(encrypted), temperature)

    provider = resolve_provider(request.provider_code, default)
    return ModelSelection(
        provider,
        request.model or settings.default_model,
        decryptor.safe_decrypt(request.api_key_encrypted),
    )


class ChatOrchestrator:
    """Composes retrieval, context assembly, the agent graph and the event stream.

    One instance serves many concurrent requests; everything request-scoped lives
    in ``stream_turn``'s locals and the graph config.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: ConversationStore | None = None,
        agents: AgentDirectory | None = None,
        retrieval: RetrievalGate | None = None,
        decryptor: CredentialDecryptor | None = None,
        http_client: httpx.AsyncClient | None = None,
        model_factory: Callable[..., ModelHandle] = build_model_handle,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.agents = agents
        self.retrieval = retrieval
        self.decryptor = decryptor or CredentialDecryptor.from_settings(self.settings)
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.image_fetch_timeout_seconds, follow_redirects=True
        )
        self.model_factory = model_factory

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def _load_agent(self, request: ChatRequest) -> AgentConfig | None:
        if not request.custom_gpt_id or self.agents is None:
            return None
        try:
            return await self.agents.get_agent(request.custom_gpt_id)
        except Exception as exc:
            logger.error("[AGENT] Agent lookup failed for %s: %s", request.custom_gpt_id, exc)
            return None

    async def _load_history(self, request: ChatRequest) -> list[BaseMessage]:
        if self.store is None:
            return []
        return await self.store.load_history(request.chat_id)

    async def _custom_instruction(self, request: ChatRequest) -> str | None:
        if not request.brain_id or self.agents is None:
            return None
        try:
            return await self.agents.get_custom_instruction(request.brain_id)
        except Exception as exc:
            logger.error("[AGENT] Custom instruction lookup failed for %s: %s", request.brain_id, exc)
            return None

    async def _retrieve(self, request: ChatRequest, agent: AgentConfig | None) -> RetrievalOutcome:
        if self.retrieval is None:
            return RetrievalOutcome()
        return await self.retrieval.prepare(request, agent)

    async def _save_answer(self, request: ChatRequest, answer: str) -> None:
        if self.store is None or not answer:
            return
        try:
            await self.store.save_turn(
                thread_id=request.thread_id,
                chat_id=request.chat_id,
                query=request.query,
                answer=answer,
                used_credit=request.used_credit,
            )
        except Exception as exc:
            logger.error("[AGENT] Failed to save answer for thread %s: %s", request.thread_id, exc)

    def _graph_config(self, request: ChatRequest, selection: ModelSelection) -> RunnableConfig:
        agent_context: dict[str, Any] = {
            "thread_id": request.thread_id,
            "chat_id": request.chat_id,
            "user_id": request.user_id,
            "company_id": request.company_id,
        }
        if selection.provider is OPEN_AI and selection.api_key:
            agent_context["image_api_key"] = selection.api_key
        return {
            "configurable": {"agent_context": agent_context},
            "recursion_limit": recursion_limit_for(self.settings.max_tool_cycles),
        }

    async def stream_turn(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Yield the ordered events of one turn.

        Terminal failures end the stream with an Error event. Text already
        streamed at that point is saved as a partial answer. Cancelling the
        consumer cancels the model and tool calls in flight and saves nothing.
        """
        translator = EventTranslator(thread_id=request.thread_id, store=self.store)
        try:
            agent = await self._load_agent(request)
            if agent is not None:
                logger.info("[AGENT] Agent %s bound to chat %s", agent.id, request.chat_id)
                yield Notice(EventKind.AGENT_ENABLED, "Agent activated")

            selection = select_model(request, agent, self.decryptor, self.settings)
            sink = CostAccountingSink(selection.model_name, selection.provider.label)
            translator.sink = sink

            registry = build_tool_registry(agent)
            bindable = {tool.name for tool in tools_for_provider(selection.provider, selection.model_name)}
            if agent is not None:
                bindable.update(tool.name for tool in agent.tools if isinstance(tool, BaseTool))
            tools = [tool for name, tool in registry.items() if name in bindable]
            handle = self.model_factory(
                selection.provider,
                selection.model_name,
                selection.api_key,
                settings=self.settings,
                temperature=selection.temperature,
                tools=tools,
                callbacks=[sink],
            )

            outcome = await self._retrieve(request, agent)
            if outcome.enabled:
                yield Notice(EventKind.RAG_ENABLED, f"Using {len(outcome.hits)} document passage(s)")
            elif outcome.degraded:
                yield Notice(EventKind.RAG_DISABLED, outcome.degraded_message or "")

            history = await self._load_history(request)
            custom_instruction = await self._custom_instruction(request)
            current_turn = await build_user_turn(
                request.query, request.image_urls, selection.provider, self.http_client
            )
            messages = build_context(
                history,
                selection.provider,
                current_turn,
                agent=agent,
                custom_instruction=custom_instruction,
                rag_context=outcome.context,
            )

            executor = ToolExecutor(registry, unknown_tool_policy=self.settings.unknown_tool_policy)
            graph = create_graph(handle, executor, max_tool_cycles=self.settings.max_tool_cycles)
            config = self._graph_config(request, selection)

            logger.info(
                "[AGENT] Streaming %s/%s for thread %s",
                selection.provider.code,
                selection.model_name,
                request.thread_id,
            )
            async for event in graph.astream_events(
                {"messages": messages, "tool_cycles": 0}, config=config, version="v2"
            ):
                for stream_event in await translator.translate(event):
                    yield stream_event

            await sink.flush(self.store, request.thread_id)
        except AgentGraphError as exc:
            logger.error("[AGENT] Turn failed for thread %s: %s", request.thread_id, exc)
            await self._save_answer(request, translator.text)
            yield Error(exc.kind, RESPONSE_ERROR_MESSAGE)
            return
        except Exception as exc:
            logger.exception("[AGENT] Unexpected failure for thread %s: %s", request.thread_id, exc)
            await self._save_answer(request, translator.text)
            yield Error(AgentGraphError.kind, RESPONSE_ERROR_MESSAGE)
            return

        done = translator.finish()
        await self._save_answer(request, done.text)
        yield done

    async def generate_title(self, request: ChatRequest) -> str:
        provider = resolve_provider(request.provider_code, resolve_provider(self.settings.default_provider))
        api_key = self.decryptor.safe_decrypt(request.api_key_encrypted)
        return await generate_title(
            request.query,
            provider,
            api_key,
            chat_id=request.chat_id,
            store=self.store,
            settings=self.settings,
        )
