"""Provider adapter: one calling convention over every supported chat model."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.runnables import Runnable, RunnableConfig
from langchain_core.tools import BaseTool
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from .config import Settings, get_settings
from .errors import MissingCredentialError, ModelInvocationFailedError
from .messages import text_of
from .providers import ANTHROPIC, GEMINI, ProviderDescriptor

logger = logging.getLogger(__name__)


def build_chat_model(
    provider: ProviderDescriptor,
    model_name: str,
    api_key: str,
    settings: Settings,
    *,
    temperature: float | None = None,
    streaming: bool = True,
    callbacks: Sequence[BaseCallbackHandler] | None = None,
) -> BaseChatModel:
    """Instantiate the LangChain chat model for a provider."""
    common: dict[str, Any] = {
        "model": model_name,
        "temperature": settings.default_temperature if temperature is None else temperature,
        "timeout": settings.model_timeout_seconds,
        "max_retries": settings.model_max_retries,
        "callbacks": list(callbacks) if callbacks else None,
    }
    max_tokens = provider.max_tokens_for(model_name)

    if provider is ANTHROPIC:
        return ChatAnthropic(
            **common,
            api_key=api_key,
            max_tokens=max_tokens,
            streaming=streaming,
        )

    if provider is GEMINI:
        extra = {"max_output_tokens": max_tokens} if max_tokens else {}
        return ChatGoogleGenerativeAI(**common, api_key=api_key, **extra)

    extra = {"max_tokens": max_tokens} if max_tokens else {}
    if provider.via_open_router:
        return ChatOpenAI(
            **common,
            api_key=api_key,
            base_url=settings.open_router_api_url,
            default_headers={
                "HTTP-Referer": settings.open_router_referer,
                "X-Title": settings.open_router_title,
            },
            streaming=streaming,
            stream_usage=True,
            **extra,
        )
    return ChatOpenAI(**common, api_key=api_key, streaming=streaming, stream_usage=True, **extra)


class ModelHandle:
    """A chat model with its tool binding resolved for one provider/model pair."""

    def __init__(
        self,
        model: BaseChatModel,
        provider: ProviderDescriptor,
        model_name: str,
        tools: Sequence[BaseTool] = (),
    ) -> None:
        self.model = model
        self.provider = provider
        self.model_name = model_name
        self.tools = list(tools)
        self.runnable: Runnable = model.bind_tools(self.tools) if self.tools else model

    async def ainvoke(self, messages: Sequence[BaseMessage], config: RunnableConfig | None = None) -> AIMessage:
        try:
            return await self.runnable.ainvoke(list(messages), config=config)
        except Exception as exc:
            raise ModelInvocationFailedError(self.model_name, exc) from exc

    async def astream(
        self, messages: Sequence[BaseMessage], config: RunnableConfig | None = None
    ) -> AsyncIterator[str]:
        """Yield text increments as the model produces them."""
        try:
            async for chunk in self.runnable.astream(list(messages), config=config):
                token = text_of(chunk.content)
                if token:
                    yield token
        except Exception as exc:
            raise ModelInvocationFailedError(self.model_name, exc) from exc


def build_model_handle(
    provider: ProviderDescriptor,
    model_name: str,
    api_key: str | None,
    *,
    settings: Settings | None = None,
    temperature: float | None = None,
    tools: Sequence[BaseTool] = (),
    callbacks: Sequence[BaseCallbackHandler] | None = None,
    streaming: bool = True,
) -> ModelHandle:
    """Build a model handle, refusing to start without a credential.

    Tools are dropped for models that cannot bind them (e.g. ``chatgpt-4o-latest``);
    such models never see tool instructions.
    """
    if not api_key:
        raise MissingCredentialError(provider.code)
    resolved = settings or get_settings()
    model = build_chat_model(
        provider,
        model_name,
        api_key,
        resolved,
        temperature=temperature,
        streaming=streaming,
        callbacks=callbacks,
    )
    bound = list(tools) if provider.supports_tools(model_name) else []
    if tools and not bound:
        logger.info("[AGENT] Model %s does not support tool binding; invoking without tools", model_name)
    return ModelHandle(model, provider, model_name, bound)
