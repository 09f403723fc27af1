"""Tool registry for the agent graph."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Dict

from langchain_core.tools import BaseTool

from ..providers import BaseToolSet, ProviderDescriptor
from ..schemas import AgentConfig
from .image_generation_tool import generate_image
from .web_search_tool import web_search

WEB_SEARCH_TOOL = web_search.name
IMAGE_GENERATION_TOOL = generate_image.name


def get_base_tools() -> Sequence[BaseTool]:
    """Return the tools every conversation can use."""

    return (web_search, generate_image)


def tools_for_provider(provider: ProviderDescriptor, model_name: str) -> list[BaseTool]:
    """Base tools a provider/model may bind. Models that cannot bind tools get none."""

    if not provider.supports_tools(model_name):
        return []
    if provider.base_tools is BaseToolSet.SEARCH:
        return [web_search]
    return list(get_base_tools())


def build_tool_registry(agent: AgentConfig | None = None) -> Dict[str, BaseTool]:
    """Name -> tool mapping; agent tools override base tools of the same name."""

    registry: Dict[str, BaseTool] = {tool.name: tool for tool in get_base_tools()}
    if agent:
        for tool in agent.tools:
            if isinstance(tool, BaseTool):
                registry[tool.name] = tool
    return registry


__all__ = [
    "IMAGE_GENERATION_TOOL",
    "WEB_SEARCH_TOOL",
    "build_tool_registry",
    "get_base_tools",
    "tools_for_provider",
]
