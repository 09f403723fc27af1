from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Literal, Mapping, Sequence

from langchain_core.messages import ToolCall, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool

from .errors import ToolExecutionFailedError

logger = logging.getLogger(__name__)

CONTEXT_ARG = "agent_context"


def format_tool_output(output: Any) -> str:
    """Coerce a tool's return value into ToolMessage content."""
    if isinstance(output, str):
        return output
    if isinstance(output, dict):
        for key in ("content", "text"):
            if isinstance(output.get(key), str):
                return output[key]
    if isinstance(output, (dict, list)):
        return json.dumps(output, ensure_ascii=False)
    return str(output)


class ToolExecutor:
    """Runs the tool calls of one AI message against a registry.

    Every failure stays local to its call: the failing call yields an error
    ToolMessage and its siblings run normally.
    """

    def __init__(
        self,
        registry: Mapping[str, BaseTool],
        *,
        unknown_tool_policy: Literal["error_result", "skip"] = "error_result",
    ) -> None:
        self.registry = dict(registry)
        self.unknown_tool_policy = unknown_tool_policy

    async def execute(
        self,
        tool_call: ToolCall,
        context: Mapping[str, Any] | None = None,
        config: RunnableConfig | None = None,
    ) -> ToolMessage | None:
        tool_name = tool_call["name"]
        call_id = tool_call["id"]
        tool = self.registry.get(tool_name)

        if tool is None:
            if self.unknown_tool_policy == "skip":
                logger.warning("[TOOLS] Tool not registered, skipping call %s: %s", call_id, tool_name)
                return None
            logger.warning("[TOOLS] Tool not registered: %s", tool_name)
            return ToolMessage(
                content=f"Error executing tool {tool_name}: tool is not available",
                tool_call_id=call_id,
                name=tool_name,
                status="error",
            )

        args = dict(tool_call.get("args") or {})
        # Request context is injected here, never taken from model output
        args.pop(CONTEXT_ARG, None)
        if CONTEXT_ARG in (tool.args or {}):
            args[CONTEXT_ARG] = dict(context or {})

        logger.info("[TOOLS] Executing tool: %s (call %s)", tool_name, call_id)
        try:
            output = await tool.ainvoke(args, config=config)
        except Exception as exc:
            failure = ToolExecutionFailedError(tool_name, exc)
            logger.exception("[TOOLS] %s", failure)
            return ToolMessage(content=str(failure), tool_call_id=call_id, name=tool_name, status="error")

        content = format_tool_output(output)
        logger.info("[TOOLS] Tool result: %s", content[:500])
        return ToolMessage(content=content, tool_call_id=call_id, name=tool_name)

    async def execute_batch(
        self,
        tool_calls: Sequence[ToolCall],
        context: Mapping[str, Any] | None = None,
        config: RunnableConfig | None = None,
    ) -> list[ToolMessage]:
        """Execute independent calls concurrently; results keep the call order."""
        results = await asyncio.gather(*(self.execute(call, context, config) for call in tool_calls))
        return [message for message in results if message is not None]
