"""The two-node agent graph: model call, tool execution, repeat until done."""

from __future__ import annotations

import logging
import operator
from typing import Annotated, Any, Literal, TypedDict

from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from .errors import ToolLoopExceededError
from .executor import ToolExecutor
from .llm import ModelHandle

logger = logging.getLogger(__name__)

AGENT_NODE = "agent"
TOOLS_NODE = "tools"


class AgentState(TypedDict, total=False):
    # Append-only: nodes return new messages, never edit existing ones
    messages: Annotated[list[BaseMessage], operator.add]
    tool_cycles: int


def pending_tool_calls(state: AgentState) -> list[dict[str, Any]]:
    messages = state.get("messages") or []
    if not messages:
        return []
    last_message = messages[-1]
    if isinstance(last_message, AIMessage):
        return list(last_message.tool_calls)
    return []


def should_continue(state: AgentState) -> Literal["tools", "__end__"]:
    if pending_tool_calls(state):
        return TOOLS_NODE
    return END


def request_context(config: RunnableConfig | None) -> dict[str, Any]:
    """Request-scoped values threaded through ``configurable['agent_context']``."""
    configurable = (config or {}).get("configurable", {})
    return dict(configurable.get("agent_context") or {})


def create_graph(handle: ModelHandle, executor: ToolExecutor, *, max_tool_cycles: int = 10):
    """Compile the agent graph for one request.

    ``max_tool_cycles`` bounds how many times the tools node may run before
    the turn fails with ToolLoopExceededError.
    """

    async def call_model(state: AgentState, config: RunnableConfig):
        messages = state.get("messages") or []
        logger.info("[AGENT] Invoking %s with %d message(s)", handle.model_name, len(messages))
        response = await handle.ainvoke(messages, config=config)
        return {"messages": [response]}

    async def call_tools(state: AgentState, config: RunnableConfig):
        cycles = state.get("tool_cycles", 0) + 1
        if cycles > max_tool_cycles:
            logger.error("[AGENT] Tool cycle cap reached (%d)", max_tool_cycles)
            raise ToolLoopExceededError(max_tool_cycles)

        tool_calls = pending_tool_calls(state)
        context = request_context(config)
        logger.info(
            "[AGENT] Tool cycle %d: %s",
            cycles,
            ", ".join(call["name"] for call in tool_calls),
        )
        results = await executor.execute_batch(tool_calls, context, config)
        return {"messages": results, "tool_cycles": cycles}

    workflow = StateGraph(AgentState)
    workflow.add_node(AGENT_NODE, call_model)
    workflow.add_node(TOOLS_NODE, call_tools)
    workflow.add_edge(START, AGENT_NODE)
    workflow.add_conditional_edges(AGENT_NODE, should_continue, [TOOLS_NODE, END])
    workflow.add_edge(TOOLS_NODE, AGENT_NODE)
    return workflow.compile()


def recursion_limit_for(max_tool_cycles: int) -> int:
    """Superstep limit that lets the cycle cap, not LangGraph, stop a runaway loop."""
    return 2 * max_tool_cycles + 5
