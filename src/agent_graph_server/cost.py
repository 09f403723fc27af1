"""Token usage extraction and cost accounting for model invocations."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol, Sequence
from uuid import UUID

from langchain_core.callbacks import AsyncCallbackHandler
from langchain_core.messages import BaseMessage
from langchain_core.outputs import LLMResult

from .errors import UsagePersistFailedError
from .messages import text_of

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

# USD per million tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "chatgpt-4o-latest": (5.00, 15.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1": (2.00, 8.00),
    "o3-mini": (1.10, 4.40),
    "claude-3-5-haiku": (0.80, 4.00),
    "claude-3-5-sonnet": (3.00, 15.00),
    "claude-3-7-sonnet": (3.00, 15.00),
    "claude-sonnet-4": (3.00, 15.00),
    "claude-3-opus": (15.00, 75.00),
    "claude-opus-4": (15.00, 75.00),
    "gemini-2.0-flash": (0.10, 0.40),
    "gemini-2.5-flash": (0.30, 2.50),
    "gemini-2.5-pro": (1.25, 10.00),
    "deepseek": (0.27, 1.10),
    "llama": (0.18, 0.60),
    "grok": (2.00, 10.00),
    "qwen": (0.15, 0.60),
}
DEFAULT_PRICING: tuple[float, float] = (1.00, 3.00)

_PROMPT_KEYS = (
    "input_tokens",
    "prompt_tokens",
    "promptTokens",
    "inputTokens",
    "prompt_token_count",
    "promptTokenCount",
)
_COMPLETION_KEYS = (
    "output_tokens",
    "completion_tokens",
    "completionTokens",
    "outputTokens",
    "candidates_token_count",
    "candidatesTokenCount",
)


@dataclass(frozen=True)
class UsageRecord:
    prompt_tokens: int
    completion_tokens: int
    model_name: str
    provider_name: str
    cost_estimate: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    extraction_method: str = "none"

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, Any]:
        """Document shape stored on the thread record."""
        return {
            "promptT": self.prompt_tokens,
            "completion": self.completion_tokens,
            "totalUsed": self.total_tokens,
            "totalCost": self.cost_estimate,
            "modelName": self.model_name,
            "provider": self.provider_name,
            "timestamp": self.timestamp.isoformat(),
        }


class UsageStore(Protocol):
    async def update_usage(self, thread_id: str, record: UsageRecord) -> None: ...


def pricing_for(model_name: str) -> tuple[float, float]:
    """Price pair for a model: exact name, then the longest matching prefix/substring."""
    lowered = model_name.lower()
    if lowered in MODEL_PRICING:
        return MODEL_PRICING[lowered]
    candidates = [key for key in MODEL_PRICING if key in lowered]
    if candidates:
        return MODEL_PRICING[max(candidates, key=len)]
    return DEFAULT_PRICING


def estimate_cost(prompt_tokens: int, completion_tokens: int, model_name: str) -> float:
    input_price, output_price = pricing_for(model_name)
    return round((prompt_tokens * input_price + completion_tokens * output_price) / 1_000_000, 8)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN) if text else 0


def _token_counts(usage: Any) -> tuple[int, int]:
    if not isinstance(usage, Mapping):
        return 0, 0
    prompt = next((usage[k] for k in _PROMPT_KEYS if isinstance(usage.get(k), (int, float))), 0)
    completion = next((usage[k] for k in _COMPLETION_KEYS if isinstance(usage.get(k), (int, float))), 0)
    return int(prompt), int(completion)


def _first_generation(output: LLMResult) -> Any:
    generations = output.generations or []
    if generations and generations[0]:
        return generations[0][0]
    return None


def _usage_candidates(output: LLMResult) -> list[tuple[str, Any]]:
    """Ordered (method, usage mapping) candidates from a model result."""
    candidates: list[tuple[str, Any]] = []
    generation = _first_generation(output)
    if generation is not None:
        candidates.append(("generation.usage_metadata", getattr(generation, "usage_metadata", None)))
        info = getattr(generation, "generation_info", None) or {}
        candidates.append(("generation_info.usage_metadata", info.get("usage_metadata")))
        candidates.append(("generation_info.usage", info.get("usage")))
        message = getattr(generation, "message", None)
        if message is not None:
            candidates.append(("message.usage_metadata", getattr(message, "usage_metadata", None)))
            response_metadata = getattr(message, "response_metadata", None) or {}
            for key in ("usage", "token_usage", "usage_metadata"):
                candidates.append((f"message.response_metadata.{key}", response_metadata.get(key)))
    llm_output = output.llm_output or {}
    for key in ("token_usage", "usage"):
        candidates.append((f"llm_output.{key}", llm_output.get(key)))
    return candidates


def extract_usage(output: LLMResult, estimated_prompt_tokens: int = 0) -> tuple[int, int, str]:
    """Return (prompt tokens, completion tokens, extraction method).

    The first strategy yielding a non-zero count wins. The character estimate of
    the outgoing prompt is the last resort; all-zero results are still returned.
    """
    for method, usage in _usage_candidates(output):
        prompt, completion = _token_counts(usage)
        if prompt or completion:
            return prompt, completion, method
    if estimated_prompt_tokens:
        return estimated_prompt_tokens, 0, "estimated_prompt_tokens"
    return 0, 0, "none"


def _prompt_text(messages: Sequence[Sequence[BaseMessage]]) -> str:
    return " ".join(text_of(message.content) for batch in messages for message in batch)


class CostAccountingSink(AsyncCallbackHandler):
    """Observes model start/end events for one request and accumulates usage.

    Records are kept pending until ``flush`` hands them to the usage store.
    """

    def __init__(self, model_name: str, provider_name: str) -> None:
        super().__init__()
        self.model_name = model_name
        self.provider_name = provider_name
        self.records: list[UsageRecord] = []
        self._pending: list[UsageRecord] = []
        self._estimates: dict[UUID, int] = {}

    async def on_chat_model_start(
        self,
        serialized: dict[str, Any],
        messages: list[list[BaseMessage]],
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        estimated = estimate_tokens(_prompt_text(messages))
        self._estimates[run_id] = estimated
        logger.debug("[COST] Model start %s, estimated prompt tokens %d", run_id, estimated)

    async def on_llm_end(
        self,
        response: LLMResult,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        tags: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        self.on_model_end(response, self.model_name, run_id=run_id)

    def on_model_end(self, raw_output: LLMResult, model_name: str, run_id: UUID | None = None) -> UsageRecord:
        estimated = self._estimates.pop(run_id, 0) if run_id is not None else 0
        prompt, completion, method = extract_usage(raw_output, estimated)
        record = UsageRecord(
            prompt_tokens=prompt,
            completion_tokens=completion,
            model_name=model_name,
            provider_name=self.provider_name,
            cost_estimate=estimate_cost(prompt, completion, model_name),
            extraction_method=method,
        )
        if method == "none":
            logger.warning("[COST] No token usage found for %s", model_name)
        else:
            logger.info(
                "[COST] %s: prompt=%d completion=%d cost=%.6f (%s)",
                model_name,
                prompt,
                completion,
                record.cost_estimate,
                method,
            )
        self.records.append(record)
        self._pending.append(record)
        return record

    @property
    def total_cost(self) -> float:
        return sum(record.cost_estimate for record in self.records)

    async def flush(self, store: UsageStore | None, thread_id: str | None) -> int:
        """Persist pending records; failures are logged and never raised."""
        pending, self._pending = self._pending, []
        if not pending or store is None or not thread_id:
            return 0

        written = 0
        for record in pending:
            try:
                await store.update_usage(thread_id, record)
                written += 1
            except Exception as exc:
                failure = UsagePersistFailedError(f"Could not save usage for thread {thread_id}: {exc}")
                logger.error("[COST] %s", failure)
        return written
