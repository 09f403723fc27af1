"""Provider descriptor table.

Every provider-specific behavior of the pipeline (vision encoding, system message
consolidation, output ceilings, tool subsets, OpenRouter routing) is a field on a
ProviderDescriptor. Adding a provider means adding one entry to PROVIDERS.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .errors import UnsupportedProviderError

logger = logging.getLogger(__name__)


class ImageEncoding(str, Enum):
    URL = "url"  # pass the image URL through
    BASE64_BLOCK = "base64_block"  # {"type": "image", "source": {"type": "base64", ...}}
    DATA_URL = "data_url"  # image_url with a data:<mime>;base64 URL


class BaseToolSet(str, Enum):
    ALL = "all"
    SEARCH = "search"
    NONE = "none"


@dataclass(frozen=True)
class ProviderDescriptor:
    code: str
    label: str
    supports_vision: bool = False
    image_encoding: ImageEncoding | None = None
    consolidate_system: bool = False
    max_output_tokens: dict[str, int] = field(default_factory=dict)
    default_max_output_tokens: int | None = None
    base_tools: BaseToolSet = BaseToolSet.SEARCH
    via_open_router: bool = False
    no_tool_models: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()
    default_title_model: str = ""

    def max_tokens_for(self, model_name: str) -> int | None:
        """Output ceiling for a model, falling back to the provider default."""
        return self.max_output_tokens.get(model_name, self.default_max_output_tokens)

    def supports_tools(self, model_name: str) -> bool:
        if self.base_tools is BaseToolSet.NONE:
            return False
        lowered = model_name.lower()
        return not any(pattern in lowered for pattern in self.no_tool_models)


ANTHROPIC_MAX_TOKENS: dict[str, int] = {
    "claude-3-5-sonnet-20240620": 8192,
    "claude-3-5-sonnet-20241022": 8192,
    "claude-3-5-haiku-20241022": 8192,
    "claude-3-7-sonnet-20250219": 64000,
    "claude-3-7-sonnet-latest": 64000,
    "claude-3-opus-20240229": 4096,
    "claude-3-haiku-20240307": 4096,
    "claude-sonnet-4-20250514": 64000,
    "claude-opus-4-20250514": 32000,
    "claude-opus-4-1-20250805": 32000,
}

OPEN_AI = ProviderDescriptor(
    code="OPEN_AI",
    label="openai",
    supports_vision=True,
    image_encoding=ImageEncoding.URL,
    base_tools=BaseToolSet.ALL,
    no_tool_models=("chatgpt-4o-latest",),
    aliases=("openai", "open_ai"),
    default_title_model="gpt-4o-mini",
)

ANTHROPIC = ProviderDescriptor(
    code="ANTHROPIC",
    label="anthropic",
    supports_vision=True,
    image_encoding=ImageEncoding.BASE64_BLOCK,
    consolidate_system=True,
    max_output_tokens=ANTHROPIC_MAX_TOKENS,
    default_max_output_tokens=8192,
    aliases=("anthropic", "claude"),
    default_title_model="claude-3-5-sonnet-20240620",
)

GEMINI = ProviderDescriptor(
    code="GEMINI",
    label="gemini",
    supports_vision=True,
    image_encoding=ImageEncoding.DATA_URL,
    consolidate_system=True,
    aliases=("gemini", "google"),
    default_title_model="gemini-2.0-flash-001",
)

DEEPSEEK = ProviderDescriptor(
    code="DEEPSEEK",
    label="deepseek",
    base_tools=BaseToolSet.NONE,
    via_open_router=True,
    aliases=("deepseek",),
    default_title_model="deepseek-chat",
)

LLAMA4 = ProviderDescriptor(
    code="LLAMA4",
    label="llama4",
    supports_vision=True,
    image_encoding=ImageEncoding.URL,
    via_open_router=True,
    aliases=("llama", "llama4"),
    default_title_model="llama-3.1-8b-instruct",
)

GROK = ProviderDescriptor(
    code="GROK",
    label="grok",
    via_open_router=True,
    aliases=("grok",),
    default_title_model="grok-2-1212",
)

QWEN = ProviderDescriptor(
    code="QWEN",
    label="qwen",
    base_tools=BaseToolSet.NONE,
    via_open_router=True,
    aliases=("qwen",),
    default_title_model="qwq-32b",
)

PROVIDERS: dict[str, ProviderDescriptor] = {
    descriptor.code: descriptor
    for descriptor in (OPEN_AI, ANTHROPIC, GEMINI, DEEPSEEK, LLAMA4, GROK, QWEN)
}

DEFAULT_PROVIDER = OPEN_AI

# Substrings of model names that identify a provider (checked in order)
_MODEL_NAME_HINTS: tuple[tuple[str, ProviderDescriptor], ...] = (
    ("gemini", GEMINI),
    ("claude", ANTHROPIC),
    ("gpt", OPEN_AI),
    ("o1", OPEN_AI),
    ("o3", OPEN_AI),
    ("deepseek", DEEPSEEK),
    ("llama", LLAMA4),
    ("grok", GROK),
    ("qwen", QWEN),
)


def resolve_provider(code: str | None, default: ProviderDescriptor = DEFAULT_PROVIDER) -> ProviderDescriptor:
    """Map a provider code (or alias) to its descriptor.

    Exact code or alias matches win, then partial alias matches. Unknown codes fall
    back to ``default``.
    """
    if not code:
        return default

    raw = str(code).strip()
    if raw.upper() in PROVIDERS:
        return PROVIDERS[raw.upper()]

    lowered = raw.lower()
    for descriptor in PROVIDERS.values():
        if lowered in descriptor.aliases:
            return descriptor

    for descriptor in PROVIDERS.values():
        for alias in descriptor.aliases:
            if alias in lowered or lowered in alias:
                return descriptor

    logger.warning("[PROVIDER] %s", UnsupportedProviderError(code, default.code))
    return default


def infer_provider(model_name: str, default: ProviderDescriptor = DEFAULT_PROVIDER) -> ProviderDescriptor:
    """Guess the provider of a model from its name."""
    lowered = model_name.lower()
    for hint, descriptor in _MODEL_NAME_HINTS:
        if hint in lowered:
            return descriptor
    return default
