"""Failure taxonomy for a chat turn.

Recoverable errors (tool, retrieval, vision, usage persistence) are caught at the
component that raises them and turned into data. Terminal errors reach the
orchestrator and end the stream with a response-error event.
"""

from __future__ import annotations


class AgentGraphError(Exception):
    """Base class for every failure raised by this package."""

    kind = "agent_error"


class MissingCredentialError(AgentGraphError):
    kind = "missing_credential"

    def __init__(self, provider: str) -> None:
        super().__init__(f"No API key supplied for provider {provider}")
        self.provider = provider


class UnsupportedProviderError(AgentGraphError):
    kind = "unsupported_provider"

    def __init__(self, code: str | None, fallback: str) -> None:
        super().__init__(f"Unsupported provider {code!r}, falling back to {fallback}")
        self.code = code
        self.fallback = fallback


class ModelInvocationFailedError(AgentGraphError):
    kind = "model_invocation_failed"

    def __init__(self, model_name: str, cause: BaseException) -> None:
        super().__init__(f"Model {model_name} failed: {cause}")
        self.model_name = model_name
        self.cause = cause


class ToolExecutionFailedError(AgentGraphError):
    kind = "tool_execution_failed"

    def __init__(self, tool_name: str, cause: BaseException) -> None:
        super().__init__(f"Error executing tool {tool_name}: {cause}")
        self.tool_name = tool_name
        self.cause = cause


class ToolLoopExceededError(AgentGraphError):
    kind = "tool_loop_exceeded"

    def __init__(self, max_cycles: int) -> None:
        super().__init__(f"Model kept requesting tools after {max_cycles} cycles")
        self.max_cycles = max_cycles


class RetrievalFailedError(AgentGraphError):
    kind = "retrieval_failed"


class IndexMismatchError(RetrievalFailedError):
    kind = "index_mismatch"


class RetrievalTimeoutError(RetrievalFailedError):
    kind = "retrieval_timeout"


class VisionFormattingFailedError(AgentGraphError):
    kind = "vision_formatting_failed"

    def __init__(self, image_url: str, reason: str) -> None:
        super().__init__(f"Failed to format image {image_url}: {reason}")
        self.image_url = image_url
        self.reason = reason


class UsagePersistFailedError(AgentGraphError):
    kind = "usage_persist_failed"


class CredentialDecryptionError(AgentGraphError):
    kind = "credential_decryption_failed"
