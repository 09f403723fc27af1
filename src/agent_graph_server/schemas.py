from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class MessageEnvelope(BaseModel):
    """Serializable message payload, as stored by the persistence collaborator."""

    role: Literal["user", "assistant", "system", "tool"]
    content: str | list[dict[str, Any]]
    tool_call_id: str | None = None


class FileRef(BaseModel):
    """A file attached to a chat or bound to an agent."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = Field(default=None, validation_alias=AliasChoices("id", "_id", "fileId"))
    name: str | None = Field(default=None, validation_alias=AliasChoices("name", "filename"))
    uri: str | None = None
    is_document: bool = Field(default=False, alias="isDocument")
    is_agent_file: bool = Field(default=False, alias="isCustomGpt")
    brain_id: str | None = Field(default=None, alias="brainId")

    @property
    def is_retrievable(self) -> bool:
        return self.is_document or self.is_agent_file


class ResponseModel(BaseModel):
    """Model an agent prefers to answer with."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    provider: str | None = None
    temperature: float | None = None
    api_key_encrypted: str | None = Field(default=None, alias="apiKeyEncrypted")


class AgentConfig(BaseModel):
    """Read-only persona bound to a chat (a "custom GPT")."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    name: str = ""
    system_prompt: str = Field(default="", alias="systemPrompt")
    documents: list[FileRef] = Field(default_factory=list, validation_alias=AliasChoices("documents", "doc"))
    response_model: ResponseModel | None = Field(default=None, alias="responseModel")
    # Agent-specific LangChain tools; merged over the base tool set
    tools: list[Any] = Field(default_factory=list, exclude=True)


class ChatRequest(BaseModel):
    """Inbound chat turn as delivered by the transport layer."""

    model_config = ConfigDict(populate_by_name=True)

    query: str
    image_urls: list[str] = Field(default_factory=list, alias="imageUrls")
    model: str
    provider_code: str | None = Field(default=None, alias="providerCode")
    api_key_encrypted: str | None = Field(default=None, alias="apiKeyEncrypted")
    thread_id: str = Field(alias="threadId")
    chat_id: str = Field(alias="chatId")
    brain_id: str | None = Field(default=None, alias="brainId")
    custom_gpt_id: str | None = Field(default=None, alias="customGptId")
    attached_files: list[FileRef] = Field(default_factory=list, alias="attachedFiles")
    company_id: str | None = Field(default=None, alias="companyId")
    user_id: str | None = Field(default=None, alias="userId")
    used_credit: float = Field(default=1.0, alias="usedCredit")

    @property
    def has_images(self) -> bool:
        return bool(self.image_urls)


class HealthResponse(BaseModel):
    status: str = "ok"
