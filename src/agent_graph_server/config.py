from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the agent graph server."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Default model selection when a request carries an unknown provider
    default_provider: str = Field(default="OPEN_AI", alias="DEFAULT_PROVIDER")
    default_model: str = Field(default="gpt-4o-mini", alias="DEFAULT_MODEL")
    default_temperature: float = Field(default=1.0, alias="DEFAULT_TEMPERATURE")
    agent_default_temperature: float = Field(default=0.7, alias="AGENT_DEFAULT_TEMPERATURE")

    # Model invocation
    model_timeout_seconds: float = Field(default=300.0, alias="MODEL_TIMEOUT_SECONDS")
    model_max_retries: int = Field(default=2, alias="MODEL_MAX_RETRIES")
    max_tool_cycles: int = Field(default=10, alias="MAX_TOOL_CYCLES")
    unknown_tool_policy: Literal["error_result", "skip"] = Field(
        default="error_result", alias="UNKNOWN_TOOL_POLICY"
    )

    # OpenRouter (DeepSeek, Llama4, Grok, Qwen)
    open_router_api_url: str = Field(default="https://openrouter.ai/api/v1", alias="OPEN_ROUTER_API_URL")
    open_router_referer: str = Field(default="https://weam.ai", alias="OPEN_ROUTER_REFERER")
    open_router_title: str = Field(default="Weam AI", alias="OPEN_ROUTER_TITLE")

    # Web search tool
    searxng_api_url: str = Field(default="http://localhost:8888", alias="SEARXNG_API_URL")
    searxng_max_results: int = Field(default=10, alias="SEARXNG_MAX_RESULTS")
    tool_timeout_seconds: float = Field(default=120.0, alias="TOOL_TIMEOUT_SECONDS")

    # Image generation tool
    image_model: str = Field(default="dall-e-3", alias="IMAGE_MODEL")
    image_api_url: str = Field(default="https://api.openai.com/v1/images/generations", alias="IMAGE_API_URL")
    image_api_key: str | None = Field(default=None, alias="IMAGE_API_KEY")
    google_project_id: str | None = Field(default=None, alias="GOOGLE_PROJECT_ID")
    google_cloud_storage_bucket: str | None = Field(default=None, alias="GOOGLE_CLOUD_STORAGE_BUCKET")
    image_public_base_url: str = Field(default="https://storage.googleapis.com", alias="IMAGE_PUBLIC_BASE_URL")

    # Vision
    image_fetch_timeout_seconds: float = Field(default=30.0, alias="IMAGE_FETCH_TIMEOUT_SECONDS")

    # Retrieval service
    retrieval_service_url: str | None = Field(default="http://localhost:8081", alias="RETRIEVAL_SERVICE_URL")
    retrieval_timeout_seconds: float = Field(default=60.0, alias="RETRIEVAL_TIMEOUT_SECONDS")
    retrieval_retry_attempts: int = Field(default=3, alias="RETRIEVAL_RETRY_ATTEMPTS")
    retrieval_score_threshold: float = Field(default=0.15, alias="RETRIEVAL_SCORE_THRESHOLD")
    retrieval_context_budget: int = Field(default=3000, alias="RETRIEVAL_CONTEXT_BUDGET")
    retrieval_result_limit: int = Field(default=5, alias="RETRIEVAL_RESULT_LIMIT")

    # Credentials
    credential_encryption_key: str | None = Field(default=None, alias="CREDENTIAL_ENCRYPTION_KEY")

    # Persistence
    firebase_service_account_key: str | None = Field(
        default=None, alias="FIREBASE_SERVICE_ACCOUNT_KEY"
    )

    # FastAPI configuration
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8080, alias="APP_PORT")
    debug: bool = Field(default=False, alias="DEBUG")


@lru_cache
def get_settings() -> Settings:
    """Return memoized settings so multiple imports share a single instance."""

    return Settings()  # type: ignore[arg-type]
