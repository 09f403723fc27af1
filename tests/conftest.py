"""Shared test fixtures and configuration."""

from __future__ import annotations

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from agent_graph_server.config import Settings
from agent_graph_server.schemas import AgentConfig, ChatRequest


@pytest.fixture
def settings():
    """Settings isolated from the environment's .env file."""
    return Settings(
        _env_file=None,
        RETRIEVAL_SERVICE_URL="http://retrieval.test",
        RETRIEVAL_RETRY_ATTEMPTS=2,
        SEARXNG_API_URL="http://searx.test",
        GOOGLE_CLOUD_STORAGE_BUCKET="test-bucket",
        IMAGE_API_KEY="sk-image",
    )


@pytest.fixture
def chat_request():
    """A plain text chat request with an already-plaintext API key."""
    return ChatRequest.model_validate(
        {
            "query": "Hello",
            "model": "gpt-4o-mini",
            "providerCode": "OPEN_AI",
            "apiKeyEncrypted": "sk-test-key",
            "threadId": "thread-1",
            "chatId": "chat-1",
            "companyId": "company-1",
        }
    )


@pytest.fixture
def sample_agent():
    return AgentConfig.model_validate(
        {
            "_id": "agent-1",
            "name": "Support Bot",
            "systemPrompt": "You are a support agent.",
            "doc": [{"fileId": "doc-1", "filename": "handbook.pdf"}],
        }
    )


@pytest.fixture
def sample_history():
    return [
        SystemMessage(content="A"),
        HumanMessage(content="What is the refund window?"),
        AIMessage(content="Thirty days."),
        SystemMessage(content="B"),
    ]
