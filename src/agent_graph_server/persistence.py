"""Firestore-backed conversation store and agent directory."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

import firebase_admin
from firebase_admin import credentials, firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from langchain_core.messages import BaseMessage

from .config import Settings
from .cost import UsageRecord
from .messages import from_envelopes
from .schemas import AgentConfig, MessageEnvelope

logger = logging.getLogger(__name__)

CHATS_COLLECTION = "chats"
THREADS_COLLECTION = "threads"
AGENTS_COLLECTION = "customgpts"
BRAINS_COLLECTION = "brains"
HISTORY_LIMIT = 20


class ConversationStore(Protocol):
    async def load_history(self, chat_id: str) -> list[BaseMessage]: ...

    async def save_turn(
        self, *, thread_id: str, chat_id: str, query: str, answer: str, used_credit: float
    ) -> None: ...

    async def update_usage(self, thread_id: str, record: UsageRecord) -> None: ...

    async def update_title(self, chat_id: str, title: str) -> None: ...


class AgentDirectory(Protocol):
    async def get_agent(self, agent_id: str) -> AgentConfig | None: ...

    async def get_custom_instruction(self, brain_id: str) -> str | None: ...


def _service_account_path(settings: Settings) -> Optional[Path]:
    if settings.firebase_service_account_key:
        path = Path(settings.firebase_service_account_key).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Firebase service account file not found: {path}")
        return path
    return None


def initialize_firebase(settings: Settings) -> firebase_admin.App:
    if firebase_admin._apps:
        return firebase_admin.get_app()

    svc_path = _service_account_path(settings)
    if svc_path:
        return firebase_admin.initialize_app(credentials.Certificate(str(svc_path)))
    return firebase_admin.initialize_app(credentials.ApplicationDefault())


def get_firestore_client(settings: Settings):
    """Get Firestore client, initializing Firebase if needed."""
    initialize_firebase(settings)
    return firestore.client()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def history_from_threads(rows: list[dict[str, Any]]) -> list[BaseMessage]:
    """Turn stored thread rows (oldest first) into alternating human/AI messages."""
    envelopes: list[MessageEnvelope] = []
    for row in rows:
        query = row.get("message")
        answer = row.get("ai")
        if query:
            envelopes.append(MessageEnvelope(role="user", content=query))
        if answer:
            envelopes.append(MessageEnvelope(role="assistant", content=answer))
    return from_envelopes(envelopes)


class FirestoreConversationStore:
    """Thread records live at ``threads/{thread_id}``, chats at ``chats/{chat_id}``.

    The Firestore client is synchronous; calls run in a worker thread.
    """

    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def db(self):
        if self._client is None:
            self._client = get_firestore_client(self._settings)
        return self._client

    async def load_history(self, chat_id: str) -> list[BaseMessage]:
        def _load() -> list[dict[str, Any]]:
            query = (
                self.db.collection(THREADS_COLLECTION)
                .where(filter=FieldFilter("chatId", "==", chat_id))
                .order_by("createdAt", direction=firestore.Query.DESCENDING)
                .limit(HISTORY_LIMIT)
            )
            return [doc.to_dict() or {} for doc in query.stream()]

        rows = await asyncio.to_thread(_load)
        rows.reverse()
        return history_from_threads(rows)

    async def save_turn(
        self, *, thread_id: str, chat_id: str, query: str, answer: str, used_credit: float
    ) -> None:
        def _save() -> None:
            ref = self.db.collection(THREADS_COLLECTION).document(thread_id)
            ref.set(
                {
                    "chatId": chat_id,
                    "message": query,
                    "ai": answer,
                    "usedCredit": used_credit,
                    "updatedAt": _now(),
                },
                merge=True,
            )

        await asyncio.to_thread(_save)
        logger.info("[STORE] Saved answer for thread %s (%d chars)", thread_id, len(answer))

    async def update_usage(self, thread_id: str, record: UsageRecord) -> None:
        def _update() -> None:
            ref = self.db.collection(THREADS_COLLECTION).document(thread_id)
            ref.set(
                {
                    "usage": record.to_dict(),
                    "totalTokens": firestore.Increment(record.total_tokens),
                    "totalCost": firestore.Increment(record.cost_estimate),
                    "updatedAt": _now(),
                },
                merge=True,
            )

        await asyncio.to_thread(_update)

    async def update_title(self, chat_id: str, title: str) -> None:
        def _update() -> None:
            self.db.collection(CHATS_COLLECTION).document(chat_id).set(
                {"title": title, "updatedAt": _now()}, merge=True
            )

        await asyncio.to_thread(_update)
        logger.info("[STORE] Set title of chat %s to %r", chat_id, title)


class FirestoreAgentDirectory:
    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def db(self):
        if self._client is None:
            self._client = get_firestore_client(self._settings)
        return self._client

    async def _get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        def _fetch() -> dict[str, Any] | None:
            snapshot = self.db.collection(collection).document(doc_id).get()
            return snapshot.to_dict() if snapshot.exists else None

        return await asyncio.to_thread(_fetch)

    async def get_agent(self, agent_id: str) -> AgentConfig | None:
        data = await self._get(AGENTS_COLLECTION, agent_id)
        if data is None:
            logger.warning("[STORE] Agent not found: %s", agent_id)
            return None
        return AgentConfig.model_validate({"id": agent_id, **data})

    async def get_custom_instruction(self, brain_id: str) -> str | None:
        data = await self._get(BRAINS_COLLECTION, brain_id)
        if not data:
            return None
        instruction = data.get("customInstruction")
        return instruction.strip() if isinstance(instruction, str) and instruction.strip() else None
