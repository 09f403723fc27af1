"""Retrieval gate: decides whether document context applies and builds it.

The vector index is an external service reached through ``RetrievalService``.
Any failure here degrades the turn to the non-retrieval path; it never aborts
the conversation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import httpx
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .errors import IndexMismatchError, RetrievalFailedError, RetrievalTimeoutError
from .schemas import AgentConfig, ChatRequest, FileRef

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "…"
NO_DOCUMENTS_NOTICE = "Note: No specific relevant documents found for this query, but RAG context is available."
CONTEXT_HEADER = "📄 RELEVANT DOCUMENT CONTENT:"
CONTEXT_FOOTER = (
    "Please use the above document content to answer the user's question. "
    "The content is from uploaded files and should be used as the primary source for your response."
)


class RetrievalHit(BaseModel):
    content: str
    score: float = Field(ge=0.0, le=1.0)
    source_id: str | None = None
    source_label: str | None = None


class IndexedFile(BaseModel):
    """A file known to the retrieval backend. Older records have no file_id."""

    file_id: str | None = None
    filename: str
    count: int = 0


@dataclass(frozen=True)
class MatchedFile:
    ref: FileRef
    indexed: IndexedFile
    match_type: str

    @property
    def search_key(self) -> str:
        return self.indexed.file_id or self.indexed.filename

    @property
    def label(self) -> str:
        return self.ref.name or self.indexed.filename


@dataclass
class RetrievalOutcome:
    """Result of the retrieval phase of a turn."""

    enabled: bool = False
    context: str | None = None
    hits: list[RetrievalHit] = field(default_factory=list)
    degraded_message: str | None = None

    @property
    def degraded(self) -> bool:
        return self.degraded_message is not None


class RetrievalService(Protocol):
    async def list_indexed_files(self, scope_id: str) -> list[IndexedFile]: ...

    async def search_within_file(
        self, scope_id: str, file_id: str, query: str, limit: int
    ) -> list[RetrievalHit]: ...


class HttpRetrievalService:
    """Retrieval backend client over HTTP.

    Reads are idempotent, so timeouts are retried with exponential backoff before
    surfacing as ``RetrievalTimeoutError``.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        if not settings.retrieval_service_url:
            raise RetrievalFailedError("Retrieval service URL not configured.")
        self._base_url = settings.retrieval_service_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=settings.retrieval_timeout_seconds)
        self._attempts = max(1, settings.retrieval_retry_attempts)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TimeoutException),
                stop=stop_after_attempt(self._attempts),
                wait=wait_exponential(multiplier=0.5, max=8),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise RetrievalTimeoutError(
                f"Retrieval service timed out after {self._attempts} attempt(s): {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            raise RetrievalFailedError(f"Could not reach retrieval service: {exc}") from exc

        if response.status_code != 200:
            raise RetrievalFailedError(
                f"Retrieval service returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise RetrievalFailedError(f"Invalid response from retrieval service: {exc}") from exc

    async def list_indexed_files(self, scope_id: str) -> list[IndexedFile]:
        payload = await self._request("GET", f"/api/indexes/{scope_id}/files")
        return [IndexedFile.model_validate(item) for item in payload.get("files", [])]

    async def search_within_file(
        self, scope_id: str, file_id: str, query: str, limit: int
    ) -> list[RetrievalHit]:
        body = {"fileId": file_id, "query": query, "limit": limit}
        payload = await self._request("POST", f"/api/indexes/{scope_id}/search", json=body)
        hits = []
        for item in payload.get("hits", []):
            metadata = item.get("metadata") or {}
            hits.append(
                RetrievalHit(
                    content=item.get("content") or metadata.get("text") or "",
                    score=min(1.0, max(0.0, float(item.get("score", 0.0)))),
                    source_id=item.get("fileId") or metadata.get("fileId"),
                    source_label=item.get("filename") or metadata.get("filename"),
                )
            )
        return hits


def should_retrieve(request: ChatRequest, agent: AgentConfig | None = None) -> bool:
    """Retrieval applies to document attachments or agent document sets, never with images."""
    if request.has_images:
        return False
    if any(file.is_retrievable for file in request.attached_files):
        return True
    return bool(agent and agent.documents)


def collect_files(request: ChatRequest, agent: AgentConfig | None = None) -> list[FileRef]:
    """Retrievable request attachments plus the agent's documents, without duplicates."""
    candidates = [f for f in request.attached_files if f.is_retrievable]
    if agent:
        candidates.extend(
            doc.model_copy(update={"is_document": True, "is_agent_file": True}) for doc in agent.documents
        )

    seen: set[str] = set()
    files: list[FileRef] = []
    for file in candidates:
        key = file.id or file.name or file.uri or ""
        if not key or key in seen:
            continue
        seen.add(key)
        files.append(file)
    return files


def _names_overlap(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return a == b or a in b or b in a


def match_files(files: Sequence[FileRef], indexed: Sequence[IndexedFile]) -> list[MatchedFile]:
    """Map attached files onto indexed files.

    Stable file ids are tried first; only when none match does the filename
    substring fallback run. Raises IndexMismatchError when nothing matches.
    """
    if not indexed:
        raise IndexMismatchError("Retrieval index is empty or not accessible")

    by_id = {item.file_id: item for item in indexed if item.file_id}
    matched = [MatchedFile(f, by_id[f.id], "fileId") for f in files if f.id and f.id in by_id]

    if not matched:
        for file in files:
            if not file.name:
                continue
            hit = next((item for item in indexed if _names_overlap(item.filename, file.name)), None)
            if hit is not None:
                matched.append(MatchedFile(file, hit, "filename"))

    if not matched:
        raise IndexMismatchError("None of the uploaded files match indexed files (by fileId or filename)")
    return matched


def rank_hits(hits: Sequence[RetrievalHit], threshold: float = 0.15, limit: int | None = None) -> list[RetrievalHit]:
    """Drop hits under the threshold and order the rest by descending score."""
    ranked = sorted((h for h in hits if h.score >= threshold), key=lambda h: h.score, reverse=True)
    return ranked[:limit] if limit is not None else ranked


def select_passages(hits: Sequence[RetrievalHit], budget: int = 3000) -> list[tuple[RetrievalHit, str]]:
    """Pick passages in order until the character budget is spent."""
    selected: list[tuple[RetrievalHit, str]] = []
    remaining = budget
    for hit in hits:
        if remaining <= 0:
            break
        content = hit.content
        if not content:
            continue
        if len(content) > remaining:
            content = content[: max(0, remaining - len(TRUNCATION_MARKER))] + TRUNCATION_MARKER
        selected.append((hit, content))
        remaining -= len(content)
    return selected


def build_rag_context(hits: Sequence[RetrievalHit], budget: int = 3000) -> str:
    if not hits:
        return f"\n\n{NO_DOCUMENTS_NOTICE}\n"

    sections = [f"\n\n{CONTEXT_HEADER}\n"]
    for index, (hit, content) in enumerate(select_passages(hits, budget), start=1):
        sections.append(f"--- Document {index} ({hit.source_label or 'unknown'}) ---\n{content}\n")
    sections.append(f"{CONTEXT_FOOTER}\n")
    return "\n".join(sections)


def describe_failure(exc: BaseException) -> str:
    """User-facing degraded-mode notice for a retrieval failure."""
    if isinstance(exc, IndexMismatchError):
        return "RAG failed: No uploaded files match the indexed documents. Please ensure documents are properly indexed."
    if isinstance(exc, (RetrievalTimeoutError, asyncio.TimeoutError)):
        return "RAG failed: The document search timed out, using normal flow."
    if isinstance(exc, RetrievalFailedError):
        return f"RAG failed: {exc}"
    return "RAG failed, using normal flow"


class RetrievalGate:
    def __init__(self, service: RetrievalService, settings: Settings) -> None:
        self.service = service
        self.threshold = settings.retrieval_score_threshold
        self.budget = settings.retrieval_context_budget
        self.limit = settings.retrieval_result_limit

    async def retrieve(self, query: str, files: Sequence[FileRef], scope_id: str | None) -> list[RetrievalHit]:
        if not scope_id:
            raise RetrievalFailedError("A scope (company) id is required for document search")
        indexed = await self.service.list_indexed_files(scope_id)
        matched = match_files(files, indexed)
        per_file = max(1, math.ceil(self.limit / len(matched)))

        hits: list[RetrievalHit] = []
        for item in matched:
            results = await self.service.search_within_file(scope_id, item.search_key, query, per_file)
            logger.info("[RAG] %d hit(s) from %s (matched by %s)", len(results), item.label, item.match_type)
            hits.extend(
                hit if hit.source_label else hit.model_copy(update={"source_label": item.label})
                for hit in results
            )
        return rank_hits(hits, self.threshold, self.limit)

    async def prepare(self, request: ChatRequest, agent: AgentConfig | None = None) -> RetrievalOutcome:
        """Run retrieval for a request, converting any failure into a degraded outcome."""
        if not should_retrieve(request, agent):
            return RetrievalOutcome()

        files = collect_files(request, agent)
        try:
            hits = await self.retrieve(request.query, files, request.company_id)
        except Exception as exc:
            logger.error("[RAG] Retrieval failed for chat %s: %s", request.chat_id, exc)
            return RetrievalOutcome(degraded_message=describe_failure(exc))

        return RetrievalOutcome(enabled=True, context=build_rag_context(hits, self.budget), hits=hits)
