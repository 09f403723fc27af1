"""Tests for the retrieval gate."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from agent_graph_server.errors import IndexMismatchError, RetrievalFailedError, RetrievalTimeoutError
from agent_graph_server.retrieval import (
    NO_DOCUMENTS_NOTICE,
    TRUNCATION_MARKER,
    HttpRetrievalService,
    IndexedFile,
    RetrievalGate,
    RetrievalHit,
    build_rag_context,
    collect_files,
    describe_failure,
    match_files,
    rank_hits,
    select_passages,
    should_retrieve,
)
from agent_graph_server.schemas import ChatRequest, FileRef


def hit(score: float, content: str = "text", label: str = "doc.pdf") -> RetrievalHit:
    return RetrievalHit(content=content, score=score, source_id="f", source_label=label)


def request_with(**overrides) -> ChatRequest:
    payload = {
        "query": "refund policy",
        "model": "gpt-4o",
        "threadId": "t",
        "chatId": "c",
        "companyId": "company-1",
        **overrides,
    }
    return ChatRequest.model_validate(payload)


class FakeRetrievalService:
    def __init__(self, indexed=None, hits=None, error: Exception | None = None):
        self.indexed = indexed or []
        self.hits = hits or {}
        self.error = error
        self.searches: list[tuple[str, str, int]] = []

    async def list_indexed_files(self, scope_id):
        if self.error:
            raise self.error
        return self.indexed

    async def search_within_file(self, scope_id, file_id, query, limit):
        self.searches.append((file_id, query, limit))
        return self.hits.get(file_id, [])


class TestShouldRetrieve:
    def test_document_attachment_enables(self):
        request = request_with(attachedFiles=[{"fileId": "f1", "isDocument": True}])
        assert should_retrieve(request)

    def test_non_document_attachment_does_not_enable(self):
        request = request_with(attachedFiles=[{"fileId": "f1"}])
        assert not should_retrieve(request)

    def test_agent_documents_enable(self, sample_agent):
        assert should_retrieve(request_with(), sample_agent)

    def test_images_disable_retrieval(self, sample_agent):
        request = request_with(
            imageUrls=["https://x/y.png"], attachedFiles=[{"fileId": "f1", "isDocument": True}]
        )
        assert not should_retrieve(request, sample_agent)


class TestCollectFiles:
    def test_merges_agent_documents_without_duplicates(self, sample_agent):
        request = request_with(
            attachedFiles=[
                {"fileId": "doc-1", "filename": "handbook.pdf", "isDocument": True},
                {"fileId": "doc-2", "filename": "pricing.pdf", "isDocument": True},
            ]
        )

        files = collect_files(request, sample_agent)

        assert [f.id for f in files] == ["doc-1", "doc-2"]


class TestMatchFiles:
    def test_matches_by_file_id_first(self):
        files = [FileRef(id="f1", name="a.pdf"), FileRef(id="f2", name="b.pdf")]
        indexed = [IndexedFile(file_id="f1", filename="a.pdf"), IndexedFile(filename="b.pdf")]

        matched = match_files(files, indexed)

        assert [(m.search_key, m.match_type) for m in matched] == [("f1", "fileId")]

    def test_filename_fallback_either_direction(self):
        files = [FileRef(id="new-1", name="report.pdf"), FileRef(id="new-2", name="2024 budget final.xlsx")]
        indexed = [IndexedFile(filename="uploads/report.pdf"), IndexedFile(filename="budget")]

        matched = match_files(files, indexed)

        assert [(m.search_key, m.match_type) for m in matched] == [
            ("uploads/report.pdf", "filename"),
            ("budget", "filename"),
        ]

    def test_no_match_raises_index_mismatch(self):
        with pytest.raises(IndexMismatchError):
            match_files([FileRef(id="x", name="x.pdf")], [IndexedFile(file_id="y", filename="y.pdf")])

    def test_empty_index_raises(self):
        with pytest.raises(IndexMismatchError):
            match_files([FileRef(id="x")], [])

    def test_empty_indexed_filename_never_matches(self):
        files = [FileRef(id="new-1", name="report.pdf")]

        with pytest.raises(IndexMismatchError):
            match_files(files, [IndexedFile(filename="")])


class TestRankingAndBudget:
    def test_threshold_and_descending_order(self):
        hits = [hit(0.1), hit(0.9), hit(0.15), hit(0.5), hit(0.149)]

        ranked = rank_hits(hits, threshold=0.15)

        assert [h.score for h in ranked] == [0.9, 0.5, 0.15]

    def test_limit(self):
        assert len(rank_hits([hit(0.9), hit(0.8), hit(0.7)], limit=2)) == 2

    def test_zero_limit_keeps_nothing(self):
        assert rank_hits([hit(0.9), hit(0.8)], limit=0) == []

    @pytest.mark.parametrize("sizes", [[1000, 1000, 1000], [2500, 2500], [4000], [10, 2990, 50], [3000, 1]])
    def test_concatenation_never_exceeds_budget(self, sizes):
        hits = [hit(0.9 - i * 0.1, "x" * size) for i, size in enumerate(sizes)]

        selected = select_passages(hits, budget=3000)

        assert sum(len(content) for _, content in selected) <= 3000
        assert all(h.score >= 0.15 for h, _ in selected)

    def test_oversized_hit_is_truncated_with_marker(self):
        selected = select_passages([hit(0.9, "a" * 2000), hit(0.8, "b" * 2000)], budget=3000)

        assert selected[0][1] == "a" * 2000
        assert selected[1][1].endswith(TRUNCATION_MARKER)
        assert len(selected[1][1]) == 1000


class TestBuildRagContext:
    def test_zero_hits_yields_notice(self):
        assert build_rag_context([]).strip() == NO_DOCUMENTS_NOTICE

    def test_hits_are_labelled(self):
        context = build_rag_context([hit(0.9, "Refunds take 30 days.", "policy.pdf")])

        assert "--- Document 1 (policy.pdf) ---\nRefunds take 30 days." in context


class TestDescribeFailure:
    def test_messages_per_failure_type(self):
        assert "No uploaded files match" in describe_failure(IndexMismatchError("x"))
        assert "timed out" in describe_failure(asyncio.TimeoutError())
        assert "timed out" in describe_failure(RetrievalTimeoutError("slow"))
        assert describe_failure(RetrievalFailedError("boom")) == "RAG failed: boom"
        assert describe_failure(ValueError("x")) == "RAG failed, using normal flow"


class TestRetrievalGate:
    @pytest.mark.asyncio
    async def test_prepare_builds_context(self, settings):
        service = FakeRetrievalService(
            indexed=[IndexedFile(file_id="doc-1", filename="handbook.pdf")],
            hits={"doc-1": [hit(0.8, "Refunds take 30 days.", None), hit(0.05, "noise")]},
        )
        gate = RetrievalGate(service, settings)
        request = request_with(attachedFiles=[{"fileId": "doc-1", "filename": "handbook.pdf", "isDocument": True}])

        outcome = await gate.prepare(request)

        assert outcome.enabled and not outcome.degraded
        assert [h.content for h in outcome.hits] == ["Refunds take 30 days."]
        assert outcome.hits[0].source_label == "handbook.pdf"
        assert "Refunds take 30 days." in outcome.context
        assert service.searches == [("doc-1", "refund policy", 5)]

    @pytest.mark.asyncio
    async def test_zero_hits_still_enabled_with_notice(self, settings):
        service = FakeRetrievalService(indexed=[IndexedFile(file_id="doc-1", filename="h.pdf")])
        request = request_with(attachedFiles=[{"fileId": "doc-1", "isDocument": True}])

        outcome = await RetrievalGate(service, settings).prepare(request)

        assert outcome.enabled
        assert NO_DOCUMENTS_NOTICE in outcome.context

    @pytest.mark.asyncio
    async def test_per_file_limit_is_split(self, settings):
        indexed = [IndexedFile(file_id=f"f{i}", filename=f"{i}.pdf") for i in range(3)]
        service = FakeRetrievalService(indexed=indexed)
        files = [FileRef(id=f"f{i}") for i in range(3)]

        await RetrievalGate(service, settings).retrieve("q", files, "company-1")

        assert [limit for _, _, limit in service.searches] == [2, 2, 2]

    @pytest.mark.asyncio
    async def test_failure_degrades_instead_of_raising(self, settings):
        service = FakeRetrievalService(error=RetrievalFailedError("service down"))
        request = request_with(attachedFiles=[{"fileId": "doc-1", "isDocument": True}])

        outcome = await RetrievalGate(service, settings).prepare(request)

        assert not outcome.enabled
        assert outcome.degraded_message == "RAG failed: service down"
        assert outcome.context is None

    @pytest.mark.asyncio
    async def test_mismatch_degrades(self, settings):
        service = FakeRetrievalService(indexed=[IndexedFile(file_id="other", filename="other.pdf")])
        request = request_with(attachedFiles=[{"fileId": "doc-1", "filename": "mine.pdf", "isDocument": True}])

        outcome = await RetrievalGate(service, settings).prepare(request)

        assert outcome.degraded
        assert "No uploaded files match" in outcome.degraded_message

    @pytest.mark.asyncio
    async def test_missing_scope_degrades(self, settings):
        service = FakeRetrievalService()
        request = request_with(companyId=None, attachedFiles=[{"fileId": "doc-1", "isDocument": True}])

        outcome = await RetrievalGate(service, settings).prepare(request)

        assert outcome.degraded


class TestHttpRetrievalService:
    @pytest.mark.asyncio
    async def test_lists_files_and_searches(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                assert request.url.path == "/api/indexes/company-1/files"
                return httpx.Response(200, json={"files": [{"file_id": "f1", "filename": "a.pdf", "count": 4}]})
            return httpx.Response(
                200,
                json={"hits": [{"content": "passage", "score": 0.7, "metadata": {"fileId": "f1", "filename": "a.pdf"}}]},
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        service = HttpRetrievalService(settings, client)

        files = await service.list_indexed_files("company-1")
        hits = await service.search_within_file("company-1", "f1", "q", 3)

        assert files == [IndexedFile(file_id="f1", filename="a.pdf", count=4)]
        assert hits == [RetrievalHit(content="passage", score=0.7, source_id="f1", source_label="a.pdf")]

    @pytest.mark.asyncio
    async def test_timeouts_are_retried(self, settings):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json={"files": []})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        assert await HttpRetrievalService(settings, client).list_indexed_files("c") == []
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_http_error_status_raises(self, settings):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))

        with pytest.raises(RetrievalFailedError, match="HTTP 500"):
            await HttpRetrievalService(settings, client).list_indexed_files("c")

    @pytest.mark.asyncio
    async def test_exhausted_timeouts_raise_timeout_error(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        with pytest.raises(RetrievalTimeoutError) as excinfo:
            await HttpRetrievalService(settings, client).list_indexed_files("c")

        assert describe_failure(excinfo.value) == "RAG failed: The document search timed out, using normal flow."
