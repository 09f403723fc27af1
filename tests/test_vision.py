"""Tests for vision input formatting."""

from __future__ import annotations

import base64

import httpx
import pytest
from langchain_core.messages import HumanMessage

from agent_graph_server.errors import VisionFormattingFailedError
from agent_graph_server.providers import ANTHROPIC, DEEPSEEK, GEMINI, OPEN_AI
from agent_graph_server.vision import build_user_turn, fetch_image_base64, format_image, sniff_mime_type

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
PNG_B64 = base64.b64encode(PNG).decode()


def image_server(routes: dict[str, httpx.Response]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return routes.get(str(request.url), httpx.Response(404))

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestSniffMimeType:
    def test_magic_numbers(self):
        assert sniff_mime_type(PNG) == "image/png"
        assert sniff_mime_type(b"\xff\xd8\xff\xe0rest") == "image/jpeg"
        assert sniff_mime_type(b"GIF89a...") == "image/gif"
        assert sniff_mime_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"

    def test_header_then_default(self):
        assert sniff_mime_type(b"????", "image/avif; charset=binary") == "image/avif"
        assert sniff_mime_type(b"????", "text/html") == "image/jpeg"


class TestFormatImage:
    @pytest.mark.asyncio
    async def test_openai_passes_url(self):
        async with image_server({}) as client:
            segment = await format_image("https://img.test/a.png", OPEN_AI, client)

        assert segment == {"type": "image_url", "image_url": {"url": "https://img.test/a.png"}}

    @pytest.mark.asyncio
    async def test_anthropic_base64_block(self):
        async with image_server({"https://img.test/a.png": httpx.Response(200, content=PNG)}) as client:
            segment = await format_image("https://img.test/a.png", ANTHROPIC, client)

        assert segment == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": PNG_B64},
        }

    @pytest.mark.asyncio
    async def test_gemini_data_url(self):
        async with image_server({"https://img.test/a.png": httpx.Response(200, content=PNG)}) as client:
            segment = await format_image("https://img.test/a.png", GEMINI, client)

        assert segment["image_url"]["url"] == f"data:image/png;base64,{PNG_B64}"

    @pytest.mark.asyncio
    async def test_data_url_input_is_not_fetched(self):
        async with image_server({}) as client:
            payload, mime_type = await fetch_image_base64(f"data:image/png;base64,{PNG_B64}", client)

        assert (payload, mime_type) == (PNG_B64, "image/png")

    @pytest.mark.asyncio
    async def test_fetch_failure_raises(self):
        async with image_server({}) as client:
            with pytest.raises(VisionFormattingFailedError, match="HTTP 404"):
                await format_image("https://img.test/missing.png", ANTHROPIC, client)


class TestBuildUserTurn:
    @pytest.mark.asyncio
    async def test_bad_image_dropped_good_one_kept(self):
        routes = {"https://img.test/ok.png": httpx.Response(200, content=PNG)}
        async with image_server(routes) as client:
            turn = await build_user_turn(
                "Describe", ["https://img.test/missing.png", "https://img.test/ok.png"], ANTHROPIC, client
            )

        assert turn.content[0] == {"type": "text", "text": "Describe"}
        assert len(turn.content) == 2
        assert turn.content[1]["type"] == "image"

    @pytest.mark.asyncio
    async def test_all_images_failing_falls_back_to_text(self):
        async with image_server({}) as client:
            turn = await build_user_turn("Describe", ["https://img.test/missing.png"], GEMINI, client)

        assert turn == HumanMessage(content="Describe")

    @pytest.mark.asyncio
    async def test_provider_without_vision_gets_text(self):
        async with image_server({}) as client:
            turn = await build_user_turn("Describe", ["https://img.test/a.png"], DEEPSEEK, client)

        assert turn == HumanMessage(content="Describe")

    @pytest.mark.asyncio
    async def test_no_images(self):
        async with image_server({}) as client:
            assert await build_user_turn("Hello", [], OPEN_AI, client) == HumanMessage(content="Hello")
