"""Vision input formatting.

Images attached to a turn are converted to the encoding the target provider
expects. A single bad image is dropped; if none survive, the turn goes out as
plain text.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

import httpx
from langchain_core.messages import HumanMessage

from .errors import VisionFormattingFailedError
from .providers import ImageEncoding, ProviderDescriptor

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"

_MAGIC_NUMBERS: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def sniff_mime_type(data: bytes, header: str | None = None) -> str:
    """Detect an image MIME type from its leading bytes, then the HTTP header."""
    for magic, mime_type in _MAGIC_NUMBERS:
        if data.startswith(magic):
            return mime_type
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if header:
        mime_type = header.split(";", 1)[0].strip().lower()
        if mime_type.startswith("image/"):
            return mime_type
    return DEFAULT_MIME_TYPE


def _decode_data_url(url: str) -> tuple[str, str]:
    meta, _, payload = url.partition(",")
    if ";base64" not in meta or not payload:
        raise VisionFormattingFailedError(url[:64], "data URL is not base64 encoded")
    try:
        raw = base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise VisionFormattingFailedError(url[:64], f"invalid base64 payload: {exc}") from exc
    declared = meta[len("data:"):].split(";", 1)[0] or None
    return payload, sniff_mime_type(raw, declared)


async def fetch_image_base64(url: str, client: httpx.AsyncClient) -> tuple[str, str]:
    """Return (base64 payload, mime type) for an image URL or data URL."""
    if url.startswith("data:"):
        return _decode_data_url(url)
    try:
        response = await client.get(url)
    except httpx.HTTPError as exc:
        raise VisionFormattingFailedError(url, f"fetch failed: {exc}") from exc
    if response.status_code != 200:
        raise VisionFormattingFailedError(url, f"HTTP {response.status_code}")
    data = response.content
    if not data:
        raise VisionFormattingFailedError(url, "empty body")
    mime_type = sniff_mime_type(data, response.headers.get("content-type"))
    return base64.b64encode(data).decode("ascii"), mime_type


async def format_image(url: str, provider: ProviderDescriptor, client: httpx.AsyncClient) -> dict[str, Any]:
    encoding = provider.image_encoding
    if not provider.supports_vision or encoding is None:
        raise VisionFormattingFailedError(url, f"provider {provider.code} does not support vision")

    if encoding is ImageEncoding.URL:
        return {"type": "image_url", "image_url": {"url": url}}

    payload, mime_type = await fetch_image_base64(url, client)
    if encoding is ImageEncoding.BASE64_BLOCK:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": mime_type, "data": payload},
        }
    return {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{payload}"}}


async def format_images(
    image_urls: list[str],
    provider: ProviderDescriptor,
    client: httpx.AsyncClient,
) -> list[dict[str, Any]]:
    if not image_urls:
        return []
    if not provider.supports_vision:
        logger.warning("[VISION] Provider %s does not support vision, dropping %d image(s)", provider.code, len(image_urls))
        return []

    formatted: list[dict[str, Any]] = []
    for url in image_urls:
        try:
            formatted.append(await format_image(url, provider, client))
        except VisionFormattingFailedError as exc:
            logger.error("[VISION] %s", exc)
    return formatted


async def build_user_turn(
    query: str,
    image_urls: list[str] | None,
    provider: ProviderDescriptor,
    client: httpx.AsyncClient,
) -> HumanMessage:
    """Build the current user turn, with image segments when any could be formatted."""
    if not image_urls:
        return HumanMessage(content=query)

    images = await format_images(image_urls, provider, client)
    if not images:
        logger.warning("[VISION] No images could be formatted, falling back to text-only")
        return HumanMessage(content=query)

    content: list[str | dict[str, Any]] = [{"type": "text", "text": query}, *images]
    return HumanMessage(content=content)
