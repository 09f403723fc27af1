"""Tool to generate images and store them durably in Cloud Storage."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Annotated
from uuid import uuid4

import httpx
from google.cloud import storage
from langchain_core.tools import InjectedToolArg, tool

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

_SIZE_CHOICES = {"1024x1024", "1024x1536", "1536x1024"}


def upload_image(image_bytes: bytes, content_type: str, object_name: str, settings: Settings) -> str:
    """Upload image bytes to the configured bucket and return the durable URL."""
    if not settings.google_cloud_storage_bucket:
        raise RuntimeError("GOOGLE_CLOUD_STORAGE_BUCKET is not configured; cannot store generated image")

    client = storage.Client(project=settings.google_project_id)
    bucket = client.bucket(settings.google_cloud_storage_bucket)
    blob = bucket.blob(object_name)
    blob.upload_from_string(image_bytes, content_type=content_type)
    url = f"{settings.image_public_base_url.rstrip('/')}/{settings.google_cloud_storage_bucket}/{object_name}"
    logger.info("[TOOLS] Uploaded generated image to %s", url)
    return url


@tool
async def generate_image(
    prompt: str,
    size: str = "1024x1024",
    agent_context: Annotated[dict | None, InjectedToolArg] = None,
) -> str:
    """Create a high-quality image from a text description.

    Supported sizes:
    - 1024x1024 (Square): social media posts, profile pictures, product images.
    - 1024x1536 (Portrait): mobile content, stories, vertical ads.
    - 1536x1024 (Landscape): presentations, thumbnails, banners.

    The image is uploaded to durable storage and its URL returned; include the URL
    in your answer. Do NOT use this tool when the user wants code generated from an
    image they provided.

    Args:
        prompt: Detailed description of the image to generate.
        size: One of "1024x1024", "1024x1536" or "1536x1024".

    Returns:
        Durable URL of the generated image.
    """
    settings = get_settings()
    context = agent_context or {}

    if not prompt or len(prompt.strip()) < 3:
        raise ValueError("Please provide a more detailed prompt (at least 3 characters).")
    if size not in _SIZE_CHOICES:
        raise ValueError(f"Invalid size '{size}'. Choose from {sorted(_SIZE_CHOICES)}.")

    api_key = context.get("image_api_key") or settings.image_api_key
    if not api_key:
        raise RuntimeError("No API key available for image generation.")

    body = {
        "model": settings.image_model,
        "prompt": prompt.strip(),
        "size": size,
        "n": 1,
        "response_format": "b64_json",
    }
    headers = {"Authorization": f"Bearer {api_key}"}
    async with httpx.AsyncClient(timeout=settings.tool_timeout_seconds) as client:
        response = await client.post(settings.image_api_url, json=body, headers=headers)
    if response.status_code != 200:
        raise RuntimeError(f"Image API error (HTTP {response.status_code}): {response.text[:200]}")

    data = response.json().get("data") or []
    if not data or not data[0].get("b64_json"):
        raise RuntimeError("Image API did not return image data. Try a different prompt.")

    image_bytes = base64.b64decode(data[0]["b64_json"])
    thread_id = context.get("thread_id") or "shared"
    object_name = f"generated-images/{thread_id}/{uuid4().hex}.png"
    return await asyncio.to_thread(upload_image, image_bytes, "image/png", object_name, settings)
