from __future__ import annotations

import asyncio
import contextlib
import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from .config import get_settings
from .credentials import CredentialDecryptor
from .events import EventKind
from .orchestrator import RESPONSE_ERROR_MESSAGE, ChatOrchestrator
from .persistence import FirestoreAgentDirectory, FirestoreConversationStore
from .retrieval import HttpRetrievalService, RetrievalGate
from .schemas import ChatRequest, HealthResponse

router = APIRouter()

logger = logging.getLogger(__name__)


class TitleResponse(BaseModel):
    title: str


@lru_cache
def get_orchestrator() -> ChatOrchestrator:
    """Process-wide orchestrator; it holds no per-request state."""
    settings = get_settings()
    retrieval = None
    if settings.retrieval_service_url:
        retrieval = RetrievalGate(HttpRetrievalService(settings), settings)
    return ChatOrchestrator(
        settings,
        store=FirestoreConversationStore(settings),
        agents=FirestoreAgentDirectory(settings),
        retrieval=retrieval,
        decryptor=CredentialDecryptor.from_settings(settings),
    )


@router.get("/healthz", response_model=HealthResponse)
async def healthcheck() -> HealthResponse:
    return HealthResponse()


@router.post("/title", response_model=TitleResponse)
async def create_title(
    request: ChatRequest, orchestrator: ChatOrchestrator = Depends(get_orchestrator)
) -> TitleResponse:
    return TitleResponse(title=await orchestrator.generate_title(request))


async def _stream_to_socket(websocket: WebSocket, orchestrator: ChatOrchestrator, request: ChatRequest) -> None:
    stream = orchestrator.stream_turn(request)
    try:
        async for event in stream:
            wire = event.to_wire()
            if wire is not None:
                await websocket.send_json(wire)
    finally:
        await stream.aclose()


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        logger.warning("[WS] Ignoring message received while a turn is running")


async def run_turn(websocket: WebSocket, orchestrator: ChatOrchestrator, request: ChatRequest) -> bool:
    """Stream one turn to the socket. Returns False if the client went away.

    A disconnect cancels the turn task, which cancels the model and tool calls
    in flight.
    """
    turn = asyncio.create_task(_stream_to_socket(websocket, orchestrator, request))
    disconnect = asyncio.create_task(_wait_for_disconnect(websocket))
    done, _ = await asyncio.wait({turn, disconnect}, return_when=asyncio.FIRST_COMPLETED)

    if disconnect in done:
        logger.info("[WS] Client disconnected, cancelling turn for thread %s", request.thread_id)
        turn.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await turn
        return False

    disconnect.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await disconnect
    turn.result()
    return True


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, orchestrator: ChatOrchestrator = Depends(get_orchestrator)) -> None:
    await websocket.accept()
    try:
        while True:
            payload = await websocket.receive_json()
            try:
                request = ChatRequest.model_validate(payload)
            except ValidationError as exc:
                logger.warning("[WS] Invalid chat request: %s", exc)
                await websocket.send_json(
                    {"event": EventKind.RESPONSE_ERROR.value, "chunk": RESPONSE_ERROR_MESSAGE}
                )
                continue
            if not await run_turn(websocket, orchestrator, request):
                return
    except WebSocketDisconnect:
        logger.info("[WS] Client disconnected")
