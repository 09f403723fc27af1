from __future__ import annotations

import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import get_orchestrator, router
from .config import get_settings

# Configure logging for the entire agent_graph_server package
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("agent_graph_server").setLevel(logging.INFO)

logger = logging.getLogger(__name__)

settings = get_settings()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Agent Graph Server",
        description="Streaming chat agent with retrieval and tools",
        version="0.1.0",
        debug=settings.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()


@app.on_event("startup")
async def startup_event():
    logger.info("Agent Graph Server starting up")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Agent Graph Server shutting down")
    if get_orchestrator.cache_info().currsize:
        await get_orchestrator().aclose()
