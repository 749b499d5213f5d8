"""
Name: FastAPI application entry point

Responsibilities:
  - Build the FastAPI app (metadata, middleware, exception handlers)
  - Mount the engine routers under /v1
  - Expose /healthz and /metrics

Collaborators:
  - container (lazy singletons: store, orchestrator, sinks, providers)
  - crosscutting.middleware.RequestContextMiddleware
  - api.exception_handlers.register_exception_handlers

Notes:
  - Settings are validated in the lifespan, not at import time
  - Shutdown drains the analytics / cost queues and closes provider clients
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response

from ..container import (
    get_analytics_emitter,
    get_chunk_store,
    get_cost_tracker,
    get_orchestrator,
    get_provider_clients,
)
from ..crosscutting.config import get_settings
from ..crosscutting.exceptions import StoreUnavailable
from ..crosscutting.logger import logger
from ..crosscutting.metrics import get_metrics_response
from ..crosscutting.middleware import RequestContextMiddleware
from ..interfaces.api.http.router import router
from .exception_handlers import register_exception_handlers


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    orchestrator = get_orchestrator()
    logger.info(
        "RAG engine API starting up",
        extra={
            "chunk_store": settings.chunk_store,
            "providers": sorted(get_provider_clients()),
            "embedding_model_version": orchestrator.config.embedding_model_version,
            "rerank_mode": orchestrator.config.rerank_mode,
        },
    )
    try:
        yield
    finally:
        await get_analytics_emitter().aclose()
        await get_cost_tracker().aclose()
        for client in get_provider_clients().values():
            await client.aclose()
        if settings.chunk_store == "postgres":
            from ..infrastructure.db.pool import close_pool

            close_pool()
        logger.info("RAG engine API shutting down")


app = FastAPI(
    title="RAG Engine API",
    version="0.1.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "query", "description": "Grounded, cited answers"},
        {"name": "ingest", "description": "Chunk upsert and indexing"},
        {"name": "documents", "description": "Document maintenance"},
    ],
)

app.add_middleware(RequestContextMiddleware)
register_exception_handlers(app)
app.include_router(router, prefix="/v1")


@app.get("/healthz", tags=["health"])
async def healthz() -> dict:
    try:
        store_ok = await asyncio.to_thread(get_chunk_store().ping)
    except StoreUnavailable:
        store_ok = False
    return {"ok": store_ok, "store": "connected" if store_ok else "disconnected"}


@app.get("/metrics", tags=["health"])
async def metrics() -> Response:
    body, content_type = get_metrics_response()
    return Response(content=body, media_type=content_type)
