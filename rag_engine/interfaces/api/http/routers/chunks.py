"""
===============================================================================
CRC CARD: routers/chunks.py
===============================================================================

Name:
    Ingestion router (chunks, documents, indexing)

Responsibilities:
    - POST /v1/chunks: upsert one chunk (idempotent by content hash).
    - GET  /v1/chunks/{chunk_id}: read a chunk (tombstoned ones included).
    - POST /v1/documents/{document_id}/stale: tombstone a document's chunks.
    - GET  /v1/documents/freshness: freshness report by source.
    - POST /v1/index: embed pending chunks for the current model version.

Collaborators:
    - container.get_chunk_store / get_indexing_service
    - domain.repositories.ChunkStore (sync; called through a worker thread)
===============================================================================
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Query

from rag_engine.application.indexing import IndexingService
from rag_engine.container import get_chunk_store, get_indexing_service
from rag_engine.crosscutting.config import get_settings
from rag_engine.crosscutting.error_responses import OPENAPI_ERROR_RESPONSES, not_found
from rag_engine.crosscutting.exceptions import StoreUnavailable
from rag_engine.domain.repositories import ChunkStore

from ..error_mapping import raise_http_error
from ..schemas.chunks import (
    ChunkRes,
    ChunkUpsertReq,
    ChunkUpsertRes,
    IndexRunRes,
    MarkStaleRes,
)

router = APIRouter()


@router.post(
    "/chunks",
    response_model=ChunkUpsertRes,
    tags=["ingest"],
    responses=OPENAPI_ERROR_RESPONSES,
)
async def upsert_chunk(
    req: ChunkUpsertReq,
    store: ChunkStore = Depends(get_chunk_store),
) -> ChunkUpsertRes:
    try:
        outcome = await asyncio.to_thread(store.upsert, req.to_chunk())
    except (ValueError, StoreUnavailable) as exc:
        raise_http_error(exc)
    return ChunkUpsertRes(
        chunk_id=outcome.chunk_id,
        status=outcome.status,
        tombstoned_chunk_id=outcome.tombstoned_chunk_id,
    )


@router.get(
    "/chunks/{chunk_id}",
    response_model=ChunkRes,
    tags=["ingest"],
    responses=OPENAPI_ERROR_RESPONSES,
)
async def get_chunk(
    chunk_id: str,
    store: ChunkStore = Depends(get_chunk_store),
) -> ChunkRes:
    try:
        chunk = await asyncio.to_thread(store.get, chunk_id)
    except StoreUnavailable as exc:
        raise_http_error(exc)
    if chunk is None:
        raise not_found("Chunk", chunk_id)
    return ChunkRes.from_chunk(chunk)


@router.post(
    "/documents/{document_id}/stale",
    response_model=MarkStaleRes,
    tags=["documents"],
    responses=OPENAPI_ERROR_RESPONSES,
)
async def mark_document_stale(
    document_id: str,
    store: ChunkStore = Depends(get_chunk_store),
) -> MarkStaleRes:
    try:
        count = await asyncio.to_thread(store.mark_stale, document_id)
    except StoreUnavailable as exc:
        raise_http_error(exc)
    return MarkStaleRes(document_id=document_id, tombstoned=count)


@router.get("/documents/freshness", tags=["documents"], responses=OPENAPI_ERROR_RESPONSES)
async def freshness_report(
    threshold_days: int | None = Query(default=None, ge=1, le=3650),
    store: ChunkStore = Depends(get_chunk_store),
) -> dict:
    days = threshold_days or get_settings().freshness_threshold_days
    try:
        return await asyncio.to_thread(store.freshness_report, days)
    except StoreUnavailable as exc:
        raise_http_error(exc)


@router.post(
    "/index",
    response_model=IndexRunRes,
    tags=["ingest"],
    responses=OPENAPI_ERROR_RESPONSES,
)
async def index_pending(
    limit: int = Query(default=1000, ge=1, le=100_000),
    indexing: IndexingService = Depends(get_indexing_service),
) -> IndexRunRes:
    report = await indexing.index_pending(limit=limit)
    return IndexRunRes(indexed=report.indexed, failed=report.failed, batches=report.batches)
