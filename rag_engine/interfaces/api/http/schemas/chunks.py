"""
===============================================================================
CRC CARD: schemas/chunks.py
===============================================================================

Module:
    HTTP schemas for chunk ingestion and document maintenance

Responsibilities:
    - Upsert request/response, chunk view, stale marking, freshness report,
      indexing run report.

Collaborators:
    - crosscutting.config.get_settings (max chunk chars)
    - domain.entities.Chunk
===============================================================================
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, Field

from rag_engine.crosscutting.config import get_settings
from rag_engine.domain.entities import Chunk

_settings = get_settings()


class ChunkUpsertReq(BaseModel):
    document_id: str = Field(..., min_length=1, max_length=256)
    ordinal: int = Field(..., ge=0)
    text: Annotated[str, Field(..., min_length=1, max_length=_settings.max_chunk_chars)]
    token_count: int = Field(default=0, ge=0)
    chunk_id: str | None = Field(default=None, max_length=128)
    source_uri: str = Field(default="", max_length=2048)
    title: str | None = Field(default=None, max_length=512)
    source_type: str = Field(default="page", max_length=64)
    freshness_at: datetime | None = None

    def to_chunk(self) -> Chunk:
        kwargs: dict[str, Any] = {}
        if self.freshness_at is not None:
            kwargs["freshness_at"] = self.freshness_at
        return Chunk(
            document_id=self.document_id,
            ordinal=self.ordinal,
            text=self.text,
            token_count=self.token_count,
            chunk_id=self.chunk_id or "",
            source_uri=self.source_uri,
            title=self.title,
            source_type=self.source_type,
            **kwargs,
        )


class ChunkUpsertRes(BaseModel):
    chunk_id: str
    status: str
    tombstoned_chunk_id: str | None = None


class ChunkRes(BaseModel):
    chunk_id: str
    document_id: str
    document_ids: list[str]
    ordinal: int
    text: str
    token_count: int
    content_hash: str
    source_uri: str
    title: str | None
    source_type: str
    version: int
    freshness_at: datetime
    tombstoned_at: datetime | None
    embedding_model_versions: list[str]

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> "ChunkRes":
        return cls(
            chunk_id=chunk.chunk_id,
            document_id=chunk.document_id,
            document_ids=list(chunk.document_ids),
            ordinal=chunk.ordinal,
            text=chunk.text,
            token_count=chunk.token_count,
            content_hash=chunk.content_hash,
            source_uri=chunk.source_uri,
            title=chunk.title,
            source_type=chunk.source_type,
            version=chunk.version,
            freshness_at=chunk.freshness_at,
            tombstoned_at=chunk.tombstoned_at,
            embedding_model_versions=sorted(chunk.embeddings),
        )


class MarkStaleRes(BaseModel):
    document_id: str
    tombstoned: int


class IndexRunRes(BaseModel):
    indexed: int
    failed: int
    batches: int
