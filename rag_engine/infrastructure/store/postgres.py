"""
============================================================
CRC CARD: infrastructure/store/postgres.py
============================================================
Class: PostgresChunkStore

Responsibilities:
- ChunkStore over PostgreSQL + pgvector.
- Atomic upsert (one transaction): version, tombstone, dedup reference.
- Vector search by cosine distance (<=>), one model version at a time.
- Full-text search with websearch_to_tsquery + ts_rank_cd.

Collaborators:
- infrastructure.db.pool: get_pool() (ConnectionPool)
- psycopg / psycopg_pool / pgvector
- crosscutting.exceptions.StoreUnavailable

Constraints / Notes:
- Every query is parameterized (no user input interpolation).
- Any driver / pool error surfaces as StoreUnavailable; never partial data.
- Schema:
    rag_chunks            one row per chunk version (tombstones kept)
    rag_chunk_refs        (document_id, ordinal) -> chunk_id, live slots
    rag_chunk_embeddings  (chunk_id, model_version) -> vector
- Reads do not load embeddings (Chunk.embeddings is left empty).
============================================================
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Iterable, Sequence
from uuid import uuid4

import numpy as np
import psycopg
from psycopg import sql
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from ...crosscutting.exceptions import StoreUnavailable
from ...crosscutting.logger import logger
from ...domain.entities import Chunk, Embedding, UpsertResult
from ...domain.services import TokenCounter
from .freshness import SourceFreshness, build_freshness_report

_LANGUAGE_RE = re.compile(r"^[a-z_]+$")

_SCHEMA = """
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS rag_chunks (
    chunk_id       text PRIMARY KEY,
    document_id    text NOT NULL,
    ordinal        integer NOT NULL,
    text           text NOT NULL,
    token_count    integer NOT NULL,
    content_hash   text NOT NULL,
    source_uri     text NOT NULL DEFAULT '',
    title          text,
    source_type    text NOT NULL DEFAULT 'page',
    freshness_at   timestamptz NOT NULL DEFAULT now(),
    version        integer NOT NULL DEFAULT 1,
    tombstoned_at  timestamptz,
    metadata       jsonb NOT NULL DEFAULT '{{}}'::jsonb,
    tsv            tsvector GENERATED ALWAYS AS (
        to_tsvector({language}, coalesce(title, '') || ' ' || text)
    ) STORED
);

CREATE UNIQUE INDEX IF NOT EXISTS rag_chunks_live_hash
    ON rag_chunks (content_hash) WHERE tombstoned_at IS NULL;
CREATE INDEX IF NOT EXISTS rag_chunks_tsv ON rag_chunks USING gin (tsv);

CREATE TABLE IF NOT EXISTS rag_chunk_refs (
    document_id  text NOT NULL,
    ordinal      integer NOT NULL,
    chunk_id     text NOT NULL REFERENCES rag_chunks (chunk_id),
    PRIMARY KEY (document_id, ordinal)
);
CREATE INDEX IF NOT EXISTS rag_chunk_refs_chunk ON rag_chunk_refs (chunk_id);

CREATE TABLE IF NOT EXISTS rag_chunk_embeddings (
    chunk_id       text NOT NULL REFERENCES rag_chunks (chunk_id),
    model_version  text NOT NULL,
    embedding      vector NOT NULL,
    PRIMARY KEY (chunk_id, model_version)
);
"""

_CHUNK_COLUMNS = """
    c.chunk_id, c.document_id, c.ordinal, c.text, c.token_count, c.content_hash,
    c.source_uri, c.title, c.source_type, c.freshness_at, c.version,
    c.tombstoned_at, c.metadata,
    coalesce(
        (SELECT array_agg(DISTINCT r.document_id ORDER BY r.document_id)
           FROM rag_chunk_refs r WHERE r.chunk_id = c.chunk_id),
        ARRAY[c.document_id]
    )
"""


def ensure_schema(database_url: str, *, fts_language: str = "english") -> None:
    """Creates tables and indexes (idempotent). Runs before the pool opens."""
    if not _LANGUAGE_RE.match(fts_language):
        raise ValueError(f"invalid full-text language: {fts_language!r}")
    ddl = sql.SQL(_SCHEMA).format(language=sql.Literal(fts_language))
    try:
        with psycopg.connect(database_url, autocommit=True) as conn:
            conn.execute(ddl)
    except psycopg.Error as exc:
        logger.exception("Schema setup failed", extra={"error": str(exc)})
        raise StoreUnavailable(f"Schema setup failed: {exc}", original_error=exc) from exc
    logger.info("Chunk store schema ready", extra={"fts_language": fts_language})


class PostgresChunkStore:
    """
    PostgreSQL ChunkStore.

    Mental model:
    - rag_chunks is append-only in content: new text means a new row.
    - rag_chunk_refs holds the live slots; a chunk with no refs is tombstoned.
    """

    def __init__(
        self,
        pool: ConnectionPool | None = None,
        *,
        fts_language: str = "english",
        max_chunk_tokens: int | None = None,
        token_counter: TokenCounter | None = None,
    ):
        if not _LANGUAGE_RE.match(fts_language):
            raise ValueError(f"invalid full-text language: {fts_language!r}")
        self._pool = pool
        self._fts_language = fts_language
        self._max_chunk_tokens = max_chunk_tokens
        self._token_counter = token_counter

    # ============================================================
    # Pool / SQL helpers
    # ============================================================
    def _get_pool(self) -> ConnectionPool:
        if self._pool is not None:
            return self._pool

        from ..db.pool import get_pool

        return get_pool()

    def _fetchall(
        self, *, query: Any, params: Iterable[object], context_msg: str, extra: dict
    ) -> list[tuple]:
        try:
            with self._get_pool().connection() as conn:
                return conn.execute(query, tuple(params)).fetchall()
        except psycopg.Error as exc:
            logger.exception(context_msg, extra={**extra, "error": str(exc)})
            raise StoreUnavailable(f"{context_msg}: {exc}", original_error=exc) from exc

    @staticmethod
    def _row_to_chunk(row: tuple) -> Chunk:
        return Chunk(
            chunk_id=row[0],
            document_id=row[1],
            ordinal=row[2],
            text=row[3],
            token_count=row[4],
            content_hash=row[5],
            source_uri=row[6] or "",
            title=row[7],
            source_type=row[8],
            freshness_at=row[9],
            version=row[10],
            tombstoned_at=row[11],
            metadata=row[12] or {},
            document_ids=tuple(row[13] or ()),
        )

    def _validate(self, chunk: Chunk) -> int:
        if not chunk.text or not chunk.text.strip():
            raise ValueError("chunk text must not be empty")
        tokens = chunk.token_count
        if self._token_counter is not None:
            tokens = max(tokens, self._token_counter.count(chunk.text))
        if self._max_chunk_tokens is not None and tokens > self._max_chunk_tokens:
            raise ValueError(f"chunk has {tokens} tokens, max is {self._max_chunk_tokens}")
        return tokens

    # ============================================================
    # Writes
    # ============================================================
    def upsert(self, chunk: Chunk) -> UpsertResult:
        tokens = self._validate(chunk)
        extra = {"document_id": chunk.document_id, "ordinal": chunk.ordinal}
        try:
            with self._get_pool().connection() as conn:
                with conn.transaction():
                    return self._upsert_tx(conn, chunk, tokens)
        except psycopg.Error as exc:
            logger.exception("Chunk upsert failed", extra={**extra, "error": str(exc)})
            raise StoreUnavailable(f"Chunk upsert failed: {exc}", original_error=exc) from exc

    def _upsert_tx(self, conn, chunk: Chunk, tokens: int) -> UpsertResult:
        # Serialize writers on the slot and on the content hash.
        conn.execute(
            "SELECT pg_advisory_xact_lock(hashtext(%s)), pg_advisory_xact_lock(hashtext(%s))",
            (f"slot:{chunk.document_id}:{chunk.ordinal}", f"hash:{chunk.content_hash}"),
        )
        existing = conn.execute(
            """
            SELECT c.chunk_id, c.content_hash, c.version
              FROM rag_chunk_refs r JOIN rag_chunks c ON c.chunk_id = r.chunk_id
             WHERE r.document_id = %s AND r.ordinal = %s
            """,
            (chunk.document_id, chunk.ordinal),
        ).fetchone()

        if existing is not None and existing[1] == chunk.content_hash:
            return UpsertResult(chunk_id=existing[0], status="unchanged")

        tombstoned_id = None
        if existing is not None:
            conn.execute(
                "DELETE FROM rag_chunk_refs WHERE document_id = %s AND ordinal = %s",
                (chunk.document_id, chunk.ordinal),
            )
            cur = conn.execute(
                """
                UPDATE rag_chunks SET tombstoned_at = now()
                 WHERE chunk_id = %s AND tombstoned_at IS NULL
                   AND NOT EXISTS (SELECT 1 FROM rag_chunk_refs WHERE chunk_id = %s)
                """,
                (existing[0], existing[0]),
            )
            if cur.rowcount:
                tombstoned_id = existing[0]

        shared = conn.execute(
            "SELECT chunk_id FROM rag_chunks WHERE content_hash = %s AND tombstoned_at IS NULL",
            (chunk.content_hash,),
        ).fetchone()
        if shared is not None:
            conn.execute(
                "INSERT INTO rag_chunk_refs (document_id, ordinal, chunk_id) VALUES (%s, %s, %s)",
                (chunk.document_id, chunk.ordinal, shared[0]),
            )
            return UpsertResult(
                chunk_id=shared[0], status="deduplicated", tombstoned_chunk_id=tombstoned_id
            )

        chunk_id = chunk.chunk_id or uuid4().hex
        version = existing[2] + 1 if existing is not None else 1
        conn.execute(
            """
            INSERT INTO rag_chunks (
                chunk_id, document_id, ordinal, text, token_count, content_hash,
                source_uri, title, source_type, freshness_at, version, metadata
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                chunk_id,
                chunk.document_id,
                chunk.ordinal,
                chunk.text,
                tokens,
                chunk.content_hash,
                chunk.source_uri,
                chunk.title,
                chunk.source_type,
                chunk.freshness_at,
                version,
                Json(chunk.metadata or {}),
            ),
        )
        conn.execute(
            "INSERT INTO rag_chunk_refs (document_id, ordinal, chunk_id) VALUES (%s, %s, %s)",
            (chunk.document_id, chunk.ordinal, chunk_id),
        )
        for model_version, vector in chunk.embeddings.items():
            self._insert_embedding(conn, chunk_id, model_version, vector)

        return UpsertResult(
            chunk_id=chunk_id,
            status="superseded" if existing is not None else "created",
            tombstoned_chunk_id=tombstoned_id,
        )

    @staticmethod
    def _insert_embedding(conn, chunk_id: str, model_version: str, vector) -> None:
        conn.execute(
            """
            INSERT INTO rag_chunk_embeddings (chunk_id, model_version, embedding)
            VALUES (%s, %s, %s)
            ON CONFLICT (chunk_id, model_version) DO UPDATE SET embedding = EXCLUDED.embedding
            """,
            (chunk_id, model_version, np.asarray(vector, dtype=np.float32)),
        )

    def mark_stale(self, document_id: str) -> int:
        try:
            with self._get_pool().connection() as conn:
                with conn.transaction():
                    rows = conn.execute(
                        "DELETE FROM rag_chunk_refs WHERE document_id = %s RETURNING chunk_id",
                        (document_id,),
                    ).fetchall()
                    if not rows:
                        return 0
                    cur = conn.execute(
                        """
                        UPDATE rag_chunks c SET tombstoned_at = now()
                         WHERE c.chunk_id = ANY(%s) AND c.tombstoned_at IS NULL
                           AND NOT EXISTS (
                               SELECT 1 FROM rag_chunk_refs r WHERE r.chunk_id = c.chunk_id
                           )
                        """,
                        (list({row[0] for row in rows}),),
                    )
                    tombstoned = cur.rowcount
        except psycopg.Error as exc:
            logger.exception("mark_stale failed", extra={"document_id": document_id})
            raise StoreUnavailable(f"mark_stale failed: {exc}", original_error=exc) from exc
        logger.info(
            "Document marked stale",
            extra={"document_id": document_id, "tombstoned": tombstoned},
        )
        return tombstoned

    def set_embedding(self, chunk_id: str, embedding: Embedding) -> None:
        try:
            with self._get_pool().connection() as conn:
                self._insert_embedding(conn, chunk_id, embedding.model_version, embedding.vector)
        except psycopg.Error as exc:
            logger.exception("set_embedding failed", extra={"chunk_id": chunk_id})
            raise StoreUnavailable(f"set_embedding failed: {exc}", original_error=exc) from exc

    # ============================================================
    # Reads
    # ============================================================
    def get(self, chunk_id: str) -> Chunk | None:
        rows = self._fetchall(
            query=f"SELECT {_CHUNK_COLUMNS} FROM rag_chunks c WHERE c.chunk_id = %s",
            params=(chunk_id,),
            context_msg="Chunk get failed",
            extra={"chunk_id": chunk_id},
        )
        return self._row_to_chunk(rows[0]) if rows else None

    def bulk_get(self, chunk_ids: Sequence[str]) -> list[Chunk]:
        if not chunk_ids:
            return []
        rows = self._fetchall(
            query=f"SELECT {_CHUNK_COLUMNS} FROM rag_chunks c WHERE c.chunk_id = ANY(%s)",
            params=(list(chunk_ids),),
            context_msg="Chunk bulk_get failed",
            extra={"count": len(chunk_ids)},
        )
        by_id = {row[0]: self._row_to_chunk(row) for row in rows}
        return [by_id[cid] for cid in chunk_ids if cid in by_id]

    def search_by_vector(
        self, query_vector: Sequence[float], model_version: str, top_k: int
    ) -> list[tuple[Chunk, float]]:
        if top_k <= 0:
            return []
        vec = np.asarray(query_vector, dtype=np.float32)
        rows = self._fetchall(
            query=f"""
                SELECT {_CHUNK_COLUMNS}, 1 - (e.embedding <=> %s) AS score
                  FROM rag_chunk_embeddings e
                  JOIN rag_chunks c ON c.chunk_id = e.chunk_id
                 WHERE e.model_version = %s
                   AND c.tombstoned_at IS NULL
                   AND vector_dims(e.embedding) = %s
                 ORDER BY e.embedding <=> %s, c.chunk_id
                 LIMIT %s
            """,
            params=(vec, model_version, int(vec.shape[0]), vec, top_k),
            context_msg="Vector search failed",
            extra={"model_version": model_version, "top_k": top_k},
        )
        return [(self._row_to_chunk(row), float(row[14])) for row in rows]

    def search_by_keyword(self, query_text: str, top_k: int) -> list[tuple[Chunk, float]]:
        if not (query_text or "").strip() or top_k <= 0:
            return []
        # Normalization 32: rank / (rank + 1), keeps scores in [0, 1).
        query = sql.SQL(
            f"""
            SELECT {_CHUNK_COLUMNS}, ts_rank_cd(c.tsv, q, 32) AS score
              FROM rag_chunks c, websearch_to_tsquery({{language}}, %s) q
             WHERE c.tombstoned_at IS NULL AND c.tsv @@ q
             ORDER BY score DESC, c.chunk_id
             LIMIT %s
            """
        ).format(language=sql.Literal(self._fts_language))
        rows = self._fetchall(
            query=query,
            params=(query_text, top_k),
            context_msg="Keyword search failed",
            extra={"top_k": top_k},
        )
        return [(self._row_to_chunk(row), float(row[14])) for row in rows]

    def chunks_missing_embedding(self, model_version: str, limit: int) -> list[Chunk]:
        rows = self._fetchall(
            query=f"""
                SELECT {_CHUNK_COLUMNS} FROM rag_chunks c
                 WHERE c.tombstoned_at IS NULL
                   AND NOT EXISTS (
                       SELECT 1 FROM rag_chunk_embeddings e
                        WHERE e.chunk_id = c.chunk_id AND e.model_version = %s
                   )
                 ORDER BY c.chunk_id
                 LIMIT %s
            """,
            params=(model_version, limit),
            context_msg="Missing-embedding scan failed",
            extra={"model_version": model_version},
        )
        return [self._row_to_chunk(row) for row in rows]

    def freshness_report(
        self, threshold_days: int, now: datetime | None = None
    ) -> dict[str, Any]:
        rows = self._fetchall(
            query="""
                SELECT coalesce(nullif(source_uri, ''), document_id) AS source,
                       min(source_type), max(freshness_at), count(*)
                  FROM rag_chunks
                 WHERE tombstoned_at IS NULL
                 GROUP BY 1
            """,
            params=(),
            context_msg="Freshness report failed",
            extra={},
        )
        sources = [
            SourceFreshness(
                source_uri=row[0], source_type=row[1], last_indexed=row[2], chunk_count=row[3]
            )
            for row in rows
        ]
        return build_freshness_report(sources, threshold_days, now)

    def ping(self) -> bool:
        try:
            with self._get_pool().connection() as conn:
                conn.execute("SELECT 1")
            return True
        except psycopg.Error:
            return False
