"""
Name: Integration Test DB Setup

Responsibilities:
  - Resolve DATABASE_URL (explicit, else POSTGRES_* variables)
  - Create the chunk store schema once per session and open the pool
  - Truncate the chunk tables between tests

Notes:
  - Only runs when RUN_INTEGRATION=1
  - Requires a pgvector-enabled PostgreSQL (pgvector/pgvector image)
"""

from __future__ import annotations

import os

import pytest

DB_USER = os.getenv("POSTGRES_USER", "postgres")
DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
DB_HOST = os.getenv("POSTGRES_HOST", "localhost")
DB_PORT = os.getenv("POSTGRES_HOST_PORT", "5432")
DB_NAME = os.getenv("POSTGRES_DB", "rag")
DEFAULT_DATABASE_URL = f"postgresql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"

RUN_INTEGRATION = os.getenv("RUN_INTEGRATION") == "1"


def _require_pgvector(url: str) -> None:
    from psycopg import connect

    try:
        with connect(url, autocommit=True, connect_timeout=2) as conn:
            row = conn.execute(
                "SELECT 1 FROM pg_available_extensions WHERE name = 'vector'"
            ).fetchone()
    except Exception as exc:
        raise RuntimeError(f"PostgreSQL is not reachable at {url}") from exc
    if row is None:
        raise RuntimeError(
            "pgvector is required for integration tests. "
            "Use the pgvector/pgvector image or install the extension."
        )


@pytest.fixture(scope="session")
def database_url() -> str:
    if not RUN_INTEGRATION:
        pytest.skip("Set RUN_INTEGRATION=1 to run integration tests")
    url = os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL
    _require_pgvector(url)
    return url


@pytest.fixture(scope="session")
def db_pool(database_url):
    from rag_engine.infrastructure.db.pool import close_pool, init_pool
    from rag_engine.infrastructure.store.postgres import ensure_schema

    ensure_schema(database_url)
    pool = init_pool(database_url, min_size=1, max_size=4, statement_timeout_ms=5_000)
    yield pool
    close_pool()


@pytest.fixture
def clean_db(db_pool):
    with db_pool.connection() as conn:
        conn.execute(
            "TRUNCATE rag_chunk_embeddings, rag_chunk_refs, rag_chunks"
        )
    yield db_pool
