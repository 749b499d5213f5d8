"""
Chunk store adapters.

- InMemoryChunkStore: tests / local dev
- PostgresChunkStore: pgvector + full-text search
"""

from .freshness import SourceFreshness, build_freshness_report
from .in_memory import InMemoryChunkStore
from .postgres import PostgresChunkStore, ensure_schema

__all__ = [
    "InMemoryChunkStore",
    "PostgresChunkStore",
    "ensure_schema",
    "SourceFreshness",
    "build_freshness_report",
]
