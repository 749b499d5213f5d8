"""HTTP DTOs (pydantic)."""

from .answer import AnswerReq, AnswerRes, AttemptOut, CitationOut, UsageOut
from .chunks import ChunkRes, ChunkUpsertReq, ChunkUpsertRes, IndexRunRes, MarkStaleRes

__all__ = [
    "AnswerReq",
    "AnswerRes",
    "AttemptOut",
    "CitationOut",
    "UsageOut",
    "ChunkRes",
    "ChunkUpsertReq",
    "ChunkUpsertRes",
    "IndexRunRes",
    "MarkStaleRes",
]
