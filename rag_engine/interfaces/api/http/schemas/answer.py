"""
===============================================================================
CRC CARD: schemas/answer.py
===============================================================================

Module:
    HTTP schemas for the Query API (grounded answers)

Responsibilities:
    - Request / response DTOs for POST /v1/answer.
    - Validate query length, token budget and cost preference.

Collaborators:
    - crosscutting.config.get_settings (limits)
===============================================================================
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator

from rag_engine.crosscutting.config import get_settings
from rag_engine.domain.entities import AnswerResult

_settings = get_settings()


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------
class AnswerReq(BaseModel):
    query: Annotated[
        str,
        Field(..., min_length=1, max_length=_settings.max_query_chars),
    ]
    conversation_id: str = Field(default="", max_length=128)
    token_budget: int | None = Field(default=None, ge=1, le=200_000)
    cost_preference: Literal["cost", "balanced", "quality"] = "balanced"

    @field_validator("query")
    @classmethod
    def strip_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query must not be blank")
        return v


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------
class CitationOut(BaseModel):
    marker: str
    chunk_id: str
    source_uri: str
    label: str
    title: str | None = None


class UsageOut(BaseModel):
    tokens_in: int
    tokens_out: int


class AttemptOut(BaseModel):
    provider_id: str
    model_id: str
    success: bool
    latency_ms: float
    error_kind: str | None = None


class AnswerRes(BaseModel):
    query_id: str
    conversation_id: str
    answer: str
    state: str
    citations: list[CitationOut]
    citations_synthesized: bool
    provider_used: str | None
    model_used: str | None
    usage: UsageOut
    approval_status: str
    integrity_violations: list[str]
    degraded: list[str]
    attempts: list[AttemptOut]
    timings: dict[str, float]

    @classmethod
    def from_result(cls, result: AnswerResult) -> "AnswerRes":
        return cls(
            query_id=result.query_id,
            conversation_id=result.conversation_id,
            answer=result.text,
            state=result.state.value,
            citations=[CitationOut(**c.to_dict()) for c in result.citations],
            citations_synthesized=result.citations_synthesized,
            provider_used=result.provider_used,
            model_used=result.model_used,
            usage=UsageOut(**result.usage),
            approval_status=result.approval_status.value,
            integrity_violations=result.integrity_violations,
            degraded=result.degraded,
            attempts=[
                AttemptOut(
                    provider_id=a.provider_id,
                    model_id=a.model_id,
                    success=a.success,
                    latency_ms=a.latency_ms,
                    error_kind=a.error_kind,
                )
                for a in result.attempts
            ],
            timings=result.timings,
        )
