"""
===============================================================================
CRC CARD: routers/answer.py
===============================================================================

Name:
    Query API router

Responsibilities:
    - POST /v1/answer: run the RAG orchestrator for one question.
    - Failed queries become RFC 7807 errors; NoGroundingAvailable is a
      regular 200 answer with state "no_grounding_available".

Collaborators:
    - container.get_orchestrator
    - application.orchestrator.RagOrchestrator
    - error_mapping.raise_http_error
===============================================================================
"""

from __future__ import annotations

from uuid import uuid4

from fastapi import APIRouter, Depends

from rag_engine.application.orchestrator import RagOrchestrator
from rag_engine.container import get_orchestrator
from rag_engine.crosscutting.error_responses import OPENAPI_ERROR_RESPONSES
from rag_engine.domain.entities import QueryState

from ..error_mapping import raise_http_error
from ..schemas.answer import AnswerReq, AnswerRes

router = APIRouter()


@router.post(
    "/answer",
    response_model=AnswerRes,
    tags=["query"],
    responses=OPENAPI_ERROR_RESPONSES,
)
async def answer(
    req: AnswerReq,
    orchestrator: RagOrchestrator = Depends(get_orchestrator),
) -> AnswerRes:
    conversation_id = req.conversation_id or uuid4().hex
    try:
        result = await orchestrator.answer(
            conversation_id,
            req.query,
            token_budget=req.token_budget,
            cost_preference=req.cost_preference,
        )
    except ValueError as exc:
        raise_http_error(exc)

    if result.state == QueryState.FAILED and result.error is not None:
        raise_http_error(result.error)
    return AnswerRes.from_result(result)
