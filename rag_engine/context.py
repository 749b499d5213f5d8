"""
===============================================================================
CRC CARD: rag_engine/context.py (per-query context)
===============================================================================

Responsibilities:
  - Keep query-scoped context in ContextVars (async-safe).
  - Correlate logs and metrics without threading ids through every call.
  - Provide small helpers: set_*(), get_context_dict(), clear_context().

Collaborators:
  - application.orchestrator: sets query_id / conversation_id / stage.
  - crosscutting.logger: enriches every record with get_context_dict().
  - interfaces.api.http: sets request_id per HTTP request.

Constraints:
  - Only primitive str values (safe to serialize).
  - Empty string means "not available".
===============================================================================
"""

from __future__ import annotations

from contextvars import ContextVar
from typing import Final

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
query_id_var: ContextVar[str] = ContextVar("query_id", default="")
conversation_id_var: ContextVar[str] = ContextVar("conversation_id", default="")
stage_var: ContextVar[str] = ContextVar("stage", default="")

_CTX_REQUEST_ID: Final[str] = "request_id"
_CTX_QUERY_ID: Final[str] = "query_id"
_CTX_CONVERSATION_ID: Final[str] = "conversation_id"
_CTX_STAGE: Final[str] = "stage"


def set_request_context(*, request_id: str = "") -> None:
    request_id_var.set(request_id or "")


def set_query_context(*, query_id: str = "", conversation_id: str = "") -> None:
    """Sets the ids of the query being answered by the current task."""
    query_id_var.set(query_id or "")
    conversation_id_var.set(conversation_id or "")


def set_stage(stage: str) -> None:
    stage_var.set(stage or "")


def get_context_dict() -> dict[str, str]:
    """
    Returns the current context as a dict, omitting empty keys.

    Typical use:
      - Structured log enrichment.
    """
    ctx: dict[str, str] = {}

    if val := request_id_var.get():
        ctx[_CTX_REQUEST_ID] = val
    if val := query_id_var.get():
        ctx[_CTX_QUERY_ID] = val
    if val := conversation_id_var.get():
        ctx[_CTX_CONVERSATION_ID] = val
    if val := stage_var.get():
        ctx[_CTX_STAGE] = val

    return ctx


def clear_context() -> None:
    """Clears the context once a query or request finishes."""
    request_id_var.set("")
    query_id_var.set("")
    conversation_id_var.set("")
    stage_var.set("")
