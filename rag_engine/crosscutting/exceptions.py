"""
===============================================================================
MODULE: Typed engine errors
===============================================================================

Goal
----
Consistent internal errors with:
- a stable error_code
- an error_id to correlate with logs
- a human message (never carrying secrets)

-------------------------------------------------------------------------------
CRC (Component Card)
-------------------------------------------------------------------------------
Component:
  RAGError + subclasses

Responsibilities:
  - Model the engine's failure taxonomy (store, embedding, provider,
    grounding, citation integrity, token budget, deadline).
  - Flag which failures the caller may retry.

Collaborators:
  - application/* (raise / degrade)
  - interfaces/api/http/error_mapping.py (maps to RFC 7807)
  - crosscutting/logger.py
===============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence
from uuid import uuid4

if TYPE_CHECKING:
    from ..domain.entities import ProviderAttempt


@dataclass(frozen=True)
class ErrorResponse:
    """Minimal error payload for callers outside the HTTP layer."""

    error_code: str
    message: str
    error_id: str
    retryable: bool = False

    def to_dict(self) -> dict:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "error_id": self.error_id,
            "retryable": self.retryable,
        }


class RAGError(Exception):
    """
    ----------------------------------------------------------------------------
    CRC (Class Card)
    ----------------------------------------------------------------------------
    Class:
      RAGError

    Responsibilities:
      - Base for every engine error
      - Carry error_code + error_id + message (+ original error)

    Collaborators:
      - interfaces/api/http/error_mapping.py
    ----------------------------------------------------------------------------
    """

    error_code: str = "RAG_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_id: str | None = None,
        original_error: Exception | None = None,
    ):
        self.message = message
        self.error_id = error_id or str(uuid4())
        self.original_error = original_error
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error_code=self.error_code,
            message=self.message,
            error_id=self.error_id,
            retryable=self.retryable,
        )


class ConfigurationError(RAGError):
    """Invalid or incomplete engine configuration."""

    error_code: str = "CONFIGURATION_ERROR"


# -----------------------------------------------------------------------------
# Retrieval
# -----------------------------------------------------------------------------
class StoreUnavailable(RAGError):
    """Chunk Store unreachable. The query fails fast with no partial answer."""

    error_code: str = "STORE_UNAVAILABLE"
    retryable: bool = True


class EmbeddingFailed(RAGError):
    """Embedding could not be produced. Search degrades to lexical-only."""

    error_code: str = "EMBEDDING_FAILED"


# -----------------------------------------------------------------------------
# Providers
# -----------------------------------------------------------------------------
class ProviderError(RAGError):
    """Base for a single failed provider call."""

    error_code: str = "PROVIDER_ERROR"
    error_kind: str = "error"

    def __init__(
        self,
        message: str,
        *,
        provider_id: str = "",
        status_code: int | None = None,
        retry_after: float | None = None,
        error_id: str | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(message, error_id=error_id, original_error=original_error)
        self.provider_id = provider_id
        self.status_code = status_code
        self.retry_after = retry_after


class ProviderTransientError(ProviderError):
    """Timeouts, rate limits, 5xx. Retried with backoff before falling back."""

    error_code: str = "PROVIDER_TRANSIENT"
    error_kind: str = "transient"


class ProviderTimeout(ProviderTransientError):
    error_code: str = "PROVIDER_TIMEOUT"
    error_kind: str = "timeout"


class ProviderPermanentError(ProviderError):
    """Malformed request and other non-retryable 4xx. Falls back immediately."""

    error_code: str = "PROVIDER_PERMANENT"
    error_kind: str = "permanent"


class ProviderConfigError(ProviderPermanentError):
    """Bad credentials, unknown model. Puts the provider in cool-down."""

    error_code: str = "PROVIDER_CONFIG"
    error_kind: str = "config"


class InvalidProviderResponse(ProviderError):
    """Empty or truncated response that fails validity checks."""

    error_code: str = "PROVIDER_INVALID_RESPONSE"
    error_kind: str = "invalid_response"


class AllProvidersFailed(RAGError):
    """Every provider in the chain failed. Retryable later by the caller."""

    error_code: str = "ALL_PROVIDERS_FAILED"
    retryable: bool = True

    def __init__(
        self,
        message: str,
        attempts: Sequence["ProviderAttempt"] = (),
        error_id: str | None = None,
    ):
        super().__init__(message, error_id=error_id)
        self.attempts = list(attempts)


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------
class NoGroundingAvailable(RAGError):
    """Assembled context is empty; the engine refuses to answer ungrounded."""

    error_code: str = "NO_GROUNDING_AVAILABLE"


class CitationIntegrityViolation(RAGError):
    """A generated marker referenced a chunk outside the assembled context."""

    error_code: str = "CITATION_INTEGRITY_VIOLATION"

    def __init__(self, message: str, marker: str = "", error_id: str | None = None):
        super().__init__(message, error_id=error_id)
        self.marker = marker


class TokenBudgetExceeded(RAGError):
    """Internal invariant failure: an assembled context exceeds its budget."""

    error_code: str = "TOKEN_BUDGET_EXCEEDED"


class QueryTimeout(RAGError):
    """The overall query deadline (or a stage sub-deadline) expired."""

    error_code: str = "QUERY_TIMEOUT"
    retryable: bool = True
