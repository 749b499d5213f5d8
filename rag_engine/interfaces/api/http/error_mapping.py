"""
===============================================================================
CRC CARD: error_mapping.py (engine error -> HTTP RFC 7807)
===============================================================================

Responsibilities:
  - Translate the error carried by a failed AnswerResult (and errors raised
    by store operations) into AppHTTPException.
  - Keep the application layer free of HTTP.

Rules:
  - AllProvidersFailed -> 503 + Retry-After (retryable later).
  - StoreUnavailable   -> 503.
  - QueryTimeout       -> 503 + Retry-After.
  - ValueError         -> 422.
  - Anything else      -> 500 (details stay in the logs).

Collaborators:
  - crosscutting.error_responses (factories)
  - crosscutting.exceptions (engine taxonomy)
===============================================================================
"""

from __future__ import annotations

from typing import NoReturn

from rag_engine.crosscutting.error_responses import (
    AppHTTPException,
    ErrorCode,
    internal_error,
    service_unavailable,
    validation_error,
)
from rag_engine.crosscutting.exceptions import (
    AllProvidersFailed,
    ConfigurationError,
    EmbeddingFailed,
    QueryTimeout,
    StoreUnavailable,
)

PROVIDERS_RETRY_AFTER_SECONDS = 30
TIMEOUT_RETRY_AFTER_SECONDS = 5


def to_http_error(error: BaseException) -> AppHTTPException:
    if isinstance(error, AllProvidersFailed):
        return service_unavailable(
            ErrorCode.ALL_PROVIDERS_FAILED,
            "All language-model providers failed; retry later",
            retry_after=PROVIDERS_RETRY_AFTER_SECONDS,
        )
    if isinstance(error, StoreUnavailable):
        return service_unavailable(ErrorCode.STORE_UNAVAILABLE, "Chunk store unavailable")
    if isinstance(error, QueryTimeout):
        return service_unavailable(
            ErrorCode.QUERY_TIMEOUT,
            "The query did not finish in time",
            retry_after=TIMEOUT_RETRY_AFTER_SECONDS,
        )
    if isinstance(error, EmbeddingFailed):
        return service_unavailable(ErrorCode.SERVICE_UNAVAILABLE, "Embedding service unavailable")
    if isinstance(error, ConfigurationError):
        return AppHTTPException(500, ErrorCode.CONFIGURATION_ERROR, "Engine misconfigured")
    if isinstance(error, ValueError):
        return validation_error(str(error))
    return internal_error()


def raise_http_error(error: BaseException) -> NoReturn:
    raise to_http_error(error) from error
