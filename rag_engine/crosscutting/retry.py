"""rag_engine.crosscutting.retry

Name: Retry helper with exponential backoff + jitter

What it is
----------
Resilience utility for provider calls:
  - Error classification: **transient** (retry) vs **permanent** (fail fast)
  - tenacity `AsyncRetrying` with **exponential backoff + jitter**
  - Honors a provider's Retry-After hint when present
  - Structured logging of every retry (query_id comes from the log context)

CRC (Component Card)
--------------------
Component: retry helper
Responsibilities:
  - Decide which errors are retryable
  - Build the standard async retry policy used by the fallback chain
  - Log attempts with useful context
Collaborators:
  - tenacity (retry engine)
  - crosscutting.timing.Deadline (never sleep past the query deadline)
  - crosscutting.logger
Constraints:
  - Retry ONLY transient errors (408, 429, 5xx, timeouts, connection issues)
  - Never retry permanent errors (400, 401, 403, 404, malformed request)
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .exceptions import (
    InvalidProviderResponse,
    ProviderPermanentError,
    ProviderTransientError,
)
from .logger import logger
from .timing import Deadline

TRANSIENT_HTTP_CODES: frozenset[int] = frozenset(
    {
        408,  # Request Timeout
        429,  # Too Many Requests
        500,
        502,
        503,
        504,
    }
)

PERMANENT_HTTP_CODES: frozenset[int] = frozenset({400, 401, 403, 404, 422})

CONFIG_HTTP_CODES: frozenset[int] = frozenset({401, 403})


def get_http_status_code(exception: BaseException) -> int | None:
    """R: Extracts an HTTP status code from SDK / httpx / provider errors."""
    status_code = getattr(exception, "status_code", None)
    if isinstance(status_code, int):
        return status_code

    resp = getattr(exception, "response", None)
    if resp is not None:
        status_code = getattr(resp, "status_code", None)
        if isinstance(status_code, int):
            return status_code

    # google-genai APIError exposes `code`.
    code = getattr(exception, "code", None)
    if isinstance(code, int) and code >= 100:
        return code

    return None


def is_transient_error(exception: BaseException) -> bool:
    """R: Transient (retry) or permanent (fail fast).

    Order:
      1) Engine provider errors carry their own classification.
      2) HTTP status code, when present.
      3) Built-in timeout / connection errors.
      4) Class-name and message heuristics for loosely typed SDKs.
      5) Default: do not retry unknown errors.
    """
    if isinstance(exception, ProviderTransientError):
        return True
    if isinstance(exception, (ProviderPermanentError, InvalidProviderResponse)):
        return False

    status_code = get_http_status_code(exception)
    if status_code is not None:
        if status_code in PERMANENT_HTTP_CODES:
            return False
        if status_code in TRANSIENT_HTTP_CODES:
            return True

    if isinstance(exception, (TimeoutError, ConnectionError)):
        return True

    exception_name = type(exception).__name__.lower()
    transient_name_patterns = (
        "timeout",
        "timedout",
        "connection",
        "connect",
        "temporary",
        "unavailable",
        "resourceexhausted",
        "deadline",
    )
    if any(p in exception_name for p in transient_name_patterns):
        return True

    message = str(exception).lower()
    transient_message_patterns = (
        "rate limit",
        "too many requests",
        "quota exceeded",
        "temporarily unavailable",
        "service unavailable",
        "overloaded",
        "connection reset",
        "connection refused",
        "timed out",
        "deadline exceeded",
    )
    return any(p in message for p in transient_message_patterns)


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After header in seconds (HTTP-date form is ignored)."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _log_retry(retry_state: RetryCallState) -> None:
    """R: before_sleep hook: one structured warning per retry."""
    wait_time = (
        retry_state.next_action.sleep if retry_state.next_action is not None else 0
    )

    exc: Optional[BaseException] = None
    if retry_state.outcome is not None:
        exc = retry_state.outcome.exception()

    logger.warning(
        "Retrying provider call",
        extra={
            "attempt": retry_state.attempt_number,
            "wait_seconds": round(float(wait_time), 2),
            "provider_id": getattr(exc, "provider_id", None),
            "error": str(exc) if exc else None,
            "error_type": type(exc).__name__ if exc else None,
        },
    )


class _WaitRetryAfterOrBackoff:
    """Provider hint first; exponential jitter otherwise. Capped by the deadline."""

    def __init__(self, base_delay: float, max_delay: float, deadline: Deadline | None):
        self._backoff = wait_exponential_jitter(
            initial=base_delay, max=max_delay, jitter=base_delay
        )
        self._max_delay = max_delay
        self._deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hinted = getattr(exc, "retry_after", None)
        if isinstance(hinted, (int, float)) and hinted >= 0:
            delay = min(float(hinted), self._max_delay)
        else:
            delay = self._backoff(retry_state)
        if self._deadline is not None:
            delay = min(delay, self._deadline.remaining())
        return max(0.0, delay)


def create_async_retrying(
    *,
    max_attempts: int,
    base_delay: float,
    max_delay: float,
    deadline: Deadline | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncRetrying:
    """R: Standard async retry policy.

    - stop: max_attempts, or the deadline is spent
    - wait: Retry-After hint, else exponential backoff + jitter
    - retry: only when is_transient_error(exception)
    - reraise: the last provider error propagates unchanged
    """
    if max_attempts <= 0:
        raise ValueError("max_attempts must be > 0")
    if base_delay < 0:
        raise ValueError("base_delay must be >= 0")
    if max_delay <= 0:
        raise ValueError("max_delay must be > 0")

    stop = stop_after_attempt(max_attempts)
    if deadline is not None:
        # Deadline stop is evaluated after each failed try.
        stop = stop | (lambda _state: deadline.expired)

    return AsyncRetrying(
        stop=stop,
        wait=_WaitRetryAfterOrBackoff(base_delay, max_delay, deadline),
        retry=retry_if_exception(is_transient_error),
        before_sleep=_log_retry,
        reraise=True,
        sleep=sleep,
    )
