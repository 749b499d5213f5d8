"""
===============================================================================
CRC CARD: application/fallback_chain.py
===============================================================================

Classes:
    FallbackChain
    CooldownRegistry

Responsibilities:
    - Try providers in order until one returns a valid result.
    - Bound every try by the provider timeout and by the provider's equal
      share of the caller's remaining deadline.
    - Retry transient failures (tenacity, backoff + jitter, Retry-After)
      before advancing; advance immediately on anything else.
    - Put providers with configuration errors in cool-down and skip them
      while cooling.
    - Record cost exactly once per successful call.
    - On exhaustion raise AllProvidersFailed carrying every sub-failure.

Collaborators:
    - domain.services.ProviderClient (generate / embed)
    - application.cost_tracker.CostTracker
    - crosscutting.retry.create_async_retrying
    - crosscutting.timing.Deadline
    - crosscutting.metrics (attempt outcomes, fallbacks, cool-downs)

Constraints:
    - Cool-down state is process-wide and guarded by an asyncio.Lock; a
      window is never extended by failures that happen while it is open.
    - Cancellation propagates untouched: a cancelled try records no cost
      and no attempt.
===============================================================================
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

from ..crosscutting.exceptions import (
    AllProvidersFailed,
    InvalidProviderResponse,
    ProviderConfigError,
    ProviderError,
    ProviderTimeout,
)
from ..crosscutting.logger import logger
from ..crosscutting.metrics import (
    observe_provider_latency,
    record_fallback_used,
    record_provider_attempt,
    record_provider_cooldown,
)
from ..crosscutting.retry import create_async_retrying
from ..crosscutting.timing import Deadline
from ..domain.entities import (
    GenerationRequest,
    GenerationResult,
    ProviderAttempt,
    ProviderProfile,
)
from ..domain.services import EmbeddingResponse, ProviderClient
from .cost_tracker import CostTracker

T = TypeVar("T")

TRUNCATION_FINISH_REASONS = frozenset({"length", "max_tokens", "MAX_TOKENS"})

# A try with less time left than this is not started.
MIN_TRY_SECONDS = 0.01


class CooldownRegistry:
    """
    provider_id -> cool-down expiry (monotonic clock).

    One instance per process (container); every chain shares it.
    """

    def __init__(
        self,
        *,
        period_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._period = float(period_seconds)
        self._clock = clock
        self._until: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def is_cooling(self, provider_id: str) -> bool:
        async with self._lock:
            until = self._until.get(provider_id)
            if until is None:
                return False
            if until <= self._clock():
                del self._until[provider_id]
                return False
            return True

    async def start(self, provider_id: str) -> bool:
        """R: Opens a window unless one is already open. True when opened."""
        async with self._lock:
            now = self._clock()
            until = self._until.get(provider_id)
            if until is not None and until > now:
                return False
            self._until[provider_id] = now + self._period
        record_provider_cooldown(provider_id)
        logger.warning(
            "Provider in cool-down",
            extra={"provider_id": provider_id, "cooldown_seconds": self._period},
        )
        return True

    def remaining(self, provider_id: str) -> float:
        until = self._until.get(provider_id)
        return max(0.0, until - self._clock()) if until is not None else 0.0

    def snapshot(self) -> Dict[str, float]:
        return {pid: self.remaining(pid) for pid in self._until if self.remaining(pid) > 0}


class FallbackChain:
    def __init__(
        self,
        clients: Mapping[str, ProviderClient],
        *,
        cost_tracker: Optional[CostTracker] = None,
        cooldowns: Optional[CooldownRegistry] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._clients = dict(clients)
        self._cost_tracker = cost_tracker
        self._cooldowns = cooldowns or CooldownRegistry()
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    @property
    def cooldowns(self) -> CooldownRegistry:
        return self._cooldowns

    def has_client(self, provider_id: str) -> bool:
        return provider_id in self._clients

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def invoke(
        self,
        request: GenerationRequest,
        ordered_providers: Sequence[ProviderProfile],
        *,
        deadline: Optional[Deadline] = None,
        attempts: Optional[List[ProviderAttempt]] = None,
    ) -> GenerationResult:
        """R: First valid generation along `ordered_providers`."""

        async def call(client: ProviderClient, profile: ProviderProfile) -> GenerationResult:
            return await client.generate(request, profile)

        def check(result: GenerationResult, profile: ProviderProfile) -> None:
            _validate_generation(result, request, profile)

        def usage(result: GenerationResult) -> tuple[int, int]:
            return result.tokens_in, result.tokens_out

        return await self._run(
            ordered_providers,
            call=call,
            check=check,
            usage=usage,
            conversation_id=request.conversation_id,
            deadline=deadline,
            attempts=attempts,
            operation=request.request_kind.value,
        )

    async def invoke_embedding(
        self,
        texts: Sequence[str],
        ordered_providers: Sequence[ProviderProfile],
        *,
        deadline: Optional[Deadline] = None,
        attempts: Optional[List[ProviderAttempt]] = None,
        conversation_id: str = "",
    ) -> EmbeddingResponse:
        """R: First valid embedding batch along `ordered_providers`."""

        async def call(client: ProviderClient, profile: ProviderProfile) -> EmbeddingResponse:
            return await client.embed(texts, profile)

        def check(response: EmbeddingResponse, profile: ProviderProfile) -> None:
            _validate_embedding(response, len(texts), profile)

        def usage(response: EmbeddingResponse) -> tuple[int, int]:
            return response.tokens_in, 0

        return await self._run(
            ordered_providers,
            call=call,
            check=check,
            usage=usage,
            conversation_id=conversation_id,
            deadline=deadline,
            attempts=attempts,
            operation="embedding",
        )

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------
    async def _run(
        self,
        ordered_providers: Sequence[ProviderProfile],
        *,
        call: Callable[[ProviderClient, ProviderProfile], Awaitable[T]],
        check: Callable[[T, ProviderProfile], None],
        usage: Callable[[T], tuple[int, int]],
        conversation_id: str,
        deadline: Optional[Deadline],
        attempts: Optional[List[ProviderAttempt]],
        operation: str,
    ) -> T:
        log: List[ProviderAttempt] = attempts if attempts is not None else []
        start_len = len(log)

        for position, profile in enumerate(ordered_providers):
            if deadline is not None and deadline.expired:
                logger.warning(
                    "Deadline reached before all providers were tried",
                    extra={"operation": operation, "tried": len(log) - start_len},
                )
                break

            client = self._clients.get(profile.provider_id)
            if client is None:
                log.append(_failed(profile, "config", "no client configured", 0.0))
                record_provider_attempt(profile.provider_id, "config")
                continue

            if await self._cooldowns.is_cooling(profile.provider_id):
                log.append(_failed(profile, "cooldown", "provider cooling down", 0.0))
                record_provider_attempt(profile.provider_id, "cooldown")
                continue

            # Equal share of what is left per remaining provider; the last one gets all of it.
            slot = (
                deadline.sub_deadline(1.0 / (len(ordered_providers) - position))
                if deadline is not None
                else None
            )
            started = time.perf_counter()
            try:
                result = await self._try_with_retry(client, profile, call, check, slot)
            except asyncio.CancelledError:
                raise
            except ProviderError as exc:
                latency_ms = _elapsed_ms(started)
                log.append(_failed(profile, exc.error_kind, exc.message, latency_ms))
                record_provider_attempt(profile.provider_id, exc.error_kind)
                if isinstance(exc, ProviderConfigError):
                    await self._cooldowns.start(profile.provider_id)
                logger.warning(
                    "Provider attempt failed",
                    extra={
                        "operation": operation,
                        "provider_id": profile.provider_id,
                        "model_id": profile.model_id,
                        "error_kind": exc.error_kind,
                        "error": exc.message,
                    },
                )
                continue
            except Exception as exc:
                latency_ms = _elapsed_ms(started)
                log.append(_failed(profile, "error", f"{type(exc).__name__}: {exc}", latency_ms))
                record_provider_attempt(profile.provider_id, "error")
                logger.exception(
                    "Provider attempt raised unexpected error",
                    extra={"operation": operation, "provider_id": profile.provider_id},
                )
                continue

            latency_ms = _elapsed_ms(started)
            observe_provider_latency(profile.provider_id, latency_ms / 1000.0)
            record_provider_attempt(profile.provider_id, "success")
            log.append(
                ProviderAttempt(
                    provider_id=profile.provider_id,
                    model_id=profile.model_id,
                    success=True,
                    latency_ms=latency_ms,
                )
            )
            if position > 0:
                record_fallback_used()

            if self._cost_tracker is not None:
                tokens_in, tokens_out = usage(result)
                self._cost_tracker.record(
                    profile.provider_id,
                    profile.model_id,
                    tokens_in,
                    tokens_out,
                    conversation_id,
                    profile=profile,
                )

            logger.info(
                "Provider call succeeded",
                extra={
                    "operation": operation,
                    "provider_id": profile.provider_id,
                    "model_id": profile.model_id,
                    "position": position,
                    "latency_ms": latency_ms,
                },
            )
            return result

        failures = log[start_len:]
        raise AllProvidersFailed(
            f"All providers failed for {operation} ({len(failures)} attempts)",
            attempts=failures,
        )

    async def _try_with_retry(
        self,
        client: ProviderClient,
        profile: ProviderProfile,
        call: Callable[[ProviderClient, ProviderProfile], Awaitable[T]],
        check: Callable[[T, ProviderProfile], None],
        deadline: Optional[Deadline],
    ) -> T:
        retrying = create_async_retrying(
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
            deadline=deadline,
            sleep=self._sleep,
        )
        async for attempt in retrying:
            with attempt:
                timeout = (
                    deadline.cap(profile.timeout_seconds)
                    if deadline is not None
                    else profile.timeout_seconds
                )
                if timeout < MIN_TRY_SECONDS:
                    raise ProviderTimeout(
                        f"{profile.provider_id}: no time left for call",
                        provider_id=profile.provider_id,
                    )
                try:
                    result = await asyncio.wait_for(call(client, profile), timeout)
                except asyncio.TimeoutError as exc:
                    raise ProviderTimeout(
                        f"{profile.provider_id}: timed out after {timeout:.2f}s",
                        provider_id=profile.provider_id,
                        original_error=exc,
                    ) from exc
                check(result, profile)
                return result
        raise AssertionError("retry loop exited without outcome")  # pragma: no cover


# ------------------------------------------------------------------
# Validity checks
# ------------------------------------------------------------------
def _validate_generation(
    result: GenerationResult, request: GenerationRequest, profile: ProviderProfile
) -> None:
    text = (result.text or "").strip()
    if not text:
        raise InvalidProviderResponse(
            f"{profile.provider_id}: empty response", provider_id=profile.provider_id
        )
    minimum = request.min_response_chars
    if minimum > 0 and len(text) < minimum:
        reason = "truncated" if result.finish_reason in TRUNCATION_FINISH_REASONS else "too short"
        raise InvalidProviderResponse(
            f"{profile.provider_id}: response {reason} ({len(text)} < {minimum} chars)",
            provider_id=profile.provider_id,
        )


def _validate_embedding(
    response: EmbeddingResponse, expected: int, profile: ProviderProfile
) -> None:
    if len(response.vectors) != expected:
        raise InvalidProviderResponse(
            f"{profile.provider_id}: expected {expected} vectors, got {len(response.vectors)}",
            provider_id=profile.provider_id,
        )
    dims = {len(v) for v in response.vectors}
    if 0 in dims or len(dims) > 1:
        raise InvalidProviderResponse(
            f"{profile.provider_id}: empty or ragged embedding vectors",
            provider_id=profile.provider_id,
        )
    if profile.embedding_dimension is not None and dims and dims != {profile.embedding_dimension}:
        raise InvalidProviderResponse(
            f"{profile.provider_id}: unexpected dimensionality {dims}",
            provider_id=profile.provider_id,
        )


def _failed(
    profile: ProviderProfile, error_kind: str, error: str, latency_ms: float
) -> ProviderAttempt:
    return ProviderAttempt(
        provider_id=profile.provider_id,
        model_id=profile.model_id,
        success=False,
        latency_ms=latency_ms,
        error_kind=error_kind,
        error=error[:300],
    )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
