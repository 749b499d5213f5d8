"""
Name: Google (Gemini) provider client

Responsibilities:
  - Generation and embeddings through the google-genai SDK (async surface)
  - Map SDK errors (google.genai.errors.APIError) to engine provider errors

Collaborators:
  - google.genai.Client (injectable for tests)
  - retry.get_http_status_code / is_transient_error (classification)

Constraints:
  - No retries here (fallback chain owns retry policy)
  - Embedding dimensionality validated against the profile when known
"""

from __future__ import annotations

import time
from typing import Sequence

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ...crosscutting.exceptions import (
    ProviderConfigError,
    ProviderError,
    ProviderPermanentError,
    ProviderTransientError,
)
from ...crosscutting.logger import logger
from ...domain.entities import GenerationRequest, GenerationResult, ProviderProfile
from ...domain.services import EmbeddingResponse
from ...crosscutting.retry import CONFIG_HTTP_CODES, get_http_status_code, is_transient_error

TASK_DOCUMENT = "RETRIEVAL_DOCUMENT"
TASK_QUERY = "RETRIEVAL_QUERY"


def _map_sdk_error(provider_id: str, exc: Exception) -> ProviderError:
    status = get_http_status_code(exc)
    message = f"{provider_id}: {type(exc).__name__}: {str(exc)[:200]}"
    if status in CONFIG_HTTP_CODES or status == 404:
        return ProviderConfigError(message, provider_id=provider_id, status_code=status)
    if is_transient_error(exc):
        return ProviderTransientError(message, provider_id=provider_id, status_code=status)
    return ProviderPermanentError(message, provider_id=provider_id, status_code=status)


class GoogleGenAIClient:
    """R: ProviderClient backed by google-genai."""

    def __init__(
        self,
        *,
        provider_id: str = "google",
        api_key: str = "",
        client: genai.Client | None = None,
        embedding_task_type: str = TASK_DOCUMENT,
    ) -> None:
        resolved_key = (api_key or "").strip()
        if not resolved_key and client is None:
            logger.error("GoogleGenAIClient: GOOGLE_API_KEY not configured")
            raise ProviderConfigError(
                f"{provider_id}: API key not configured", provider_id=provider_id
            )
        self.provider_id = provider_id
        self._client = client or genai.Client(api_key=resolved_key)
        self._embedding_task_type = embedding_task_type

    async def generate(
        self, request: GenerationRequest, profile: ProviderProfile
    ) -> GenerationResult:
        config = types.GenerateContentConfig(
            system_instruction=request.system_prompt or None,
            max_output_tokens=request.max_tokens,
            temperature=request.temperature,
        )
        started = time.perf_counter()
        try:
            response = await self._client.aio.models.generate_content(
                model=profile.model_id, contents=request.prompt, config=config
            )
        except genai_errors.APIError as exc:
            raise _map_sdk_error(self.provider_id, exc) from exc
        latency_ms = (time.perf_counter() - started) * 1000

        usage = getattr(response, "usage_metadata", None)
        candidates = getattr(response, "candidates", None) or []
        finish_reason = None
        if candidates:
            reason = getattr(candidates[0], "finish_reason", None)
            finish_reason = getattr(reason, "value", reason)

        return GenerationResult(
            text=(getattr(response, "text", None) or "").strip(),
            provider_id=self.provider_id,
            model_id=profile.model_id,
            tokens_in=int(getattr(usage, "prompt_token_count", 0) or 0),
            tokens_out=int(getattr(usage, "candidates_token_count", 0) or 0),
            latency_ms=round(latency_ms, 2),
            finish_reason=str(finish_reason) if finish_reason is not None else None,
        )

    async def embed(
        self, texts: Sequence[str], profile: ProviderProfile
    ) -> EmbeddingResponse:
        if not texts:
            return EmbeddingResponse(vectors=[], model_id=profile.model_id)

        try:
            response = await self._client.aio.models.embed_content(
                model=profile.model_id,
                contents=list(texts),
                config=types.EmbedContentConfig(task_type=self._embedding_task_type),
            )
        except genai_errors.APIError as exc:
            raise _map_sdk_error(self.provider_id, exc) from exc

        embeddings = getattr(response, "embeddings", None) or []
        if len(embeddings) != len(texts):
            raise ProviderPermanentError(
                f"{self.provider_id}: embedding count mismatch "
                f"(expected {len(texts)}, got {len(embeddings)})",
                provider_id=self.provider_id,
            )

        vectors: list[list[float]] = []
        for idx, embedding in enumerate(embeddings):
            values = list(getattr(embedding, "values", None) or [])
            if not values:
                raise ProviderPermanentError(
                    f"{self.provider_id}: empty embedding at index {idx}",
                    provider_id=self.provider_id,
                )
            if (
                profile.embedding_dimension is not None
                and len(values) != profile.embedding_dimension
            ):
                raise ProviderPermanentError(
                    f"{self.provider_id}: unexpected dimensionality "
                    f"(expected {profile.embedding_dimension}, got {len(values)})",
                    provider_id=self.provider_id,
                )
            vectors.append(values)

        return EmbeddingResponse(vectors=vectors, model_id=profile.model_id)

    async def aclose(self) -> None:
        return None
