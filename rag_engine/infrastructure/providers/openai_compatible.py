"""
Name: OpenAI-compatible provider client

Responsibilities:
  - Chat completions and embeddings over the OpenAI REST API
  - Serve self-hosted OpenAI-compatible servers (vLLM, llama.cpp, Ollama)
    through the same wire format with a different base URL
  - Translate responses into GenerationResult / EmbeddingResponse

Collaborators:
  - httpx.AsyncClient (injectable for tests through MockTransport)
  - providers.http.post_json (error mapping)

Constraints:
  - No retries here (fallback chain owns retry policy)
  - api_key optional only for self-hosted endpoints
"""

from __future__ import annotations

import time
from typing import Sequence

import httpx

from ...crosscutting.exceptions import ProviderConfigError, ProviderPermanentError
from ...crosscutting.logger import logger
from ...domain.entities import GenerationRequest, GenerationResult, ProviderProfile
from ...domain.services import EmbeddingResponse
from .http import post_json


class OpenAICompatibleClient:
    """R: ProviderClient for the OpenAI wire format."""

    def __init__(
        self,
        *,
        provider_id: str,
        base_url: str,
        api_key: str = "",
        require_api_key: bool = True,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if require_api_key and not api_key:
            raise ProviderConfigError(
                f"{provider_id}: API key not configured", provider_id=provider_id
            )
        if not base_url:
            raise ProviderConfigError(
                f"{provider_id}: base URL not configured", provider_id=provider_id
            )
        self.provider_id = provider_id
        self._base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client = http_client or httpx.AsyncClient()

    async def generate(
        self, request: GenerationRequest, profile: ProviderProfile
    ) -> GenerationResult:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        started = time.perf_counter()
        data = await post_json(
            self._client,
            f"{self._base_url}/chat/completions",
            provider_id=self.provider_id,
            payload={
                "model": profile.model_id,
                "messages": messages,
                "max_tokens": request.max_tokens,
                "temperature": request.temperature,
            },
            headers=self._headers,
            timeout=profile.timeout_seconds,
        )
        latency_ms = (time.perf_counter() - started) * 1000

        choices = data.get("choices") or []
        if not choices:
            raise ProviderPermanentError(
                f"{self.provider_id}: response has no choices", provider_id=self.provider_id
            )
        first = choices[0]
        text = ((first.get("message") or {}).get("content") or "").strip()
        usage = data.get("usage") or {}

        return GenerationResult(
            text=text,
            provider_id=self.provider_id,
            model_id=profile.model_id,
            tokens_in=int(usage.get("prompt_tokens") or 0),
            tokens_out=int(usage.get("completion_tokens") or 0),
            latency_ms=round(latency_ms, 2),
            finish_reason=first.get("finish_reason"),
        )

    async def embed(
        self, texts: Sequence[str], profile: ProviderProfile
    ) -> EmbeddingResponse:
        if not texts:
            return EmbeddingResponse(vectors=[], model_id=profile.model_id)

        data = await post_json(
            self._client,
            f"{self._base_url}/embeddings",
            provider_id=self.provider_id,
            payload={"model": profile.model_id, "input": list(texts)},
            headers=self._headers,
            timeout=profile.timeout_seconds,
        )

        items = sorted(data.get("data") or [], key=lambda item: item.get("index", 0))
        if len(items) != len(texts):
            raise ProviderPermanentError(
                f"{self.provider_id}: embedding count mismatch "
                f"(expected {len(texts)}, got {len(items)})",
                provider_id=self.provider_id,
            )
        vectors = [list(item.get("embedding") or []) for item in items]
        usage = data.get("usage") or {}

        logger.debug(
            "OpenAICompatibleClient: embedded texts",
            extra={
                "provider_id": self.provider_id,
                "model_id": profile.model_id,
                "count": len(vectors),
            },
        )
        return EmbeddingResponse(
            vectors=vectors,
            model_id=profile.model_id,
            tokens_in=int(usage.get("prompt_tokens") or usage.get("total_tokens") or 0),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
