"""
Name: Anthropic-like provider client

Responsibilities:
  - Messages API over httpx (system prompt as a top-level field)
  - Translate content blocks + usage into GenerationResult

Collaborators:
  - httpx.AsyncClient (injectable)
  - providers.http.post_json

Constraints:
  - No embeddings endpoint: embed() raises ProviderConfigError, so a
    misrouted embedding request cools the profile down instead of retrying
"""

from __future__ import annotations

import time
from typing import Sequence

import httpx

from ...crosscutting.exceptions import ProviderConfigError
from ...domain.entities import GenerationRequest, GenerationResult, ProviderProfile
from ...domain.services import EmbeddingResponse
from .http import post_json


class AnthropicClient:
    """R: ProviderClient for the Anthropic Messages API."""

    def __init__(
        self,
        *,
        provider_id: str = "anthropic",
        api_key: str,
        base_url: str = "https://api.anthropic.com/v1",
        api_version: str = "2023-06-01",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ProviderConfigError(
                f"{provider_id}: API key not configured", provider_id=provider_id
            )
        self.provider_id = provider_id
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": api_version,
        }
        self._client = http_client or httpx.AsyncClient()

    async def generate(
        self, request: GenerationRequest, profile: ProviderProfile
    ) -> GenerationResult:
        payload: dict = {
            "model": profile.model_id,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt

        started = time.perf_counter()
        data = await post_json(
            self._client,
            f"{self._base_url}/messages",
            provider_id=self.provider_id,
            payload=payload,
            headers=self._headers,
            timeout=profile.timeout_seconds,
        )
        latency_ms = (time.perf_counter() - started) * 1000

        blocks = data.get("content") or []
        text = "".join(
            block.get("text", "") for block in blocks if block.get("type") == "text"
        ).strip()
        usage = data.get("usage") or {}

        return GenerationResult(
            text=text,
            provider_id=self.provider_id,
            model_id=profile.model_id,
            tokens_in=int(usage.get("input_tokens") or 0),
            tokens_out=int(usage.get("output_tokens") or 0),
            latency_ms=round(latency_ms, 2),
            finish_reason=data.get("stop_reason"),
        )

    async def embed(
        self, texts: Sequence[str], profile: ProviderProfile
    ) -> EmbeddingResponse:
        raise ProviderConfigError(
            f"{self.provider_id}: embeddings are not supported",
            provider_id=self.provider_id,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
