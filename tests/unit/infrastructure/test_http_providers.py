"""
Name: Provider Client Tests (OpenAI-compatible, Anthropic, Google, registry)

Responsibilities:
  - Wire format of requests and parsing of responses (httpx.MockTransport)
  - HTTP status -> typed provider error mapping, Retry-After forwarding
  - SDK errors -> provider errors for the google-genai client
  - Registry builds only the providers that are configured

Notes:
  - No network: every client gets an injected transport or SDK mock
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from google.genai import errors as genai_errors

from factories import chat_profile, embedding_profile
from rag_engine.crosscutting.config import Settings
from rag_engine.crosscutting.exceptions import (
    ProviderConfigError,
    ProviderPermanentError,
    ProviderTimeout,
    ProviderTransientError,
)
from rag_engine.domain.entities import GenerationRequest, ProviderKind, ProviderProfile
from rag_engine.infrastructure.providers.anthropic import AnthropicClient
from rag_engine.infrastructure.providers.catalog import catalog_profiles, self_hosted_profiles
from rag_engine.infrastructure.providers.google import GoogleGenAIClient
from rag_engine.infrastructure.providers.openai_compatible import OpenAICompatibleClient
from rag_engine.infrastructure.providers.registry import build_provider_clients

pytestmark = pytest.mark.unit

REQUEST = GenerationRequest(prompt="What are the hours?", system_prompt="Be grounded.")


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestOpenAICompatibleClient:
    @pytest.mark.asyncio
    async def test_chat_request_and_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {"message": {"content": " Nine to six [S1]. "}, "finish_reason": "stop"}
                    ],
                    "usage": {"prompt_tokens": 42, "completion_tokens": 7},
                },
            )

        client = OpenAICompatibleClient(
            provider_id="openai",
            base_url="https://api.test/v1/",
            api_key="sk-test",
            http_client=_http(handler),
        )
        result = await client.generate(REQUEST, chat_profile("openai", "gpt-4o-mini"))

        assert seen["url"] == "https://api.test/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "gpt-4o-mini"
        assert seen["body"]["messages"][0] == {"role": "system", "content": "Be grounded."}
        assert result.text == "Nine to six [S1]."
        assert (result.tokens_in, result.tokens_out) == (42, 7)
        assert result.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_embeddings_are_reordered_by_index(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"index": 1, "embedding": [0.0, 1.0]},
                        {"index": 0, "embedding": [1.0, 0.0]},
                    ],
                    "usage": {"total_tokens": 4},
                },
            )

        client = OpenAICompatibleClient(
            provider_id="openai", base_url="https://api.test/v1", api_key="k",
            http_client=_http(handler),
        )
        response = await client.embed(["a", "b"], embedding_profile("openai", "emb"))

        assert response.vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert response.tokens_in == 4

    @pytest.mark.asyncio
    async def test_embedding_count_mismatch(self):
        def handler(request):
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})

        client = OpenAICompatibleClient(
            provider_id="openai", base_url="https://api.test/v1", api_key="k",
            http_client=_http(handler),
        )
        with pytest.raises(ProviderPermanentError, match="count mismatch"):
            await client.embed(["a", "b"], embedding_profile("openai", "emb"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,expected",
        [
            (429, ProviderTransientError),
            (503, ProviderTransientError),
            (401, ProviderConfigError),
            (404, ProviderConfigError),
            (400, ProviderPermanentError),
        ],
    )
    async def test_status_mapping(self, status, expected):
        def handler(request):
            return httpx.Response(status, text="nope", headers={"Retry-After": "3"})

        client = OpenAICompatibleClient(
            provider_id="openai", base_url="https://api.test/v1", api_key="k",
            http_client=_http(handler),
        )
        with pytest.raises(expected) as info:
            await client.generate(REQUEST, chat_profile("openai", "m"))

        assert info.value.status_code == status
        assert info.value.provider_id == "openai"

    @pytest.mark.asyncio
    async def test_retry_after_is_forwarded(self):
        def handler(request):
            return httpx.Response(429, text="slow down", headers={"Retry-After": "3"})

        client = OpenAICompatibleClient(
            provider_id="openai", base_url="https://api.test/v1", api_key="k",
            http_client=_http(handler),
        )
        with pytest.raises(ProviderTransientError) as info:
            await client.generate(REQUEST, chat_profile("openai", "m"))

        assert info.value.retry_after == 3.0

    @pytest.mark.asyncio
    async def test_timeout_maps_to_provider_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = OpenAICompatibleClient(
            provider_id="openai", base_url="https://api.test/v1", api_key="k",
            http_client=_http(handler),
        )
        with pytest.raises(ProviderTimeout):
            await client.generate(REQUEST, chat_profile("openai", "m"))

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = OpenAICompatibleClient(
            provider_id="openai", base_url="https://api.test/v1", api_key="k",
            http_client=_http(handler),
        )
        with pytest.raises(ProviderTransientError):
            await client.generate(REQUEST, chat_profile("openai", "m"))

    def test_api_key_required_unless_self_hosted(self):
        with pytest.raises(ProviderConfigError):
            OpenAICompatibleClient(provider_id="openai", base_url="https://api.test/v1")

        client = OpenAICompatibleClient(
            provider_id="local", base_url="http://localhost:8000/v1", require_api_key=False
        )
        assert client.provider_id == "local"


class TestAnthropicClient:
    @pytest.mark.asyncio
    async def test_messages_request_and_response(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "content": [
                        {"type": "text", "text": "Nine to six "},
                        {"type": "text", "text": "[S1]."},
                    ],
                    "usage": {"input_tokens": 30, "output_tokens": 5},
                    "stop_reason": "end_turn",
                },
            )

        client = AnthropicClient(api_key="sk-ant", http_client=_http(handler))
        result = await client.generate(REQUEST, chat_profile("anthropic", "claude-haiku"))

        assert seen["url"] == "https://api.anthropic.com/v1/messages"
        assert seen["headers"]["x-api-key"] == "sk-ant"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"
        assert seen["body"]["system"] == "Be grounded."
        assert result.text == "Nine to six [S1]."
        assert result.finish_reason == "end_turn"
        assert (result.tokens_in, result.tokens_out) == (30, 5)

    @pytest.mark.asyncio
    async def test_embeddings_unsupported(self):
        client = AnthropicClient(api_key="sk-ant", http_client=_http(lambda r: httpx.Response(200)))

        with pytest.raises(ProviderConfigError):
            await client.embed(["x"], embedding_profile("anthropic", "none"))


class TestGoogleGenAIClient:
    def _sdk(self):
        sdk = MagicMock()
        sdk.aio.models.generate_content = AsyncMock()
        sdk.aio.models.embed_content = AsyncMock()
        return sdk

    @pytest.mark.asyncio
    async def test_generate_reads_usage_and_finish_reason(self):
        sdk = self._sdk()
        sdk.aio.models.generate_content.return_value = SimpleNamespace(
            text=" Nine to six [S1]. ",
            usage_metadata=SimpleNamespace(prompt_token_count=12, candidates_token_count=4),
            candidates=[SimpleNamespace(finish_reason=SimpleNamespace(value="STOP"))],
        )
        client = GoogleGenAIClient(client=sdk)

        result = await client.generate(REQUEST, chat_profile("google", "gemini-1.5-flash"))

        assert result.text == "Nine to six [S1]."
        assert result.finish_reason == "STOP"
        assert (result.tokens_in, result.tokens_out) == (12, 4)

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        sdk = self._sdk()
        sdk.aio.models.generate_content.side_effect = genai_errors.ServerError(
            503, {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}}
        )

        with pytest.raises(ProviderTransientError):
            await GoogleGenAIClient(client=sdk).generate(REQUEST, chat_profile("google", "g"))

    @pytest.mark.asyncio
    async def test_auth_error_is_config(self):
        sdk = self._sdk()
        sdk.aio.models.generate_content.side_effect = genai_errors.ClientError(
            403, {"error": {"code": 403, "message": "denied", "status": "PERMISSION_DENIED"}}
        )

        with pytest.raises(ProviderConfigError):
            await GoogleGenAIClient(client=sdk).generate(REQUEST, chat_profile("google", "g"))

    @pytest.mark.asyncio
    async def test_embedding_dimension_checked(self):
        sdk = self._sdk()
        sdk.aio.models.embed_content.return_value = SimpleNamespace(
            embeddings=[SimpleNamespace(values=[0.1, 0.2])]
        )
        client = GoogleGenAIClient(client=sdk)

        with pytest.raises(ProviderPermanentError, match="dimensionality"):
            await client.embed(["x"], embedding_profile("google", "text-embedding-004", dimension=768))

    def test_requires_key_or_client(self):
        with pytest.raises(ProviderConfigError):
            GoogleGenAIClient(api_key="")


class TestRegistry:
    def test_only_configured_providers_are_built(self, monkeypatch):
        for name in ("ANTHROPIC_API_KEY", "GOOGLE_API_KEY", "SELF_HOSTED_BASE_URL"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings(_env_file=None, fake_providers=True, openai_api_key="sk-test")
        profiles = [
            *catalog_profiles(ProviderKind.OPENAI),
            *catalog_profiles(ProviderKind.ANTHROPIC),
            *catalog_profiles(ProviderKind.FAKE),
        ]

        clients = build_provider_clients(profiles, settings)

        assert sorted(clients) == ["fake", "openai"]
        assert isinstance(clients["openai"], OpenAICompatibleClient)

    def test_self_hosted_needs_no_key(self, monkeypatch):
        settings = Settings(
            _env_file=None, fake_providers=True, self_hosted_base_url="http://llm:8000/v1"
        )

        clients = build_provider_clients(self_hosted_profiles(["llama3"], "nomic"), settings)

        assert list(clients) == ["self_hosted"]


def test_catalog_profiles_carry_pricing_and_capabilities():
    profiles = {p.model_id: p for p in catalog_profiles(ProviderKind.OPENAI)}

    small = profiles["text-embedding-3-small"]
    assert small.embedding_dimension == 1536
    assert small.supports("embeddings")
    assert not small.supports("chat")
    assert profiles["gpt-4o-mini"].provider_id == "openai"


def test_self_hosted_profiles_cost_nothing():
    profiles = self_hosted_profiles(["llama3"], "nomic-embed")

    assert [p.model_id for p in profiles] == ["llama3", "nomic-embed"]
    assert all(isinstance(p, ProviderProfile) and p.cost_per_1k_input == 0 for p in profiles)
