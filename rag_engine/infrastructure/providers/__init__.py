"""
Provider adapters (Infrastructure Layer)

Each client implements domain.services.ProviderClient:
  - OpenAICompatibleClient: OpenAI and self-hosted OpenAI-style servers (httpx)
  - AnthropicClient: Messages API (httpx)
  - GoogleGenAIClient: Gemini via google-genai
  - FakeProviderClient: deterministic double for tests / local dev
"""

from .anthropic import AnthropicClient
from .catalog import catalog_profiles, self_hosted_profiles
from .fake import FakeProviderClient, hashed_embedding
from .google import GoogleGenAIClient
from .openai_compatible import OpenAICompatibleClient
from .registry import build_provider_clients

__all__ = [
    "AnthropicClient",
    "FakeProviderClient",
    "GoogleGenAIClient",
    "OpenAICompatibleClient",
    "build_provider_clients",
    "catalog_profiles",
    "self_hosted_profiles",
    "hashed_embedding",
]
