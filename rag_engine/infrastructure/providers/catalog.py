"""
===============================================================================
CRC CARD: infrastructure/providers/catalog.py
===============================================================================

Name:
    Built-in provider catalog

Responsibilities:
    - Known models per provider kind with cost (USD per 1K tokens), average
      latency, context window and capability tags.
    - Default complexity tiers, ordered cheapest-capable-first.

Collaborators:
    - crosscutting/config.Settings: builds profiles for configured providers.

Notes:
    - Prices are list prices at the time of writing; deployments override the
      whole catalog with PROVIDER_PROFILES_JSON.
===============================================================================
"""

from __future__ import annotations

from typing import Final

from ...domain.entities import (
    CAPABILITY_CHAT,
    CAPABILITY_EMBEDDINGS,
    CAPABILITY_RERANK,
    ProviderKind,
    ProviderProfile,
)

_CHAT: Final = frozenset({CAPABILITY_CHAT, CAPABILITY_RERANK})
_EMBED: Final = frozenset({CAPABILITY_EMBEDDINGS})

# (model_id, cost_in, cost_out, avg_latency_ms, capabilities, context, dim)
_CatalogRow = tuple[str, float, float, float, frozenset, int, int | None]

CATALOG: Final[dict[ProviderKind, tuple[_CatalogRow, ...]]] = {
    ProviderKind.OPENAI: (
        ("gpt-3.5-turbo", 0.0005, 0.0015, 800.0, _CHAT, 16_385, None),
        ("gpt-4o-mini", 0.00015, 0.0006, 900.0, _CHAT, 128_000, None),
        ("gpt-4-turbo-preview", 0.01, 0.03, 2500.0, _CHAT, 128_000, None),
        ("text-embedding-3-small", 0.00002, 0.0, 300.0, _EMBED, 8191, 1536),
        ("text-embedding-3-large", 0.00013, 0.0, 400.0, _EMBED, 8191, 3072),
    ),
    ProviderKind.ANTHROPIC: (
        ("claude-haiku", 0.00025, 0.00125, 900.0, _CHAT, 200_000, None),
        ("claude-sonnet-4", 0.003, 0.015, 2000.0, _CHAT, 200_000, None),
        ("claude-opus", 0.015, 0.075, 4000.0, _CHAT, 200_000, None),
    ),
    ProviderKind.GOOGLE: (
        ("gemini-1.5-flash", 0.000075, 0.0003, 800.0, _CHAT, 1_000_000, None),
        ("gemini-1.5-pro", 0.00125, 0.005, 2500.0, _CHAT, 2_000_000, None),
        ("text-embedding-004", 0.0, 0.0, 300.0, _EMBED, 2048, 768),
    ),
    ProviderKind.FAKE: (
        ("fake-chat", 0.0, 0.0, 1.0, _CHAT, 32_000, None),
        ("fake-embedding-v1", 0.0, 0.0, 1.0, _EMBED, 8191, 64),
    ),
}

DEFAULT_TIERS: Final[dict[str, tuple[str, ...]]] = {
    "simple": ("gpt-3.5-turbo", "gpt-4o-mini", "gpt-4-turbo-preview"),
    "medium": ("gpt-4o-mini", "gpt-4-turbo-preview", "claude-sonnet-4"),
    "complex": ("gpt-4-turbo-preview", "claude-sonnet-4", "claude-opus"),
}

FAKE_TIERS: Final[dict[str, tuple[str, ...]]] = {
    "simple": ("fake-chat",),
    "medium": ("fake-chat",),
    "complex": ("fake-chat",),
}

# Preferred embedding model per provider kind (first configured wins).
DEFAULT_EMBEDDING_MODELS: Final[tuple[tuple[ProviderKind, str], ...]] = (
    (ProviderKind.OPENAI, "text-embedding-3-small"),
    (ProviderKind.GOOGLE, "text-embedding-004"),
    (ProviderKind.FAKE, "fake-embedding-v1"),
)


def catalog_profiles(
    kind: ProviderKind, provider_id: str | None = None, *, timeout_seconds: float = 10.0
) -> list[ProviderProfile]:
    """Profiles for every catalog model of `kind`."""
    pid = provider_id or kind.value
    return [
        ProviderProfile(
            provider_id=pid,
            kind=kind,
            model_id=model_id,
            cost_per_1k_input=cost_in,
            cost_per_1k_output=cost_out,
            avg_latency_ms=latency,
            capabilities=caps,
            max_context_tokens=context,
            timeout_seconds=timeout_seconds,
            embedding_dimension=dim,
        )
        for model_id, cost_in, cost_out, latency, caps, context, dim in CATALOG.get(
            kind, ()
        )
    ]


def self_hosted_profiles(
    chat_models: list[str],
    embedding_model: str | None,
    *,
    provider_id: str = "self_hosted",
    timeout_seconds: float = 20.0,
) -> list[ProviderProfile]:
    """Profiles for an OpenAI-compatible server (no per-token cost)."""
    profiles = [
        ProviderProfile(
            provider_id=provider_id,
            kind=ProviderKind.SELF_HOSTED,
            model_id=model,
            avg_latency_ms=1500.0,
            capabilities=_CHAT,
            max_context_tokens=8192,
            timeout_seconds=timeout_seconds,
        )
        for model in chat_models
    ]
    if embedding_model:
        profiles.append(
            ProviderProfile(
                provider_id=provider_id,
                kind=ProviderKind.SELF_HOSTED,
                model_id=embedding_model,
                avg_latency_ms=300.0,
                capabilities=_EMBED,
                max_context_tokens=8192,
                timeout_seconds=timeout_seconds,
            )
        )
    return profiles
