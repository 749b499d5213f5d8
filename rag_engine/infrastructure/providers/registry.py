"""
===============================================================================
CRC CARD: infrastructure/providers/registry.py
===============================================================================

Name:
    Provider dispatch table

Responsibilities:
    - Map ProviderKind -> factory building a ProviderClient from Settings.
    - Build the provider_id -> client registry the fallback chain uses.

Collaborators:
    - openai_compatible / anthropic / google / fake clients
    - crosscutting.config.Settings (credentials, base URLs)

Constraints:
    - Dispatch by table, not by subclassing: variants share a Protocol only.
    - A provider whose credentials are missing is left out (logged), never
      half-built.
===============================================================================
"""

from __future__ import annotations

from typing import Callable, Iterable, Mapping

from ...crosscutting.config import Settings
from ...crosscutting.exceptions import ProviderConfigError
from ...crosscutting.logger import logger
from ...domain.entities import ProviderKind, ProviderProfile
from ...domain.services import ProviderClient
from .anthropic import AnthropicClient
from .fake import FakeProviderClient
from .google import GoogleGenAIClient
from .openai_compatible import OpenAICompatibleClient

ProviderFactory = Callable[[str, Settings], ProviderClient]


def _build_openai(provider_id: str, settings: Settings) -> ProviderClient:
    return OpenAICompatibleClient(
        provider_id=provider_id,
        base_url=settings.openai_base_url,
        api_key=settings.openai_api_key,
    )


def _build_self_hosted(provider_id: str, settings: Settings) -> ProviderClient:
    return OpenAICompatibleClient(
        provider_id=provider_id,
        base_url=settings.self_hosted_base_url,
        api_key=settings.self_hosted_api_key,
        require_api_key=False,
    )


def _build_anthropic(provider_id: str, settings: Settings) -> ProviderClient:
    return AnthropicClient(
        provider_id=provider_id,
        api_key=settings.anthropic_api_key,
        base_url=settings.anthropic_base_url,
        api_version=settings.anthropic_version,
    )


def _build_google(provider_id: str, settings: Settings) -> ProviderClient:
    return GoogleGenAIClient(provider_id=provider_id, api_key=settings.google_api_key)


def _build_fake(provider_id: str, settings: Settings) -> ProviderClient:
    return FakeProviderClient(provider_id=provider_id)


PROVIDER_FACTORIES: Mapping[ProviderKind, ProviderFactory] = {
    ProviderKind.OPENAI: _build_openai,
    ProviderKind.ANTHROPIC: _build_anthropic,
    ProviderKind.GOOGLE: _build_google,
    ProviderKind.SELF_HOSTED: _build_self_hosted,
    ProviderKind.FAKE: _build_fake,
}


def build_provider_clients(
    profiles: Iterable[ProviderProfile], settings: Settings
) -> dict[str, ProviderClient]:
    """R: One client per distinct provider_id among `profiles`."""
    clients: dict[str, ProviderClient] = {}
    for profile in profiles:
        if profile.provider_id in clients:
            continue
        factory = PROVIDER_FACTORIES.get(profile.kind)
        if factory is None:
            logger.warning(
                "Unknown provider kind, skipping",
                extra={"provider_id": profile.provider_id, "kind": str(profile.kind)},
            )
            continue
        try:
            clients[profile.provider_id] = factory(profile.provider_id, settings)
        except ProviderConfigError as exc:
            logger.warning(
                "Provider not configured, skipping",
                extra={"provider_id": profile.provider_id, "error": exc.message},
            )
    logger.info("Provider clients built", extra={"providers": sorted(clients)})
    return clients
