"""
Name: Shared httpx plumbing for REST providers

Responsibilities:
  - POST JSON with a per-call timeout
  - Map transport failures and HTTP status codes to engine provider errors
  - Parse Retry-After so the retry policy can honor it

Collaborators:
  - httpx.AsyncClient (owned by each provider client)
  - retry.parse_retry_after / status code policies

Constraints:
  - Never retries here: one call, one outcome
  - Error messages keep at most 200 chars of the provider body
"""

from __future__ import annotations

from typing import Any

import httpx

from ...crosscutting.exceptions import (
    ProviderConfigError,
    ProviderPermanentError,
    ProviderTimeout,
    ProviderTransientError,
)
from ...crosscutting.retry import CONFIG_HTTP_CODES, TRANSIENT_HTTP_CODES, parse_retry_after


def classify_status(
    provider_id: str, response: httpx.Response
) -> ProviderTransientError | ProviderPermanentError:
    """HTTP error response -> typed provider error (not raised)."""
    status = response.status_code
    body = response.text[:200]
    message = f"{provider_id}: HTTP {status}: {body}"
    if status in CONFIG_HTTP_CODES:
        return ProviderConfigError(message, provider_id=provider_id, status_code=status)
    if status in TRANSIENT_HTTP_CODES or status >= 500:
        return ProviderTransientError(
            message,
            provider_id=provider_id,
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status == 404:
        # Unknown model or wrong base URL.
        return ProviderConfigError(message, provider_id=provider_id, status_code=status)
    return ProviderPermanentError(message, provider_id=provider_id, status_code=status)


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    provider_id: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout: float,
) -> dict[str, Any]:
    """One POST; returns the decoded JSON body or raises a provider error."""
    try:
        response = await client.post(url, json=payload, headers=headers, timeout=timeout)
    except httpx.TimeoutException as exc:
        raise ProviderTimeout(
            f"{provider_id}: request timed out", provider_id=provider_id, original_error=exc
        ) from exc
    except httpx.TransportError as exc:
        raise ProviderTransientError(
            f"{provider_id}: transport error: {type(exc).__name__}",
            provider_id=provider_id,
            original_error=exc,
        ) from exc

    if response.status_code >= 400:
        raise classify_status(provider_id, response)

    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderTransientError(
            f"{provider_id}: response is not JSON", provider_id=provider_id
        ) from exc
    if not isinstance(data, dict):
        raise ProviderPermanentError(
            f"{provider_id}: unexpected response shape", provider_id=provider_id
        )
    return data
