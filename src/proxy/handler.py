"""Proxy handler — dispatch to wire adapters and feed outcomes back to the pool."""

from collections.abc import AsyncGenerator

from src.keys.pool import OVER_QUOTA, REVOKED, Credential, CredentialPool, ProviderConfig
from src.providers.base import ProviderResponse, StreamChunk
from src.providers.registry import close_all_adapters, get_adapter


def report_outcome(pool: CredentialPool, provider_id: str, credential_value: str, status_code: int) -> None:
    """Apply an upstream status to the credential that produced it.

    402 retires the key as over quota, 401/403 revoke it, 429 counts toward
    the failure threshold. Any other failure leaves the credential untouched.
    """
    if 200 <= status_code < 300:
        pool.report_success(provider_id, credential_value)
    elif status_code == 402:
        pool.deactivate(provider_id, credential_value, OVER_QUOTA)
    elif status_code == 429:
        pool.report_failure(provider_id, credential_value)
    elif status_code in (401, 403):
        pool.deactivate(provider_id, credential_value, REVOKED)


async def forward_to_provider(
    messages: list[dict], body: dict, credential: Credential, config: ProviderConfig
) -> ProviderResponse:
    """Route a request to the adapter for the provider's wire family."""
    adapter = get_adapter(config.wire_family)
    return await adapter.chat_completion(messages, body, credential.value, config)


async def open_stream(
    messages: list[dict], body: dict, credential: Credential, config: ProviderConfig
) -> tuple[StreamChunk | None, AsyncGenerator[StreamChunk, None]]:
    """Start a streaming request and pull its first chunk.

    Upstream error statuses surface here, before any response headers have
    been sent, so the caller can still answer with the upstream status.
    """
    adapter = get_adapter(config.wire_family)
    stream = adapter.chat_completion_stream(messages, body, credential.value, config)
    first = await anext(stream, None)
    return first, stream


async def close_client() -> None:
    """Gracefully close all adapters on shutdown."""
    await close_all_adapters()
