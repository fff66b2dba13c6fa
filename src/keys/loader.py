"""Builds the credential pool from settings plus stored custom providers."""

import asyncio

from src.config.settings import Settings, parse_token_limit
from src.keys.health import check_all_credentials
from src.keys.pool import CredentialPool, ProviderConfig
from src.logging.audit import get_logger
from src.providers.base import WIRE_MESSAGES, WIRE_OPENAI
from src.providers.registry import normalize_wire_family
from src.store.models import CustomProvider
from src.store.store import RecordStore

logger = get_logger("keys")

# provider_id -> (display name, wire family, base url, probe model)
BUILTIN_PROVIDERS: dict[str, tuple[str, str, str, str]] = {
    "openai": ("OpenAI", WIRE_OPENAI, "https://api.openai.com", "gpt-3.5-turbo"),
    "deepseek": ("DeepSeek", WIRE_OPENAI, "https://api.deepseek.com", "deepseek-chat"),
    "openrouter": ("OpenRouter", WIRE_OPENAI, "https://openrouter.ai/api", "mistralai/mistral-7b-instruct:free"),
    "mistral": ("Mistral AI", WIRE_OPENAI, "https://api.mistral.ai", "mistral-tiny"),
    "claude": ("Anthropic Claude", WIRE_MESSAGES, "https://api.anthropic.com", ""),
}

# Fields whose change invalidates every credential's last health verdict
CRITICAL_FIELDS = ("api_base_url", "api_keys", "model_id", "provider_type")


def builtin_entries(settings: Settings) -> list[tuple[ProviderConfig, list[str]]]:
    entries = []
    for provider_id, (display_name, family, base_url, probe_model) in BUILTIN_PROVIDERS.items():
        keys = settings.provider_keys(provider_id)
        if not keys:
            continue
        model_id = settings.claude_model_id if family == WIRE_MESSAGES else None
        config = ProviderConfig(
            provider_id=provider_id,
            display_name=display_name,
            wire_family=family,
            base_url=base_url,
            model_id=model_id,
            model_display_name=model_id or "",
            max_context_tokens=settings.token_ceiling("context", provider_id),
            max_output_tokens=settings.token_ceiling("output", provider_id),
            probe_model=probe_model,
        )
        entries.append((config, keys))
    return entries


def custom_entry(provider: CustomProvider) -> tuple[ProviderConfig, list[str]]:
    config = ProviderConfig(
        provider_id=provider.provider_id,
        display_name=provider.display_name or provider.provider_id,
        wire_family=normalize_wire_family(provider.provider_type),
        base_url=provider.api_base_url.rstrip("/"),
        model_id=provider.model_id or None,
        model_display_name=provider.model_display_name or provider.model_id,
        enforced_model_name=provider.enforced_model_name or None,
        max_context_tokens=parse_token_limit(provider.max_context_tokens),
        max_output_tokens=parse_token_limit(provider.max_output_tokens),
        is_custom=True,
        probe_model=provider.model_id,
    )
    return config, provider.key_list


def build_provider_entries(
    settings: Settings, custom_providers: list[CustomProvider]
) -> list[tuple[ProviderConfig, list[str]]]:
    """Built-in providers first; a custom provider never shadows a built-in id."""
    entries = builtin_entries(settings)
    taken = {config.provider_id for config, _ in entries}
    for provider in custom_providers:
        if provider.provider_id in taken:
            logger.warning("Custom provider id collides with a built-in provider", extra={
                "audit_data": {"provider": provider.provider_id},
            })
            continue
        try:
            entries.append(custom_entry(provider))
        except ValueError as e:
            logger.error("Skipping custom provider with unknown type", extra={"audit_data": {
                "provider": provider.provider_id, "error": str(e),
            }})
            continue
        taken.add(provider.provider_id)
    return entries


async def reload_providers(
    pool: CredentialPool,
    store: RecordStore,
    settings: Settings,
    carry_over: set[str] | None = None,
) -> None:
    """Rebuild the pool wholesale from settings and the enabled custom providers."""
    custom_providers = await store.get_custom_providers(enabled_only=True)
    pool.reload(build_provider_entries(settings, custom_providers), carry_over=carry_over or ())


def _is_critical_change(before: CustomProvider | None, after: CustomProvider | None) -> bool:
    if before is None or after is None:
        return True
    if before.is_enabled != after.is_enabled:
        return True
    return any(getattr(before, f) != getattr(after, f) for f in CRITICAL_FIELDS)


async def _find(store: RecordStore, record_id: str | None) -> CustomProvider | None:
    if record_id is None:
        return None
    for existing in await store.get_custom_providers(enabled_only=False):
        if existing.id == record_id:
            return existing
    return None


def _schedule_recheck(pool: CredentialPool) -> asyncio.Task | None:
    if not pool.has_unchecked():
        return None
    return asyncio.create_task(check_all_credentials(pool, only_unchecked=True))


async def save_custom_provider(
    pool: CredentialPool, store: RecordStore, settings: Settings, provider: CustomProvider
) -> tuple[CustomProvider, asyncio.Task | None]:
    """Persist a custom provider and rebuild the pool.

    Credential health carries over for every provider except the saved one when
    its URL, keys, model or type changed. Returns the saved record and the task
    checking any credentials left ``unchecked``, if there are some.
    """
    normalize_wire_family(provider.provider_type)
    if provider.provider_id in BUILTIN_PROVIDERS:
        raise ValueError(f"Provider id '{provider.provider_id}' is reserved for a built-in provider.")

    before = await _find(store, provider.id)
    saved = await store.save_custom_provider(provider)

    carry_over = set(pool.provider_ids())
    if _is_critical_change(before, saved):
        carry_over.discard(saved.provider_id)
    if before is not None and before.provider_id != saved.provider_id:
        carry_over.discard(before.provider_id)
    await reload_providers(pool, store, settings, carry_over=carry_over)

    logger.info("Custom provider saved", extra={"audit_data": {
        "provider": saved.provider_id, "enabled": saved.is_enabled,
    }})
    return saved, _schedule_recheck(pool)


async def remove_custom_provider(
    pool: CredentialPool, store: RecordStore, settings: Settings, record_id: str
) -> asyncio.Task | None:
    """Delete a custom provider and rebuild the pool; the others keep their health."""
    await store.delete_custom_provider(record_id)
    await reload_providers(pool, store, settings, carry_over=set(pool.provider_ids()))
    logger.info("Custom provider removed", extra={"audit_data": {"record_id": record_id}})
    return _schedule_recheck(pool)
