"""Credential health checks: one minimal upstream request per credential."""

import asyncio

import httpx

from src.config.settings import get_settings
from src.keys.pool import ACTIVE, OVER_QUOTA, REVOKED, CredentialPool, ProviderConfig
from src.logging.audit import get_logger, mask_secret
from src.providers.registry import get_adapter

logger = get_logger("keys")


def status_for_http(status_code: int) -> str:
    """Map a probe's HTTP status onto a credential status. Unknown failures revoke."""
    if 200 <= status_code < 300:
        return ACTIVE
    if status_code == 402:
        return OVER_QUOTA
    return REVOKED


async def check_credential(config: ProviderConfig, api_key: str, timeout: float | None = None) -> str:
    """Probe one credential and return its new status."""
    if timeout is None:
        timeout = get_settings().health_check_timeout

    adapter = get_adapter(config.wire_family)
    try:
        status_code = await adapter.probe(config, api_key, timeout)
    except httpx.HTTPError as e:
        logger.warning("Health check transport failure", extra={"audit_data": {
            "provider": config.provider_id,
            "key": mask_secret(api_key),
            "error": type(e).__name__,
        }})
        return REVOKED

    status = status_for_http(status_code)
    if status != ACTIVE:
        logger.warning("Health check failed", extra={"audit_data": {
            "provider": config.provider_id,
            "key": mask_secret(api_key),
            "status_code": status_code,
            "credential_status": status,
        }})
    return status


async def check_all_credentials(pool: CredentialPool, only_unchecked: bool = False) -> dict[str, int]:
    """Check every credential concurrently and apply the verdicts to the pool.

    Verdicts from a pool generation that has since been reloaded are dropped
    by ``record_health``. Returns the number of credentials per resulting status.
    """
    generation, targets = pool.health_targets(only_unchecked=only_unchecked)
    if not targets:
        return {}

    async def _check(config: ProviderConfig, api_key: str) -> str:
        status = await check_credential(config, api_key)
        pool.record_health(config.provider_id, api_key, status, generation=generation)
        return status

    results = await asyncio.gather(*(_check(config, key) for config, key in targets))

    counts: dict[str, int] = {}
    for status in results:
        counts[status] = counts.get(status, 0) + 1

    logger.info("Credential health check complete", extra={"audit_data": {
        "generation": generation, "checked": len(targets), "results": counts,
    }})
    return counts
