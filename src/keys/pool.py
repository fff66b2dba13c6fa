"""Credential pool: per-provider upstream keys, round-robin selection and health state.

Each provider owns an ordered credential list and a round-robin cursor,
guarded by its own lock. Locks are held only for in-memory updates, never
across network calls. The whole provider map is swapped on ``reload``;
nothing outside this module touches it directly.

Credential lifecycle:
    unchecked --health ok--> active
    active --402--> over_quota
    active --401/403, or FAILURE_THRESHOLD consecutive 429s--> revoked
"""

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from src.logging.audit import get_logger, mask_secret

logger = get_logger("keys")

FAILURE_THRESHOLD = 20

UNCHECKED = "unchecked"
ACTIVE = "active"
OVER_QUOTA = "over_quota"
REVOKED = "revoked"

TERMINAL_STATUSES = (OVER_QUOTA, REVOKED)


class UnknownProviderError(LookupError):
    """Raised when a provider id has no registration in the pool."""


@dataclass
class Credential:
    value: str
    provider_id: str
    status: str = UNCHECKED  # "unchecked" | "active" | "over_quota" | "revoked"
    consecutive_failures: int = 0


@dataclass(frozen=True)
class ProviderConfig:
    provider_id: str
    display_name: str
    wire_family: str = "openai"  # "openai" | "messages"
    base_url: str = ""
    model_id: str | None = None  # None = pass the caller's model through
    model_display_name: str = ""
    enforced_model_name: str | None = None
    max_context_tokens: int | None = None  # None = unlimited
    max_output_tokens: int | None = None
    is_custom: bool = False
    probe_model: str = ""  # model used by health checks when model_id is unset

    @property
    def health_model(self) -> str:
        return self.model_id or self.probe_model


@dataclass
class _ProviderState:
    config: ProviderConfig
    credentials: list[Credential]
    cursor: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)

    def find(self, value: str) -> Credential | None:
        for credential in self.credentials:
            if credential.value == value:
                return credential
        return None


class CredentialPool:
    """Owns every provider's credentials; all access goes through these methods."""

    def __init__(self, failure_threshold: int = FAILURE_THRESHOLD):
        self._failure_threshold = failure_threshold
        self._providers: dict[str, _ProviderState] = {}
        self._generation = 0
        self._reload_lock = threading.Lock()

    @property
    def generation(self) -> int:
        """Incremented on every reload; lets health checks drop stale results."""
        return self._generation

    def reload(
        self,
        entries: Iterable[tuple[ProviderConfig, list[str]]],
        carry_over: Iterable[str] = (),
    ) -> None:
        """Replace the entire provider map. Every credential starts ``unchecked``.

        Providers named in ``carry_over`` keep the status of credentials that
        survive the reload unchanged.
        """
        carry_over = set(carry_over)
        previous = self._providers
        providers: dict[str, _ProviderState] = {}
        for config, keys in entries:
            unique_keys = list(dict.fromkeys(k for k in keys if k))
            if not unique_keys:
                continue
            credentials = [Credential(value=k, provider_id=config.provider_id) for k in unique_keys]
            old_state = previous.get(config.provider_id)
            if config.provider_id in carry_over and old_state is not None:
                with old_state.lock:
                    for credential in credentials:
                        old = old_state.find(credential.value)
                        if old is not None:
                            credential.status = old.status
                            credential.consecutive_failures = old.consecutive_failures
            providers[config.provider_id] = _ProviderState(config=config, credentials=credentials)
        with self._reload_lock:
            self._providers = providers
            self._generation += 1
        logger.info("Credential pool loaded", extra={"audit_data": {
            "providers": {pid: len(s.credentials) for pid, s in providers.items()},
            "generation": self._generation,
        }})

    def _state(self, provider_id: str) -> _ProviderState:
        state = self._providers.get(provider_id)
        if state is None:
            raise UnknownProviderError(provider_id)
        return state

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def provider_ids(self) -> list[str]:
        return list(self._providers)

    def get_config(self, provider_id: str) -> ProviderConfig | None:
        state = self._providers.get(provider_id)
        return state.config if state else None

    def select_credential(self, provider_id: str) -> Credential | None:
        """Round-robin over active credentials starting at the cursor, wrapping once.

        Returns a snapshot of the chosen credential, or None when no credential is
        active. Raises UnknownProviderError for an unregistered provider.
        """
        state = self._state(provider_id)
        with state.lock:
            total = len(state.credentials)
            if total == 0:
                return None
            if state.cursor >= total:
                state.cursor = 0
            for offset in range(total):
                index = (state.cursor + offset) % total
                credential = state.credentials[index]
                if credential.status == ACTIVE:
                    state.cursor = (index + 1) % total
                    return replace(credential)
        return None

    def report_success(self, provider_id: str, value: str) -> None:
        state = self._providers.get(provider_id)
        if state is None:
            return
        with state.lock:
            credential = state.find(value)
            if credential is not None:
                credential.consecutive_failures = 0

    def report_failure(self, provider_id: str, value: str) -> None:
        """Count a throttled call; retire the credential once the threshold is reached."""
        state = self._providers.get(provider_id)
        if state is None:
            return
        with state.lock:
            credential = state.find(value)
            if credential is None or credential.status != ACTIVE:
                return
            credential.consecutive_failures += 1
            failures = credential.consecutive_failures
            if failures >= self._failure_threshold:
                credential.status = REVOKED

        if failures >= self._failure_threshold:
            logger.error("Credential revoked after repeated rate limiting", extra={"audit_data": {
                "provider": provider_id,
                "key": mask_secret(value),
                "consecutive_failures": failures,
            }})
        else:
            logger.warning("Upstream rate limit recorded", extra={"audit_data": {
                "provider": provider_id,
                "key": mask_secret(value),
                "consecutive_failures": failures,
            }})

    def deactivate(self, provider_id: str, value: str, reason: str) -> None:
        """Move an active credential to a terminal status. Idempotent."""
        if reason not in TERMINAL_STATUSES:
            raise ValueError(f"Invalid deactivation reason: {reason}")
        state = self._providers.get(provider_id)
        if state is None:
            return
        with state.lock:
            credential = state.find(value)
            if credential is None or credential.status != ACTIVE:
                return
            credential.status = reason
        logger.warning("Credential deactivated", extra={"audit_data": {
            "provider": provider_id, "key": mask_secret(value), "reason": reason,
        }})

    def record_health(self, provider_id: str, value: str, status: str, generation: int | None = None) -> None:
        """Apply a health-check verdict. Results from an older pool generation are ignored."""
        if generation is not None and generation != self._generation:
            return
        state = self._providers.get(provider_id)
        if state is None:
            return
        with state.lock:
            credential = state.find(value)
            if credential is None:
                return
            credential.status = status
            if status == ACTIVE:
                credential.consecutive_failures = 0

    def has_unchecked(self) -> bool:
        for state in list(self._providers.values()):
            with state.lock:
                if any(c.status == UNCHECKED for c in state.credentials):
                    return True
        return False

    def health_targets(self, only_unchecked: bool = False) -> tuple[int, list[tuple[ProviderConfig, str]]]:
        """Snapshot of (config, key) pairs to probe, tagged with the current generation."""
        with self._reload_lock:
            providers = dict(self._providers)
            generation = self._generation
        targets = []
        for state in providers.values():
            with state.lock:
                targets.extend(
                    (state.config, c.value) for c in state.credentials
                    if not only_unchecked or c.status == UNCHECKED
                )
        return generation, targets

    def provider_summary(self) -> dict[str, dict]:
        """Per-provider config plus key counts. ``unchecked`` counts as revoked."""
        summary = {}
        for provider_id, state in list(self._providers.items()):
            with state.lock:
                statuses = [c.status for c in state.credentials]
            config = state.config
            summary[provider_id] = {
                "name": provider_id,
                "display_name": config.display_name,
                "wire_family": config.wire_family,
                "model": config.model_display_name or config.model_id or "",
                "max_context_tokens": config.max_context_tokens,
                "max_output_tokens": config.max_output_tokens,
                "is_custom": config.is_custom,
                "keys": {
                    "active": statuses.count(ACTIVE),
                    "over_quota": statuses.count(OVER_QUOTA),
                    "revoked": statuses.count(REVOKED) + statuses.count(UNCHECKED),
                },
            }
        return summary


_pool: CredentialPool | None = None


def get_credential_pool() -> CredentialPool:
    """Get the process-wide credential pool singleton."""
    global _pool
    if _pool is None:
        from src.config.settings import get_settings
        _pool = CredentialPool(failure_threshold=get_settings().failure_threshold)
    return _pool
