"""Caller tokens: lookup, expiry, per-token rate limits and admin mutation.

The registry keeps an in-memory mirror of the stored tokens keyed by token
value. Admin changes write through to the record store first and then swap
the mirror entry under the registry lock, so ``admit`` never sees a
half-updated token.
"""

import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime

from src.logging.audit import get_logger
from src.security.ratelimit import RateLimitResult, SlidingWindowLimiter
from src.store.models import CallerToken, to_datetime, utcnow
from src.store.store import RecordStore

logger = get_logger("tokens")

INVALID_TOKEN = "invalid_token"
DISABLED = "disabled"
EXPIRED = "expired"
RATE_LIMITED = "rate_limited"

_UNSET = object()


@dataclass
class Admission:
    allowed: bool
    code: str = "ok"  # "ok" | "invalid_token" | "disabled" | "expired" | "rate_limited"
    status_code: int = 200
    message: str = ""
    caller_name: str | None = None
    rate: RateLimitResult | None = None


def generate_token_value() -> str:
    return secrets.token_hex(24)


class TokenRegistry:
    """Admits callers by token and owns the token mirror."""

    def __init__(self, store: RecordStore, limiter: SlidingWindowLimiter):
        self._store = store
        self._limiter = limiter
        self._tokens: dict[str, CallerToken] = {}
        self._lock = threading.Lock()

    @property
    def limiter(self) -> SlidingWindowLimiter:
        return self._limiter

    async def load(self, now: datetime | None = None) -> int:
        """Mirror the stored tokens, disabling (and persisting) any already expired."""
        now = now or utcnow()
        tokens = await self._store.get_tokens()
        for token in tokens:
            if token.is_enabled and token.is_expired(now):
                token.is_enabled = False
                await self._store.save_token(token)
                logger.info("Expired token disabled", extra={"audit_data": {
                    "token_name": token.name,
                }})

        with self._lock:
            self._tokens = {t.token: t for t in tokens}
        logger.info("Caller tokens loaded", extra={"audit_data": {"count": len(tokens)}})
        return len(tokens)

    def admit(self, token_value: str, now: datetime | None = None) -> Admission:
        """Check a token and, if it may proceed, record the call in its window."""
        with self._lock:
            token = self._tokens.get(token_value)

        if token is None:
            return Admission(False, INVALID_TOKEN, 401, "Invalid token.")
        if not token.is_enabled:
            return Admission(False, DISABLED, 403, "Token is disabled.", caller_name=token.name)
        # Expiry is checked on every call; a token can expire mid-session
        if token.is_expired(now):
            return Admission(False, EXPIRED, 403, "Token has expired.", caller_name=token.name)

        result = self._limiter.hit(token_value, token.rpm)
        if not result.allowed:
            logger.warning("Caller rate limited", extra={"audit_data": {
                "token_name": token.name, "rpm": token.rpm,
            }})
            return Admission(
                False,
                RATE_LIMITED,
                429,
                f"Rate limit of {token.rpm} RPM exceeded.",
                caller_name=token.name,
                rate=result,
            )

        return Admission(True, caller_name=token.name, rate=result)

    def caller_name(self, token_value: str) -> str | None:
        with self._lock:
            token = self._tokens.get(token_value)
        return token.name if token else None

    def list_tokens(self) -> list[CallerToken]:
        with self._lock:
            tokens = list(self._tokens.values())
        return sorted(tokens, key=lambda t: t.name)

    def _by_id(self, token_id: str) -> CallerToken:
        with self._lock:
            for token in self._tokens.values():
                if token.id == token_id:
                    return token
        raise KeyError(f"Token {token_id} not found")

    @staticmethod
    def _check_rpm(rpm: int) -> None:
        if rpm < 1:
            raise ValueError("RPM must be at least 1.")

    async def create_token(
        self, name: str, rpm: int = 60, expires_at: datetime | None = None
    ) -> CallerToken:
        self._check_rpm(rpm)
        token = CallerToken(
            name=name, token=generate_token_value(), rpm=rpm, expires_at=to_datetime(expires_at)
        )
        saved = await self._store.save_token(token)
        with self._lock:
            self._tokens[saved.token] = saved
        logger.info("Caller token created", extra={"audit_data": {"token_name": name, "rpm": rpm}})
        return saved

    async def update_token(
        self,
        token_id: str,
        *,
        name: str | None = None,
        rpm: int | None = None,
        is_enabled: bool | None = None,
        expires_at=_UNSET,
    ) -> CallerToken:
        current = self._by_id(token_id)
        changes = {}
        if name is not None:
            changes["name"] = name
        if rpm is not None:
            self._check_rpm(rpm)
            changes["rpm"] = rpm
        if is_enabled is not None:
            changes["is_enabled"] = is_enabled
        if expires_at is not _UNSET:
            changes["expires_at"] = to_datetime(expires_at)

        saved = await self._store.save_token(replace(current, **changes))
        with self._lock:
            self._tokens[saved.token] = saved
        logger.info("Caller token updated", extra={"audit_data": {
            "token_name": saved.name, "fields": sorted(changes),
        }})
        return saved

    async def regenerate_token(self, token_id: str) -> CallerToken:
        """Issue a new secret for an existing token; the old value stops working at once."""
        current = self._by_id(token_id)
        saved = await self._store.save_token(replace(current, token=generate_token_value()))
        with self._lock:
            self._tokens.pop(current.token, None)
            self._tokens[saved.token] = saved
        self._limiter.reset(current.token)
        logger.info("Caller token regenerated", extra={"audit_data": {"token_name": saved.name}})
        return saved

    async def delete_token(self, token_id: str) -> None:
        current = self._by_id(token_id)
        await self._store.delete_token(token_id)
        with self._lock:
            self._tokens.pop(current.token, None)
        self._limiter.reset(current.token)
        logger.info("Caller token deleted", extra={"audit_data": {"token_name": current.name}})


_registry: TokenRegistry | None = None


def get_token_registry() -> TokenRegistry:
    """Get the token registry singleton, wired to the configured store."""
    global _registry
    if _registry is None:
        from src.config.settings import get_settings
        from src.store.factory import get_record_store

        limiter = SlidingWindowLimiter(window_seconds=get_settings().rate_window_seconds)
        _registry = TokenRegistry(get_record_store(), limiter)
    return _registry
