"""Inbound caller authentication.

``SECURITY_MODE`` selects the check applied to ``Authorization: Bearer ...``:
none (open proxy), password (one shared secret) or token (per-caller tokens
with their own RPM ceilings).
"""

import hmac
from dataclasses import dataclass

from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.config.settings import get_settings
from src.logging.audit import get_logger
from src.security.tokens import get_token_registry

logger = get_logger("security")

bearer_scheme = HTTPBearer(auto_error=False)

ANONYMOUS = "N/A"


@dataclass
class CallerIdentity:
    name: str
    token: str | None = None


async def verify_caller(
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> CallerIdentity:
    """FastAPI dependency that admits the caller according to the security mode."""
    settings = get_settings()
    mode = settings.security_mode.strip().lower()
    supplied = credentials.credentials if credentials else None

    if mode == "none":
        return CallerIdentity(name=ANONYMOUS)

    if mode == "password":
        if supplied is None or not hmac.compare_digest(supplied, settings.proxy_password):
            raise HTTPException(status_code=401, detail="Invalid password.")
        return CallerIdentity(name=ANONYMOUS)

    if mode == "token":
        if supplied is None:
            raise HTTPException(status_code=401, detail="Missing token.")
        admission = get_token_registry().admit(supplied)
        if not admission.allowed:
            headers = None
            if admission.rate is not None:
                headers = {
                    "Retry-After": str(max(1, int(admission.rate.reset_seconds + 0.999))),
                    "X-RateLimit-Limit": str(admission.rate.limit),
                    "X-RateLimit-Remaining": "0",
                }
            raise HTTPException(
                status_code=admission.status_code, detail=admission.message, headers=headers
            )
        return CallerIdentity(name=admission.caller_name or ANONYMOUS, token=supplied)

    logger.error("Unknown security mode", extra={"audit_data": {"security_mode": mode}})
    raise HTTPException(status_code=500, detail="Server security is misconfigured.")
