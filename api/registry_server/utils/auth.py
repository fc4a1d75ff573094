import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Request

from utils.rate_limit import credential_key

logger = logging.getLogger("agrinet.registry")

AUTH_CHALLENGE = 'Bearer realm="node-registry"'


def extract_token(request: Request) -> Optional[str]:
    """Credential presented as `Authorization: Bearer <token>` or `x-api-key`."""
    auth_header = request.headers.get("authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        if token:
            return token
    api_key = (request.headers.get("x-api-key") or "").strip()
    return api_key or None


def token_matches(presented: Optional[str], expected: Optional[str]) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_write_access(request: Request) -> str:
    """
    Gate for every write endpoint, checked in order:

    1. the Origin header (when present) must be on the write allow-list -> 403
    2. writes must be enabled, i.e. a token is configured -> 503
    3. the presented token must match it -> 401 with a challenge
    4. the caller must be under the write rate limit -> 429 with Retry-After

    Returns the rate-limit key of the caller.
    """
    state = request.app.state
    settings = state.settings

    origin = request.headers.get("origin")
    if not state.write_origins.allows(origin):
        logger.warning("[auth] write from disallowed origin %s", origin)
        raise HTTPException(status_code=403, detail="Origin not allowed")

    if not settings.writes_enabled:
        raise HTTPException(
            status_code=503,
            detail="Write access is disabled; REGISTRY_WRITE_TOKEN is not configured",
        )

    token = extract_token(request)
    if not token_matches(token, settings.write_token):
        raise HTTPException(
            status_code=401,
            detail="Missing or invalid write token",
            headers={"WWW-Authenticate": AUTH_CHALLENGE},
        )

    remote_addr = request.client.host if request.client else None
    key = credential_key(token, remote_addr)
    decision = state.rate_limiter.hit(key)
    if not decision.allowed:
        logger.warning("[rate-limit] %s %s rejected, retry in %ss", request.method, request.url.path, decision.retry_after)
        raise HTTPException(
            status_code=429,
            detail=f"Too many write requests; retry in {decision.retry_after} seconds",
            headers={"Retry-After": str(decision.retry_after)},
        )
    return key
