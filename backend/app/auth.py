"""
Request guards: rate-limit dependencies and admin token verification.

The webhook endpoint itself is public (form builders cannot hold sessions);
it is guarded by the webhook rate limiter and the HMAC signature check in
app.services.signature. The small administration surface (rate-limit
resets) is guarded by a static ADMIN_API_TOKEN sent in X-Admin-Token, and
every attempt counts against the strict "auth" limiter so the token cannot
be brute forced.

Limiters are looked up on ``request.app.state.rate_limiters``; they are
created by app.main when the application is built.
"""

import logging
import os
from typing import Callable, Optional

from fastapi import Header, HTTPException, Request

from app.services.rate_limiter import RateLimiter, RateLimitResult, get_client_identifier
from app.services.signature import timing_safe_equal

logger = logging.getLogger(__name__)


def get_rate_limiter(request: Request, name: str) -> RateLimiter:
    """Return the named limiter registered on the app."""
    limiters: dict[str, RateLimiter] = request.app.state.rate_limiters
    return limiters[name]


def check_rate_limit(request: Request, name: str) -> RateLimitResult:
    """Count this request against limiter ``name`` and return the result."""
    limiter = get_rate_limiter(request, name)
    identifier = get_client_identifier(request.headers)
    result = limiter.check(identifier)
    if not result.allowed:
        logger.warning(
            f"Rate limit '{name}' exceeded for {identifier} "
            f"(retry after {result.retry_after_seconds}s)"
        )
    return result


def rate_limited(name: str) -> Callable:
    """
    Build a dependency that enforces limiter ``name``.

    Raises HTTPException 429 with Retry-After and X-RateLimit-* headers when
    the caller is over the limit.
    """
    async def dependency(request: Request) -> RateLimitResult:
        result = check_rate_limit(request, name)
        if not result.allowed:
            raise HTTPException(
                status_code=429,
                detail=get_rate_limiter(request, name).config.message,
                headers=result.headers(),
            )
        return result

    return dependency


def _get_admin_token() -> str:
    return os.getenv("ADMIN_API_TOKEN", "").strip()


async def verify_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(None),
) -> None:
    """
    Verify the X-Admin-Token header against ADMIN_API_TOKEN.

    Raises:
        HTTPException: 429 when the auth limiter is exhausted, 503 when no
        admin token is configured, 401 when the header is missing or wrong.
    """
    result = check_rate_limit(request, "auth")
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail=get_rate_limiter(request, "auth").config.message,
            headers=result.headers(),
        )

    expected = _get_admin_token()
    if not expected:
        logger.warning("ADMIN_API_TOKEN is not configured; admin endpoints are disabled")
        raise HTTPException(status_code=503, detail="Admin API not configured")

    if not x_admin_token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    if not timing_safe_equal(x_admin_token.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")
