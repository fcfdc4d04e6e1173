"""
In-memory fixed-window rate limiter.

Each identifier (normally the caller's IP) gets ``max_requests`` requests per
window. The window starts on the identifier's first request and resets
``window_seconds`` later; the first request after that opens a fresh window.

State is process-local. Several app instances behind a load balancer each
enforce their own ceiling, so the effective ceiling is multiplied by the
instance count.

Limiters are plain objects owned by the FastAPI app (``app.state``), never
module-level singletons, so separate apps and test runs never share counts.
"""

import asyncio
import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

# Headers checked in order for the caller's IP. A request carrying none of
# them lands in the shared "unknown" bucket.
_CLIENT_IP_HEADERS = (
    "cf-connecting-ip",   # Cloudflare
    "x-real-ip",          # nginx
    "x-forwarded-for",    # standard proxy chain, first hop wins
    "x-client-ip",
)

UNKNOWN_IDENTIFIER = "unknown"

DEFAULT_CLEANUP_INTERVAL_SECONDS = 600


# ---------------------------------------------------------------------------
# Config and results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: float
    message: str = "Too many requests, please try again later"


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: Optional[int] = None

    def headers(self) -> dict[str, str]:
        """X-RateLimit-* (and Retry-After when throttled) response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}; using {default}")
        return default


def webhook_config() -> RateLimitConfig:
    """Public webhook traffic: permissive, form builders can burst."""
    return RateLimitConfig(
        max_requests=_env_int("WEBHOOK_RATE_LIMIT_MAX", 1000),
        window_seconds=_env_int("WEBHOOK_RATE_LIMIT_WINDOW_SECONDS", 60),
    )


def api_config() -> RateLimitConfig:
    """Dashboard/API traffic: moderate."""
    return RateLimitConfig(
        max_requests=_env_int("API_RATE_LIMIT_MAX", 100),
        window_seconds=_env_int("API_RATE_LIMIT_WINDOW_SECONDS", 60),
    )


def auth_config() -> RateLimitConfig:
    """Credential checks: strict, to blunt brute forcing."""
    return RateLimitConfig(
        max_requests=_env_int("AUTH_RATE_LIMIT_MAX", 5),
        window_seconds=_env_int("AUTH_RATE_LIMIT_WINDOW_SECONDS", 900),
        message="Too many authentication attempts, please try again later",
    )


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------

class RateLimiter:
    """
    Fixed-window counter keyed by identifier.

    ``check`` never raises. All mutation happens under one lock, so the
    read-modify-write of an entry is atomic with respect to other threads
    (store calls run in a thread pool, so handlers can interleave).
    """

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def check(self, identifier: str) -> RateLimitResult:
        limit = self.config.max_requests
        with self._lock:
            now = self._clock()
            entry = self._entries.get(identifier)

            if entry is None or now >= entry.reset_at:
                entry = RateLimitEntry(count=1, reset_at=now + self.config.window_seconds)
                self._entries[identifier] = entry
                return RateLimitResult(
                    allowed=True,
                    limit=limit,
                    remaining=max(limit - 1, 0),
                    reset_at=entry.reset_at,
                )

            if entry.count >= limit:
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=entry.reset_at,
                    retry_after_seconds=max(math.ceil(entry.reset_at - now), 1),
                )

            entry.count += 1
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit - entry.count,
                reset_at=entry.reset_at,
            )

    def reset(self, identifier: str) -> bool:
        """Forget one identifier. Returns True if it was tracked."""
        with self._lock:
            return self._entries.pop(identifier, None) is not None

    def clear_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Drop every entry whose window has elapsed. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now >= entry.reset_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


def build_rate_limiters() -> dict[str, RateLimiter]:
    """Create the limiters the app registers on ``app.state.rate_limiters``."""
    return {
        "webhook": RateLimiter(webhook_config()),
        "api": RateLimiter(api_config()),
        "auth": RateLimiter(auth_config()),
    }


# ---------------------------------------------------------------------------
# Identifier derivation
# ---------------------------------------------------------------------------

def get_client_identifier(headers: Mapping[str, str]) -> str:
    """
    Return the caller IP from proxy/CDN headers.

    Falls back to the shared "unknown" bucket when no header is present, so
    requests without any IP signal are throttled together instead of being
    let through unlimited or rejected outright.
    """
    for name in _CLIENT_IP_HEADERS:
        value = headers.get(name)
        if not value:
            continue
        if name == "x-forwarded-for":
            value = value.split(",")[0]
        value = value.strip()
        if value:
            return value
    return UNKNOWN_IDENTIFIER


# ---------------------------------------------------------------------------
# Background cleanup
# ---------------------------------------------------------------------------

def cleanup_interval_seconds() -> int:
    return _env_int("RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", DEFAULT_CLEANUP_INTERVAL_SECONDS)


async def run_periodic_cleanup(
    limiters: Iterable[RateLimiter],
    interval_seconds: float,
) -> None:
    """
    Sweep expired entries from every limiter until cancelled.

    Housekeeping only: ``check`` already treats an expired entry as a fresh
    window, this just bounds memory when identifiers never come back.
    """
    limiters = list(limiters)
    while True:
        await asyncio.sleep(interval_seconds)
        removed = sum(limiter.cleanup() for limiter in limiters)
        if removed:
            logger.debug(f"Rate limit cleanup removed {removed} expired entries")
