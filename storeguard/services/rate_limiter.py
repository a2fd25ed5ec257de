"""Per-client, per-route fixed-window rate limiting for sensitive endpoints.

Keys are ``"{client_ip}:{route}"``. Each key's window opens on its first
hit; requests past the policy's count inside the window are denied until
it elapses, after which the counter starts over.

Counters live in a ``limits`` storage backend chosen by URI:
``memory://`` keeps them in-process (limits apply per instance), and
``redis://host:port`` shares them across instances with atomic
increment-and-expire. The async flavour of each backend is used, so a
network store never stalls the event loop. If the store errors the request
is allowed and a warning is logged.

Usage:
    from storeguard.services.rate_limiter import POLICIES, rate_limiter

    decision = await rate_limiter.check(f"{ip}:/verify-email", POLICIES["/verify-email"])
    if isinstance(decision, Denied):
        ...
"""

import math
import time
from dataclasses import dataclass

import structlog
from limits import RateLimitItem, parse
from limits.aio.storage import MemoryStorage, Storage
from limits.aio.strategies import FixedWindowRateLimiter
from limits.storage import storage_from_string

from storeguard.core.config import settings

logger = structlog.get_logger()

RATE_LIMITED_REASON = "RATE_LIMITED"


@dataclass(frozen=True)
class Allowed:
    """Request may proceed.

    Attributes:
        limit: Requests allowed per window.
        remaining: Requests left in the current window.
        reset_at: Epoch seconds at which the window resets.
    """

    limit: int
    remaining: int
    reset_at: int


@dataclass(frozen=True)
class Denied:
    """Request exceeds the window's allowance.

    Attributes:
        limit: Requests allowed per window.
        retry_after: Whole seconds until the window resets (>= 1).
        reset_at: Epoch seconds at which the window resets.
        reason: Stable machine-readable reason.
    """

    limit: int
    retry_after: int
    reset_at: int
    reason: str = RATE_LIMITED_REASON


Decision = Allowed | Denied


def rate_limit_key(client_ip: str, route: str) -> str:
    """Compose the counter key for a client and route."""
    return f"{client_ip}:{route}"


def async_storage_from_uri(uri: str) -> Storage:
    """Build the async limits backend for a storage URI such as redis://host."""
    if not uri.startswith("async+"):
        uri = f"async+{uri}"
    return storage_from_string(uri)


class RateLimiter:
    """Fixed-window limiter over an injected counter store.

    Args:
        storage: Async counter backend. Defaults to an in-process memory store.
        enabled: When False every check is allowed without touching the store.
    """

    def __init__(self, storage: Storage | None = None, *, enabled: bool = True) -> None:
        self.storage = storage if storage is not None else MemoryStorage()
        self.enabled = enabled
        self._strategy = FixedWindowRateLimiter(self.storage)

    async def check(self, key: str, policy: RateLimitItem | str) -> Decision:
        """Count one request against key and decide.

        Args:
            key: Counter key, normally from rate_limit_key().
            policy: Limit such as "10/15minute", or a parsed RateLimitItem.

        Returns:
            Allowed or Denied.
        """
        item = parse(policy) if isinstance(policy, str) else policy
        limit = item.amount
        now = time.time()

        if not self.enabled:
            return Allowed(
                limit=limit,
                remaining=limit,
                reset_at=int(now + item.get_expiry()),
            )

        try:
            permitted = await self._strategy.hit(item, key)
            stats = await self._strategy.get_window_stats(item, key)
        except Exception:
            logger.warning(
                "Rate limit store unavailable, allowing request",
                key=key,
                exc_info=True,
            )
            return Allowed(
                limit=limit,
                remaining=limit,
                reset_at=int(now + item.get_expiry()),
            )

        reset_at = math.ceil(stats.reset_time)
        if permitted:
            return Allowed(limit=limit, remaining=stats.remaining, reset_at=reset_at)

        retry_after = max(1, math.ceil(stats.reset_time - now))
        return Denied(limit=limit, retry_after=retry_after, reset_at=reset_at)

    async def reset(self) -> None:
        """Drop every counter."""
        await self.storage.reset()


# Route -> policy for the sensitive endpoints
POLICIES: dict[str, str] = {
    "/verify-email": settings.rate_limit_verify_email,
    "/send-email-verification": settings.rate_limit_send_email_verification,
    "/forgot-password": settings.rate_limit_forgot_password,
    "/reset-password": settings.rate_limit_reset_password,
    "/verify-reset-token": settings.rate_limit_verify_reset_token,
    "/login": settings.rate_limit_login,
    "/register": settings.rate_limit_register,
}

rate_limiter = RateLimiter(
    async_storage_from_uri(settings.rate_limit_storage_uri),
    enabled=settings.rate_limit_enabled,
)
