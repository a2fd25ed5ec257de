"""App-wide coarse rate limit using slowapi.

Every route gets settings.rate_limit_default per client address on top of
the stricter per-route policies enforced by services.rate_limiter.

Counters share the storage URI of the per-route limiter, so a Redis
deployment limits globally for both.
"""

import structlog
from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.responses import JSONResponse

from storeguard.core.client_ip import get_client_ip
from storeguard.core.config import settings
from storeguard.core.responses import ErrorDetail, ErrorResponse

logger = structlog.get_logger()

limiter = Limiter(
    key_func=get_client_ip,
    default_limits=[settings.rate_limit_default],
    storage_uri=settings.rate_limit_storage_uri,
    enabled=settings.rate_limit_enabled,
    # Store outages must not take the API down
    swallow_errors=True,
)


def rate_limit_exceeded_handler(
    request: Request,
    exc: RateLimitExceeded,
) -> Response:
    """Handle app-wide rate limit exceeded errors.

    Returns 429 with the standard error envelope and a Retry-After equal
    to the limit's full window.
    """
    retry_after = 60
    limit = getattr(exc, "limit", None)
    if limit is not None:
        retry_after = int(limit.limit.get_expiry())

    logger.warning(
        "App-wide rate limit exceeded",
        client_ip=get_client_ip(request),
        path=request.url.path,
    )

    return JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="RATE_LIMITED",
                message=f"Rate limit exceeded: {exc.detail}",
            )
        ).model_dump(),
        headers={"Retry-After": str(retry_after)},
    )
