"""FastAPI application for the storeguard auth surface.

Wires the security-header middleware, CORS, the app-wide slowapi limit,
the error envelope handlers and the v1 router.
"""

import logging
from typing import Any

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from storeguard.api.v1.router import router as v1_router
from storeguard.core.config import settings
from storeguard.core.errors import AccountLockedError, APIError, RateLimitedError
from storeguard.core.rate_limiting import limiter, rate_limit_exceeded_handler
from storeguard.core.responses import ErrorDetail, ErrorResponse

logger = structlog.get_logger()

_STATIC_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}
_HSTS = "max-age=31536000; includeSubDomains"
_RATE_LIMIT_HEADERS = [
    "Retry-After",
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
]


def configure_logging() -> None:
    """Route stdlib and structlog output through one level."""
    level = settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        ),
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Stamp hardening headers on every response.

    API responses are never cached since they may carry tokens or identity
    data. HSTS is only sent in production, behind the TLS-terminating proxy.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        response.headers.update(_STATIC_HEADERS)
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store, max-age=0"
        if settings.environment == "production":
            response.headers["Strict-Transport-Security"] = _HSTS
        return response


def _envelope(
    status_code: int,
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(
        status_code=status_code, content=body.model_dump(), headers=headers
    )


def _error_headers(exc: APIError) -> dict[str, str] | None:
    if isinstance(exc, RateLimitedError):
        return {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(exc.reset_at),
        }
    if isinstance(exc, AccountLockedError):
        return {"Retry-After": str(exc.retry_after)}
    return None


def api_error_handler(_request: Request, exc: APIError) -> JSONResponse:
    """Render an APIError with its own status, code and retry headers."""
    return _envelope(
        exc.status_code,
        exc.code,
        exc.message,
        details=exc.details,
        headers=_error_headers(exc),
    )


def validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = [
        {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
        for e in exc.errors()
    ]
    return _envelope(
        400, "VALIDATION_ERROR", "Request validation failed", details=details
    )


def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the failure and answer with an opaque 500."""
    logger.exception("unhandled_exception", exc_info=exc, path=request.url.path)
    return _envelope(500, "INTERNAL_ERROR", "An unexpected error occurred")


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="storeguard API",
        version="1.0.0",
        description="Credential, token, rate-limit and audit services for the storefront",
    )

    # Starlette runs the last-added middleware first; CORS must see preflights
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Authorization"],
        expose_headers=_RATE_LIMIT_HEADERS,
    )

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    # App-wide coarse limit; per-route policies live in services.rate_limiter
    app.state.limiter = limiter

    app.include_router(v1_router, prefix="/api/v1")

    @app.get("/health")
    def health_check() -> dict:
        return {"status": "healthy"}

    return app


app = create_app()
