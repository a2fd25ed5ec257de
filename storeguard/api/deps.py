"""Shared dependencies for API endpoints.

Services are provided through small getter functions so tests can swap
them with ``app.dependency_overrides``.
"""

import uuid
from collections.abc import Awaitable, Callable
from typing import Annotated

import jwt
from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.core.auth import decode_jwt
from storeguard.core.client_ip import get_client_ip, get_user_agent
from storeguard.core.config import settings
from storeguard.core.database import get_db
from storeguard.core.errors import RateLimitedError, UnauthorizedError
from storeguard.models.security_event import SecurityAction, Severity
from storeguard.schemas.security_event import AuditEvent
from storeguard.services.audit_log import AuditLog, audit_log
from storeguard.services.credential_vault import CredentialVault
from storeguard.services.rate_limiter import (
    POLICIES,
    Denied,
    RateLimiter,
    rate_limit_key,
    rate_limiter,
)
from storeguard.services.token_matcher import TokenMatcher

_vault: CredentialVault | None = None
_matcher: TokenMatcher | None = None


def get_credential_vault() -> CredentialVault:
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault


def get_token_matcher() -> TokenMatcher:
    global _matcher
    if _matcher is None:
        _matcher = TokenMatcher()
    return _matcher


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


def get_audit_log() -> AuditLog:
    return audit_log


DbSession = Annotated[AsyncSession, Depends(get_db)]
Vault = Annotated[CredentialVault, Depends(get_credential_vault)]
Matcher = Annotated[TokenMatcher, Depends(get_token_matcher)]
Audit = Annotated[AuditLog, Depends(get_audit_log)]


class ClientInfo:
    """Caller address and agent, resolved once per request."""

    def __init__(self, request: Request) -> None:
        self.ip_address = get_client_ip(request)
        self.user_agent = get_user_agent(request)

    def event(
        self,
        action: SecurityAction,
        severity: Severity,
        *,
        user_id: uuid.UUID | None = None,
        blocked: bool = False,
        **details: object,
    ) -> AuditEvent:
        """Build an audit event stamped with this client's address."""
        return AuditEvent(
            action=action,
            severity=severity,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            user_id=user_id,
            blocked=blocked,
            details=details,
        )


Client = Annotated[ClientInfo, Depends(ClientInfo)]


async def get_current_user_id(request: Request) -> uuid.UUID:
    """Get the signed-in user's id from the session cookie.

    Raises:
        UnauthorizedError: If the cookie is missing or its JWT is invalid.
            The message never says which.
    """
    token = request.cookies.get(settings.auth_cookie_name)
    if not token:
        raise UnauthorizedError()
    try:
        payload = decode_jwt(token, settings.auth_secret.get_secret_value())
        return uuid.UUID(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        raise UnauthorizedError() from exc


CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]


def enforce_rate_limit(route: str) -> Callable[..., Awaitable[None]]:
    """Build a dependency applying the named route's rate-limit policy.

    Allowed requests get X-RateLimit-* headers. Denied requests are
    recorded as blocked RATE_LIMITED events, then refused with 429.

    Usage:
        @router.post("/login", dependencies=[Depends(enforce_rate_limit("/login"))])
    """
    policy = POLICIES[route]

    async def _check(
        response: Response,
        client: Client,
        limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
        audit: Audit,
    ) -> None:
        decision = await limiter.check(
            rate_limit_key(client.ip_address, route), policy
        )
        if isinstance(decision, Denied):
            await audit.record(
                client.event(
                    SecurityAction.RATE_LIMITED,
                    Severity.MEDIUM,
                    blocked=True,
                    route=route,
                    limit=decision.limit,
                    retry_after=decision.retry_after,
                )
            )
            raise RateLimitedError(
                retry_after=decision.retry_after,
                limit=decision.limit,
                reset_at=decision.reset_at,
            )

        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(decision.reset_at)

    return _check
