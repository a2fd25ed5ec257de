"""Authentication helpers for JWT creation, cookie management, and password validation.

Shared utilities used by the auth endpoints:
- create_jwt / set_auth_cookie: session cookie issued after a successful login
- validate_password_strength: format rules (sync, no network)
- DUMMY_HASH: timing-safe constant for user enumeration defense
"""

import re
from datetime import UTC, datetime, timedelta

import jwt
from fastapi import Response

from storeguard.core.config import settings
from storeguard.core.errors import ValidationError

# Session lifetime
_DEFAULT_EXPIRATION = timedelta(hours=1)

_JWT_AUDIENCE = "storeguard"

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
_PASSWORD_CLASSES = (
    (re.compile(r"[a-zA-Z]"), "letter"),
    (re.compile(r"\d"), "number"),
    (re.compile(r"[^a-zA-Z\d]"), "special character"),
)

# Pre-computed bcrypt hash (cost 12) compared against on unknown emails so
# the response time does not reveal whether the account exists.
DUMMY_HASH = b"$2b$12$ZP2PVB8yI35X.mkRqcUPUuSzJA1CNRt4dZ7X3cyrfJu.2S3w.Qen2"


def create_jwt(
    *,
    user_id: str,
    secret: str,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed JWT with standard claims.

    Args:
        user_id: User UUID string for the sub claim.
        secret: HMAC signing secret.
        expires_delta: Time until expiration. Defaults to 1 hour.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(UTC)
    payload = {
        "sub": user_id,
        "aud": _JWT_AUDIENCE,
        "iss": settings.auth_issuer,
        "exp": now + (expires_delta or _DEFAULT_EXPIRATION),
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_jwt(token: str, secret: str) -> dict:
    """Decode and verify a session JWT.

    Raises:
        jwt.InvalidTokenError: If the signature, audience, issuer or
            expiry check fails.
    """
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        audience=_JWT_AUDIENCE,
        issuer=settings.auth_issuer,
    )


def set_auth_cookie(response: Response, token: str) -> None:
    """Set httpOnly JWT cookie on response.

    Args:
        response: FastAPI response object.
        token: JWT token string.
    """
    response.set_cookie(
        key=settings.auth_cookie_name,
        value=token,
        httponly=True,
        secure=settings.auth_cookie_secure,
        samesite=settings.auth_cookie_samesite,
        path="/",
        max_age=int(_DEFAULT_EXPIRATION.total_seconds()),
        domain=settings.auth_cookie_domain or None,
    )


def validate_password_strength(password: str) -> None:
    """Reject passwords outside the storefront's format rules.

    Raises:
        ValidationError: Naming the first rule the password breaks.
    """
    if not PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH:
        raise ValidationError(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters "
            f"and at most {PASSWORD_MAX_LENGTH} characters"
        )
    for pattern, requirement in _PASSWORD_CLASSES:
        if pattern.search(password) is None:
            raise ValidationError(f"Password must contain at least one {requirement}")
