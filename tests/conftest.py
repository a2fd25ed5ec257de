import socket
import uuid
from collections.abc import AsyncGenerator, Iterator
from datetime import UTC, datetime, timedelta

import bcrypt
import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from storeguard.core.config import settings
from storeguard.models.base import Base
from storeguard.models.security_event import SecurityEvent


def build_test_database_url(database_url: str) -> str:
    """Point database_url at the <name>_test database, same role and host."""
    url = make_url(database_url)
    return url.set(database=f"{url.database}_test").render_as_string(
        hide_password=False
    )


# Use separate test database
TEST_DATABASE_URL = build_test_database_url(settings.database_url)

# Test-only signing key, swapped into settings by api_client
TEST_AUTH_SECRET = "test-secret-key-that-is-at-least-32-characters-long"  # nosec B105  # gitleaks:allow

TEST_PASSWORD = "ValidP@ss1"  # nosec B105  # gitleaks:allow

# Low cost factor for fixtures that write digests directly
FAST_BCRYPT_ROUNDS = 4


def create_test_jwt(
    user_id: uuid.UUID,
    *,
    secret: str = TEST_AUTH_SECRET,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed session JWT for test authentication."""
    now = datetime.now(UTC)
    payload = {
        "sub": str(user_id),
        "aud": "storeguard",
        "iss": settings.auth_issuer,
        "exp": now + (expires_delta or timedelta(hours=1)),
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def legacy_digest(password: str) -> str:
    """bcrypt digest in the pre-salt format (plaintext hashed directly)."""
    return bcrypt.hashpw(
        password.encode(), bcrypt.gensalt(rounds=FAST_BCRYPT_ROUNDS)
    ).decode()


async def security_events(
    db: AsyncSession,
    *,
    action: str | None = None,
    user_id: uuid.UUID | None = None,
) -> list[SecurityEvent]:
    """Stored security events, newest first, optionally filtered."""
    stmt = select(SecurityEvent).order_by(SecurityEvent.created_at.desc())
    if action is not None:
        stmt = stmt.where(SecurityEvent.action == action)
    if user_id is not None:
        stmt = stmt.where(SecurityEvent.user_id == user_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


def _is_postgres_available() -> bool:
    """Check if PostgreSQL is accepting connections.

    Returns:
        True if PostgreSQL is reachable on the configured port, False otherwise.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex((settings.database_host, settings.database_port))
        sock.close()
        return result == 0
    except OSError:
        return False


# Check once at module load time
_POSTGRES_AVAILABLE = _is_postgres_available()


def skip_if_no_postgres() -> None:
    """Skip test if PostgreSQL is not available.

    Called by fixtures that require database connection.
    """
    if not _POSTGRES_AVAILABLE:
        pytest.skip(
            f"PostgreSQL not available on port {settings.database_port}. "
            "Start database with: docker compose up -d"
        )


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine.

    Skips test if PostgreSQL is not available (e.g., Docker not running).
    """
    skip_if_no_postgres()

    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database (for AuditLog)."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


# =============================================================================
# API Test Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def api_client(
    db_engine, session_factory
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test database.

    Sets up:
    - get_db and the audit log on the test database
    - a fast-cost TokenMatcher
    - the test auth secret, with Secure cookies off for http://test
    """
    from storeguard.api.deps import get_audit_log, get_token_matcher
    from storeguard.core.database import get_db
    from storeguard.main import app
    from storeguard.services.audit_log import AuditLog
    from storeguard.services.token_matcher import TokenMatcher

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_audit_log = AuditLog(session_factory=session_factory)
    test_matcher = TokenMatcher(rounds=FAST_BCRYPT_ROUNDS)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_audit_log] = lambda: test_audit_log
    app.dependency_overrides[get_token_matcher] = lambda: test_matcher

    original_auth_secret = settings.auth_secret
    original_cookie_secure = settings.auth_cookie_secure
    settings.auth_secret = SecretStr(TEST_AUTH_SECRET)
    settings.auth_cookie_secure = False

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    settings.auth_secret = original_auth_secret
    settings.auth_cookie_secure = original_cookie_secure
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def disable_rate_limiting() -> Iterator[None]:
    """Disable both rate limiters during tests.

    Rate limiting is tested separately; tests that need it re-enable the
    per-route limiter explicitly and clear its counters.
    """
    from storeguard.core.rate_limiting import limiter
    from storeguard.services.rate_limiter import rate_limiter

    original_app_wide = limiter.enabled
    original_per_route = rate_limiter.enabled
    limiter.enabled = False
    rate_limiter.enabled = False

    yield

    limiter.enabled = original_app_wide
    rate_limiter.enabled = original_per_route
