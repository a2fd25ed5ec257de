"""Application configuration loaded from environment variables.

Settings for the database, HTTP boundary, credential hashing, token
lifetimes, lockout, rate limiting and outbound email. Uses pydantic-settings
for validation and .env file support.
"""

from typing import Literal

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_production_security() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "storeguard_dev_password"  # nosec B105

# Minimum length for AUTH_SECRET in production (256 bits = 32 bytes)
_MIN_AUTH_SECRET_LENGTH = 32

# bcrypt cost floor for password digests. Never configurable below this.
MIN_PASSWORD_HASH_ROUNDS = 12


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "storeguard"
    database_user: str = "storeguard_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD
    # Server-side cap on any single statement (asyncpg server_settings)
    database_statement_timeout_ms: int = 10_000

    # API
    # 0.0.0.0 binds to all network interfaces (required for Docker containers)
    api_host: str = "0.0.0.0"  # nosec B104
    api_port: int = 8000

    # CORS (Security)
    # CRITICAL: Never set to ["*"] when allow_credentials=True
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    # Session cookie issued after a successful login
    auth_secret: SecretStr = SecretStr("")
    auth_issuer: str = "storeguard"
    auth_cookie_name: str = "storeguard.session-token"
    auth_cookie_secure: bool = True
    auth_cookie_samesite: Literal["lax", "strict", "none"] = "lax"
    auth_cookie_domain: str = ""

    # Credential hashing
    password_hash_rounds: int = MIN_PASSWORD_HASH_ROUNDS
    token_hash_rounds: int = 10
    # Upper bound on a single bcrypt computation before it is treated as a
    # backend failure
    hash_timeout_seconds: float = 5.0

    # Tokens
    email_verification_ttl_hours: int = 24
    password_reset_ttl_minutes: int = 60
    # Maximum live tokens scanned per verification attempt
    token_candidate_limit: int = 500

    # Account lockout
    lockout_max_failed_logins: int = 5
    lockout_duration_minutes: int = 30

    # Rate Limiting (Security)
    # Format: "count/period" (e.g., "10/minute", "10/15minute")
    rate_limit_enabled: bool = True  # Disable for testing
    # "memory://" keeps counters per process; "redis://host:6379" shares them
    rate_limit_storage_uri: str = "memory://"
    rate_limit_default: str = "100/15minute"
    rate_limit_verify_email: str = "10/15minute"
    rate_limit_send_email_verification: str = "3/15minute"
    rate_limit_forgot_password: str = "3/15minute"
    rate_limit_reset_password: str = "5/15minute"
    rate_limit_verify_reset_token: str = "10/15minute"
    rate_limit_login: str = "5/15minute"
    rate_limit_register: str = "3/hour"

    # Email
    email_from: str = "noreply@storeguard.local"
    resend_api_key: SecretStr = SecretStr("")
    email_timeout_seconds: float = 10.0

    # Frontend URL (verification and reset links point here)
    frontend_url: str = "http://localhost:3000"

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_production_security(self) -> "Settings":
        """Validate security requirements.

        Checks:
        - Password hash cost must not fall below the bcrypt floor (all environments)
        - Token scan bound and hash timeout must be positive (all environments)
        - SameSite=None requires Secure flag (browser requirement)
        - CORS must not use wildcard origin (incompatible with credentials)
        - Database password must not be the default in production
        - AUTH_SECRET must be set and >= 32 chars in production
        """
        if self.password_hash_rounds < MIN_PASSWORD_HASH_ROUNDS:
            msg = (
                f"PASSWORD_HASH_ROUNDS must be at least {MIN_PASSWORD_HASH_ROUNDS}. "
                f"Got: {self.password_hash_rounds}"
            )
            raise ValueError(msg)

        if self.token_candidate_limit <= 0:
            msg = (
                "TOKEN_CANDIDATE_LIMIT must be positive. "
                f"Got: {self.token_candidate_limit}"
            )
            raise ValueError(msg)

        if self.hash_timeout_seconds <= 0:
            msg = (
                "HASH_TIMEOUT_SECONDS must be positive. "
                f"Got: {self.hash_timeout_seconds}"
            )
            raise ValueError(msg)

        if self.auth_cookie_samesite == "none" and not self.auth_cookie_secure:
            msg = (
                "AUTH_COOKIE_SECURE must be true when AUTH_COOKIE_SAMESITE=none. "
                "Browsers reject SameSite=None cookies without the Secure flag."
            )
            raise ValueError(msg)

        if "*" in self.allowed_origins:
            msg = (
                "ALLOWED_ORIGINS must not contain '*' (wildcard). "
                "This application uses credentials (cookies) which are "
                "incompatible with wildcard CORS origins."
            )
            raise ValueError(msg)

        if self.environment == "production":
            if self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            secret_value = self.auth_secret.get_secret_value()
            if len(secret_value) < _MIN_AUTH_SECRET_LENGTH:
                msg = (
                    f"AUTH_SECRET must be at least {_MIN_AUTH_SECRET_LENGTH} "
                    "characters in production. "
                    'Generate with: python -c "import secrets; '
                    'print(secrets.token_hex(32))"'
                )
                raise ValueError(msg)

        return self


settings = Settings()
