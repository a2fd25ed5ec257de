"""User model - identity and stored credential.

The credential is the pair (password_hash, password_salt). A NULL salt
marks a legacy row hashed before salts were stored explicitly; the
legacy_digest flag stays true after the salt backfill until the next
password change rewrites the digest under the salted scheme.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Integer, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from storeguard.models.base import Base, TimestampMixin

_DEFAULT_UUID = text("gen_random_uuid()")


class User(Base, TimestampMixin):
    """User account for authentication.

    Attributes:
        id: UUID primary key.
        email: Unique email address, stored lowercase.
        name: Display name.
        password_hash: bcrypt digest. NULL for accounts without a password.
        password_salt: 64-char hex salt. NULL for legacy rows.
        legacy_digest: True while password_hash was produced by the saltless
            scheme, even after a salt has been backfilled.
        email_verified: Timestamp when email was verified. NULL = unverified.
        is_active: Deactivated accounts cannot sign in or verify tokens.
        failed_login_count: Consecutive failed sign-in attempts.
        locked_until: Sign-in is refused until this time. NULL = not locked.
        password_changed_at: Last time the password digest was replaced.
        created_at: Account creation timestamp (from TimestampMixin).
        updated_at: Last modification timestamp (from TimestampMixin).
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    password_hash: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    password_salt: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    legacy_digest: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
        default=False,
    )
    email_verified: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("true"),
        default=True,
    )
    failed_login_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("0"),
        default=0,
    )
    locked_until: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    password_changed_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
