"""Verification token model - email verification and password reset.

Only the bcrypt digest of a token is stored. Tokens move from issued to
consumed (used=true) or expired; neither terminal state is ever reversed.
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Index, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from storeguard.models.base import Base, CreatedAtMixin


class TokenPurpose(str, Enum):
    """What a verification token authorizes."""

    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"


class VerificationToken(Base, CreatedAtMixin):
    """Single-use, time-limited verification token.

    Attributes:
        id: UUID primary key.
        identifier: Subject the token was issued for (email address).
        token_hash: bcrypt digest of the raw token.
        purpose: EMAIL_VERIFICATION or PASSWORD_RESET.
        expires: Absolute expiry timestamp.
        used: True once consumed.
        used_at: When the token was consumed.
        created_at: Issue timestamp (from CreatedAtMixin).
    """

    __tablename__ = "verification_tokens"
    __table_args__ = (
        CheckConstraint(
            "purpose IN ('EMAIL_VERIFICATION', 'PASSWORD_RESET')",
            name="ck_verification_tokens_purpose",
        ),
        Index(
            "ix_verification_tokens_purpose_live",
            "purpose",
            "used",
            "expires",
        ),
        Index("ix_verification_tokens_identifier", "identifier"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    identifier: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    token_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    purpose: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
    )
    expires: Mapped[datetime] = mapped_column(
        nullable=False,
    )
    used: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
        default=False,
    )
    used_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
