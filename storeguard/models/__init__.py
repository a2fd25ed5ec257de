"""SQLAlchemy ORM models for storeguard.

All models are exported from this module for convenient imports:
    from storeguard.models import User, VerificationToken, ...

Models are organized by domain:
- user.py: User (identity + stored credential + lockout state)
- verification_token.py: VerificationToken, TokenPurpose
- security_event.py: SecurityEvent (append-only), SecurityAction, Severity
- payment_log.py: PaymentLog
"""

from storeguard.models.base import Base, CreatedAtMixin, TimestampMixin
from storeguard.models.payment_log import CAPTURED_STATUSES, PaymentLog
from storeguard.models.security_event import (
    AppendOnlyViolation,
    SecurityAction,
    SecurityEvent,
    Severity,
)
from storeguard.models.user import User
from storeguard.models.verification_token import TokenPurpose, VerificationToken

__all__ = [
    "AppendOnlyViolation",
    "Base",
    "CAPTURED_STATUSES",
    "CreatedAtMixin",
    "PaymentLog",
    "SecurityAction",
    "SecurityEvent",
    "Severity",
    "TimestampMixin",
    "TokenPurpose",
    "User",
    "VerificationToken",
]
