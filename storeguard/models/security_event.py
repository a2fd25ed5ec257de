"""Security event model - append-only audit trail.

Rows are inserted and never edited. A before_update / before_delete
mapper hook refuses any flush that would change or remove one.
"""

import uuid
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, CheckConstraint, Index, String, event, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from storeguard.models.base import Base, CreatedAtMixin


class SecurityAction(str, Enum):
    """Security-relevant actions recorded in the audit trail."""

    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    API_ACCESS = "API_ACCESS"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    RATE_LIMITED = "RATE_LIMITED"


class Severity(str, Enum):
    """Event severity, lowest to highest."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def _in_list(column: str, enum_cls: type[Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class SecurityEvent(Base, CreatedAtMixin):
    """One security-relevant occurrence.

    Attributes:
        id: UUID primary key.
        user_id: Identity involved, if known.
        action: SecurityAction value.
        ip_address: Client address the request came from.
        user_agent: Client User-Agent, if sent.
        severity: Severity value.
        details: Free-form context with sensitive keys redacted.
        blocked: True when the request was refused.
        created_at: When the event was recorded (from CreatedAtMixin).
    """

    __tablename__ = "security_events"
    __table_args__ = (
        CheckConstraint(
            _in_list("action", SecurityAction),
            name="ck_security_events_action",
        ),
        CheckConstraint(
            _in_list("severity", Severity),
            name="ck_security_events_severity",
        ),
        Index("ix_security_events_user_id_created_at", "user_id", "created_at"),
        Index("ix_security_events_ip_address_created_at", "ip_address", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    # No FK: events outlive the accounts they mention
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    action: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
    )
    ip_address: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    user_agent: Mapped[str | None] = mapped_column(
        String(512),
        nullable=True,
    )
    severity: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
        default=dict,
    )
    blocked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
        default=False,
    )


class AppendOnlyViolation(RuntimeError):
    """Raised when code tries to modify or delete a security event."""


@event.listens_for(SecurityEvent, "before_update")
def _refuse_update(_mapper: Any, _connection: Any, target: SecurityEvent) -> None:
    msg = f"security_events is append-only; refused UPDATE of {target.id}"
    raise AppendOnlyViolation(msg)


@event.listens_for(SecurityEvent, "before_delete")
def _refuse_delete(_mapper: Any, _connection: Any, target: SecurityEvent) -> None:
    msg = f"security_events is append-only; refused DELETE of {target.id}"
    raise AppendOnlyViolation(msg)
