"""Create users, verification_tokens, security_events and payment_logs.

Revision ID: 001_storeguard_tables
Revises:
Create Date: 2026-03-02

users.password_salt is nullable: rows created before salts were stored
explicitly keep a NULL salt until scripts/migrate_explicit_salts.py runs.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_storeguard_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_SECURITY_ACTIONS = (
    "LOGIN_SUCCESS",
    "LOGIN_FAILED",
    "ACCOUNT_LOCKED",
    "PASSWORD_CHANGE",
    "PASSWORD_RESET_REQUEST",
    "EMAIL_VERIFIED",
    "API_ACCESS",
    "UNAUTHORIZED_ACCESS",
    "SUSPICIOUS_ACTIVITY",
    "RATE_LIMITED",
)
_SEVERITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


def _in_list(column: str, values: Sequence[str]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        sa.UUID(),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def upgrade() -> None:
    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("password_salt", sa.String(64), nullable=True),
        sa.Column(
            "legacy_digest", sa.Boolean(), nullable=False, server_default="false"
        ),
        sa.Column("email_verified", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column(
            "failed_login_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("password_changed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "verification_tokens",
        _uuid_pk(),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("token_hash", sa.String(255), nullable=False),
        sa.Column("purpose", sa.String(30), nullable=False),
        sa.Column("expires", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            _in_list("purpose", ("EMAIL_VERIFICATION", "PASSWORD_RESET")),
            name="ck_verification_tokens_purpose",
        ),
    )
    op.create_index(
        "ix_verification_tokens_purpose_live",
        "verification_tokens",
        ["purpose", "used", "expires"],
    )
    op.create_index(
        "ix_verification_tokens_identifier", "verification_tokens", ["identifier"]
    )

    # No FK on user_id: events outlive the accounts they mention
    op.create_table(
        "security_events",
        _uuid_pk(),
        sa.Column("user_id", sa.UUID(), nullable=True),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=False),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column(
            "details",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("blocked", sa.Boolean(), nullable=False, server_default="false"),
        _created_at(),
        sa.CheckConstraint(
            _in_list("action", _SECURITY_ACTIONS), name="ck_security_events_action"
        ),
        sa.CheckConstraint(
            _in_list("severity", _SEVERITIES), name="ck_security_events_severity"
        ),
    )
    op.create_index(
        "ix_security_events_user_id_created_at",
        "security_events",
        ["user_id", "created_at"],
    )
    op.create_index(
        "ix_security_events_ip_address_created_at",
        "security_events",
        ["ip_address", "created_at"],
    )

    op.create_table(
        "payment_logs",
        _uuid_pk(),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("external_payment_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("method", sa.String(30), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_payment_logs_order_id", "payment_logs", ["order_id"])
    op.create_index(
        "ix_payment_logs_external_payment_id",
        "payment_logs",
        ["external_payment_id"],
    )


def downgrade() -> None:
    op.drop_table("payment_logs")
    op.drop_table("security_events")
    op.drop_table("verification_tokens")
    op.drop_table("users")
