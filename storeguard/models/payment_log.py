"""Payment log model - one row per gateway interaction for an order.

A non-null external_payment_id should be referenced by at most one row.
Rows violating that are repaired by the payment reconciler.
"""

import uuid

from sqlalchemy import String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from storeguard.models.base import Base, CreatedAtMixin

# Statuses meaning the gateway took the customer's money
CAPTURED_STATUSES: frozenset[str] = frozenset({"captured", "paid", "success"})


class PaymentLog(Base, CreatedAtMixin):
    """Gateway interaction recorded against an order.

    Attributes:
        id: UUID primary key.
        order_id: Order the payment belongs to.
        external_payment_id: Gateway-issued payment identifier. NULL when
            the gateway never returned one or a duplicate was cleared.
        status: Gateway status string (e.g. "created", "captured", "failed").
        method: Payment method reported by the gateway.
        failure_reason: Why the attempt failed or was superseded.
        created_at: When the row was written (from CreatedAtMixin).
    """

    __tablename__ = "payment_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    order_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    external_payment_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
    )
    method: Mapped[str | None] = mapped_column(
        String(30),
        nullable=True,
    )
    failure_reason: Mapped[str | None] = mapped_column(
        Text(),
        nullable=True,
    )
