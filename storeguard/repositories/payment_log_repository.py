"""Repository for PaymentLog rows and ledger duplicate detection."""

import uuid

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.models.payment_log import PaymentLog


class PaymentLogRepository:
    """Stateless repository for PaymentLog table operations."""

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        order_id: str,
        status: str,
        external_payment_id: str | None = None,
        method: str | None = None,
        failure_reason: str | None = None,
    ) -> PaymentLog:
        """Record a gateway interaction."""
        row = PaymentLog(
            order_id=order_id,
            external_payment_id=external_payment_id,
            status=status,
            method=method,
            failure_reason=failure_reason,
        )
        db.add(row)
        await db.flush()
        await db.refresh(row)
        return row

    @staticmethod
    async def find_duplicate_external_ids(db: AsyncSession) -> list[tuple[str, int]]:
        """Find external payment ids referenced by more than one row.

        Returns:
            (external_payment_id, row count) pairs, ordered by id for a
            deterministic pass.
        """
        count = func.count(PaymentLog.id)
        stmt = (
            select(PaymentLog.external_payment_id, count)
            .where(PaymentLog.external_payment_id.is_not(None))
            .group_by(PaymentLog.external_payment_id)
            .having(count > 1)
            .order_by(PaymentLog.external_payment_id)
        )
        result = await db.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    @staticmethod
    async def list_by_external_id(
        db: AsyncSession, external_payment_id: str
    ) -> list[PaymentLog]:
        """Rows referencing one external id, newest first (ties: id desc)."""
        stmt = (
            select(PaymentLog)
            .where(PaymentLog.external_payment_id == external_payment_id)
            .order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def clear_external_id(
        db: AsyncSession,
        *,
        log_id: uuid.UUID,
        expected_external_id: str,
        failure_reason: str,
    ) -> int:
        """Null out a row's external id if it still holds the expected value.

        Returns:
            1 if the row was cleared, 0 if it changed since it was read.
        """
        stmt = (
            update(PaymentLog)
            .where(
                PaymentLog.id == log_id,
                PaymentLog.external_payment_id == expected_external_id,
            )
            .values(external_payment_id=None, failure_reason=failure_reason)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count
