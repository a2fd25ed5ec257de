"""Repair payment ledger rows that share one external payment id.

Operator-triggered (see scripts/reconcile_payment_ids.py), never per
request. Steps per pass:
    1. Group rows by non-null external_payment_id, keep groups of 2+
    2. Order each group newest first (created_at desc, then id desc)
    3. Keep the first row; every other row gets its external id cleared and
       a failure_reason naming the survivor
    4. Each clear is conditional on the row still holding that external id
       and runs in its own savepoint, so one bad row never aborts the pass

A second pass over a repaired ledger finds no groups. Concurrent passes are
refused through a transaction-scoped advisory lock.
"""

import logging
from dataclasses import asdict, dataclass

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.core.errors import PaymentIntegrityError, ReconciliationInProgressError
from storeguard.models.payment_log import CAPTURED_STATUSES, PaymentLog
from storeguard.repositories.payment_log_repository import PaymentLogRepository

logger = logging.getLogger(__name__)

# Advisory lock key shared by every reconciliation pass
_LEDGER_LOCK_KEY = 7340021


@dataclass
class ReconciliationReport:
    """Summary of one reconciliation pass.

    Attributes:
        duplicate_groups_found: External ids referenced by 2+ rows.
        records_cleared: Superseded rows whose external id was cleared.
        failures: Rows whose update raised.
        skipped: Rows that changed between the scan and the update.
        superseded_found: Non-survivor rows seen (cleared or not).
        dry_run: True when nothing was written.
    """

    duplicate_groups_found: int = 0
    records_cleared: int = 0
    failures: int = 0
    skipped: int = 0
    superseded_found: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict[str, int | bool]:
        return asdict(self)


def superseded_reason(survivor: PaymentLog) -> str:
    """failure_reason written onto a cleared duplicate."""
    return (
        "Duplicate payment ID cleared during reconciliation; "
        f"canonical record is {survivor.id}"
    )


def _is_captured(row: PaymentLog) -> bool:
    return row.status.lower() in CAPTURED_STATUSES


async def _acquire_ledger_lock(db: AsyncSession) -> None:
    result = await db.execute(
        text("SELECT pg_try_advisory_xact_lock(:key)"), {"key": _LEDGER_LOCK_KEY}
    )
    if not result.scalar_one():
        raise ReconciliationInProgressError()


async def check_ledger_integrity(db: AsyncSession) -> None:
    """Raise if any external payment id is referenced more than once.

    Raises:
        PaymentIntegrityError: With the number of offending ids.
    """
    groups = await PaymentLogRepository.find_duplicate_external_ids(db)
    if groups:
        raise PaymentIntegrityError(duplicate_groups=len(groups))


async def reconcile_payment_ids(
    db: AsyncSession, *, dry_run: bool = False
) -> ReconciliationReport:
    """Run one reconciliation pass.

    Args:
        db: Async database session. The caller commits (which also
            releases the advisory lock) or rolls back.
        dry_run: Report what would change without writing.

    Returns:
        ReconciliationReport with the pass's counters.

    Raises:
        ReconciliationInProgressError: If another pass holds the lock.
    """
    await _acquire_ledger_lock(db)

    report = ReconciliationReport(dry_run=dry_run)
    groups = await PaymentLogRepository.find_duplicate_external_ids(db)
    report.duplicate_groups_found = len(groups)

    for external_id, _count in groups:
        rows = await PaymentLogRepository.list_by_external_id(db, external_id)
        if len(rows) < 2:
            continue
        survivor, superseded = rows[0], rows[1:]
        report.superseded_found += len(superseded)

        if not _is_captured(survivor) and any(_is_captured(r) for r in superseded):
            logger.warning(
                "External payment %s: newest record %s (status=%s) supersedes "
                "a captured record; review manually",
                external_id,
                survivor.id,
                survivor.status,
            )

        if dry_run:
            logger.info(
                "[dry-run] %s: would keep %s and clear %d record(s)",
                external_id,
                survivor.id,
                len(superseded),
            )
            continue

        reason = superseded_reason(survivor)
        for row in superseded:
            try:
                async with db.begin_nested():
                    cleared = await PaymentLogRepository.clear_external_id(
                        db,
                        log_id=row.id,
                        expected_external_id=external_id,
                        failure_reason=reason,
                    )
            except SQLAlchemyError:
                logger.exception(
                    "Failed to clear external payment id on record %s", row.id
                )
                report.failures += 1
                continue

            if cleared:
                report.records_cleared += 1
            else:
                logger.info("Record %s changed during the pass; skipped", row.id)
                report.skipped += 1

    logger.info(
        "Reconciliation complete: %d groups, %d cleared, %d failures, %d skipped",
        report.duplicate_groups_found,
        report.records_cleared,
        report.failures,
        report.skipped,
    )
    return report
