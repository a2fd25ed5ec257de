"""Repair payment_logs rows that share one external payment id.

Standalone operator script. Prints the pass report as JSON.

Usage:
    python -m scripts.reconcile_payment_ids            # repair
    python -m scripts.reconcile_payment_ids --dry-run  # report only
    python -m scripts.reconcile_payment_ids --check    # integrity check only

Exit codes:
    0  success (or --check found a clean ledger)
    1  --check found duplicates, or rows failed to update
    2  another reconciliation pass holds the ledger lock
"""

import argparse
import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.core.errors import PaymentIntegrityError, ReconciliationInProgressError
from storeguard.services.payment_reconciler import (
    check_ledger_integrity,
    reconcile_payment_ids,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DIRTY = 1
EXIT_LOCKED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m scripts.reconcile_payment_ids",
        description="Clear duplicate external payment ids from payment_logs.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--dry-run",
        action="store_true",
        help="report what would change without writing",
    )
    mode.add_argument(
        "--check",
        action="store_true",
        help="only verify that no external payment id is shared",
    )
    return parser


async def run(db: AsyncSession, *, dry_run: bool = False, check: bool = False) -> int:
    """Run one pass and return the process exit code."""
    if check:
        try:
            await check_ledger_integrity(db)
        except PaymentIntegrityError as exc:
            logger.error("%s", exc.message)
            return EXIT_DIRTY
        logger.info("Payment ledger is clean")
        return EXIT_OK

    try:
        report = await reconcile_payment_ids(db, dry_run=dry_run)
    except ReconciliationInProgressError as exc:
        await db.rollback()
        logger.error("%s", exc.message)
        return EXIT_LOCKED

    if dry_run:
        await db.rollback()
    else:
        await db.commit()

    print(json.dumps(report.to_dict(), indent=2))
    return EXIT_DIRTY if report.failures else EXIT_OK


async def main(argv: list[str] | None = None) -> None:
    """CLI entry point: reconcile against the configured database."""
    import sys

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from storeguard.core.config import settings

    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = create_async_engine(settings.database_url, echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with factory() as session:
        code = await run(session, dry_run=args.dry_run, check=args.check)

    await engine.dispose()
    sys.exit(code)


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
