"""Backfill explicit salts onto legacy password credentials.

Standalone operator script (not an Alembic migration). Run once after
deploying the salted credential scheme; safe to re-run.

Usage:
    python -m scripts.migrate_explicit_salts

Each legacy identity gets a fresh 64-hex salt in its own savepoint. The
digest is not touched, so existing passwords keep working through the
saltless scheme until their next change; the number of such rows is
logged after the batch. Exits 1 if any identity failed.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.repositories.user_repository import UserRepository
from storeguard.services.credential_vault import CredentialVault, MigrationStats

logger = logging.getLogger(__name__)


async def run_migration(db: AsyncSession) -> MigrationStats:
    """Migrate every legacy identity and commit the batch."""
    stats = await CredentialVault().migrate_legacy_identities(db)
    await db.commit()
    if stats.failed_ids:
        logger.warning(
            "Identities left on the legacy scheme: %s",
            ", ".join(str(user_id) for user_id in stats.failed_ids),
        )
    logger.info(
        "%d identities still verify through the saltless scheme",
        await UserRepository.count_legacy_digests(db),
    )
    return stats


async def main() -> None:
    """CLI entry point: run the salt backfill against the configured database."""
    import sys

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from storeguard.core.config import settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = create_async_engine(settings.database_url, echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with factory() as session:
        stats = await run_migration(session)

    await engine.dispose()

    logger.info("Final stats: %s", stats)
    sys.exit(1 if stats.failed else 0)


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
