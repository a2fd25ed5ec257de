"""Delete used and expired verification tokens.

Standalone operator script, meant for a periodic schedule (cron or a
platform scheduler). Keeping the live set small bounds the per-request
scan in TokenMatcher.verify.

Usage:
    python -m scripts.purge_spent_tokens
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.services.token_matcher import TokenMatcher

logger = logging.getLogger(__name__)


async def run_purge(db: AsyncSession) -> int:
    """Purge spent tokens and commit. Returns the number of rows removed."""
    removed = await TokenMatcher().purge_expired(db)
    await db.commit()
    return removed


async def main() -> None:
    """CLI entry point: purge against the configured database."""
    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from storeguard.core.config import settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = create_async_engine(settings.database_url, echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with factory() as session:
        removed = await run_purge(session)

    await engine.dispose()
    logger.info("Removed %d spent tokens", removed)


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
