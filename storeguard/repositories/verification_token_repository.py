"""Repository for VerificationToken operations.

Tokens are stored as bcrypt digests and cannot be looked up by value, so
verification loads a bounded candidate set and compares in the service.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.models.verification_token import VerificationToken


class VerificationTokenRepository:
    """Stateless repository for VerificationToken table operations.

    All methods are static; there is no instance state.
    """

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        identifier: str,
        token_hash: str,
        purpose: str,
        expires: datetime,
    ) -> VerificationToken:
        """Store a new verification token.

        Args:
            db: Async database session.
            identifier: Email address.
            token_hash: bcrypt digest of the raw token.
            purpose: TokenPurpose value.
            expires: Token expiry timestamp.

        Returns:
            Created VerificationToken.
        """
        vt = VerificationToken(
            identifier=identifier,
            token_hash=token_hash,
            purpose=purpose,
            expires=expires,
        )
        db.add(vt)
        await db.flush()
        await db.refresh(vt)
        return vt

    @staticmethod
    async def delete_live_for_identifier(
        db: AsyncSession,
        *,
        identifier: str,
        purpose: str,
        exclude_id: uuid.UUID | None = None,
    ) -> int:
        """Delete unused tokens for (identifier, purpose).

        Args:
            db: Async database session.
            identifier: Email address.
            purpose: TokenPurpose value.
            exclude_id: Token to keep (the one just consumed or issued).

        Returns:
            Number of deleted rows.
        """
        stmt = delete(VerificationToken).where(
            VerificationToken.identifier == identifier,
            VerificationToken.purpose == purpose,
            VerificationToken.used.is_(False),
        )
        if exclude_id is not None:
            stmt = stmt.where(VerificationToken.id != exclude_id)
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count

    @staticmethod
    async def delete_expired(db: AsyncSession, *, purpose: str | None = None) -> int:
        """Delete expired, unused tokens, optionally for one purpose.

        Returns:
            Number of deleted rows.
        """
        stmt = delete(VerificationToken).where(
            VerificationToken.expires < datetime.now(UTC),
            VerificationToken.used.is_(False),
        )
        if purpose is not None:
            stmt = stmt.where(VerificationToken.purpose == purpose)
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count

    @staticmethod
    async def delete_spent(db: AsyncSession) -> int:
        """Delete every token that is used or expired (periodic cleanup).

        Returns:
            Number of deleted rows.
        """
        stmt = delete(VerificationToken).where(
            or_(
                VerificationToken.used.is_(True),
                VerificationToken.expires < datetime.now(UTC),
            )
        )
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count

    @staticmethod
    async def list_live(
        db: AsyncSession,
        *,
        purpose: str,
        limit: int,
    ) -> list[VerificationToken]:
        """Load unused, unexpired tokens of one purpose, newest first.

        Args:
            db: Async database session.
            purpose: TokenPurpose value.
            limit: Maximum number of rows to return.

        Returns:
            Candidate tokens.
        """
        stmt = (
            select(VerificationToken)
            .where(
                VerificationToken.purpose == purpose,
                VerificationToken.used.is_(False),
                VerificationToken.expires >= datetime.now(UTC),
            )
            .order_by(VerificationToken.created_at.desc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def mark_used(db: AsyncSession, token_id: uuid.UUID) -> bool:
        """Consume a token if nobody else has.

        Single conditional UPDATE: of two concurrent callers, exactly one
        sees a row count of 1.

        Returns:
            True if this call consumed the token.
        """
        stmt = (
            update(VerificationToken)
            .where(
                VerificationToken.id == token_id,
                VerificationToken.used.is_(False),
            )
            .values(used=True, used_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count == 1
