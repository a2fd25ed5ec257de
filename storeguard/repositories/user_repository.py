"""Repository for User CRUD operations.

Provides database access for the users table, including the credential
columns and the lockout counters.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.models.user import User

logger = logging.getLogger(__name__)

# Fields that may be updated via UserRepository.update().
# Security: Never add 'id', 'email', 'created_at', or 'updated_at'.
# Credential columns change only through set_credential() so the digest,
# salt and legacy flag always move together.
_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "name",
        "email_verified",
        "is_active",
    }
)


class UserRepository:
    """Stateless repository for User table operations.

    All methods are static; there is no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def get_by_id(db: AsyncSession, user_id: uuid.UUID) -> User | None:
        """Fetch a user by primary key.

        Args:
            db: Async database session.
            user_id: UUID primary key.

        Returns:
            User if found, None otherwise.
        """
        return await db.get(User, user_id)

    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> User | None:
        """Fetch a user by email address (case-insensitive).

        Args:
            db: Async database session.
            email: Email address to look up.

        Returns:
            User if found, None otherwise.
        """
        stmt = select(User).where(User.email == email.strip().lower())
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        email: str,
        password_hash: str,
        password_salt: str,
        name: str | None = None,
    ) -> User:
        """Create a new user with a salted credential.

        Email is normalized to lowercase before storage.

        Returns:
            Created User with database-generated fields populated.

        Raises:
            sqlalchemy.exc.IntegrityError: If email already exists.
        """
        user = User(
            email=email.strip().lower(),
            name=name,
            password_hash=password_hash,
            password_salt=password_salt,
            legacy_digest=False,
        )
        db.add(user)
        await db.flush()
        await db.refresh(user)
        return user

    @staticmethod
    async def update(
        db: AsyncSession,
        user_id: uuid.UUID,
        **kwargs: str | datetime | bool | None,
    ) -> User | None:
        """Update user fields.

        Only fields in _UPDATABLE_FIELDS are allowed. Unknown field names
        raise ValueError.

        Returns:
            Updated User if found, None if user does not exist.

        Raises:
            ValueError: If an unknown field name is passed.
        """
        unknown = set(kwargs) - _UPDATABLE_FIELDS
        if unknown:
            msg = f"Unknown fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        user = await db.get(User, user_id)
        if user is None:
            return None

        for field, value in kwargs.items():
            setattr(user, field, value)

        await db.flush()
        await db.refresh(user)
        return user

    @staticmethod
    async def set_credential(
        db: AsyncSession,
        user: User,
        *,
        password_hash: str,
        password_salt: str,
        changed_at: datetime,
    ) -> None:
        """Replace the stored credential with a salted one.

        Clears the legacy marker and any lockout state.
        """
        user.password_hash = password_hash
        user.password_salt = password_salt
        user.legacy_digest = False
        user.password_changed_at = changed_at
        user.failed_login_count = 0
        user.locked_until = None
        await db.flush()

    @staticmethod
    async def set_salt(db: AsyncSession, user: User, *, password_salt: str) -> None:
        """Backfill a salt onto a legacy row, leaving the digest alone.

        The row keeps verifying through the saltless scheme, so it is
        marked legacy_digest until the next password change.
        """
        user.password_salt = password_salt
        user.legacy_digest = True
        await db.flush()

    @staticmethod
    async def list_legacy_ids(db: AsyncSession) -> list[uuid.UUID]:
        """Return ids of users holding a digest but no salt, oldest first."""
        stmt = (
            select(User.id)
            .where(User.password_hash.is_not(None), User.password_salt.is_(None))
            .order_by(User.created_at)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def count_legacy_digests(db: AsyncSession) -> int:
        """Count rows still authenticated through the saltless scheme."""
        stmt = (
            select(func.count())
            .select_from(User)
            .where(
                User.password_hash.is_not(None),
                or_(User.password_salt.is_(None), User.legacy_digest.is_(True)),
            )
        )
        result = await db.execute(stmt)
        count: int = result.scalar_one()
        return count

    @staticmethod
    async def register_failed_login(
        db: AsyncSession,
        user: User,
        *,
        max_attempts: int,
        lock_until: datetime,
    ) -> bool:
        """Increment the failure counter, locking the account at the threshold.

        The increment runs as a single UPDATE so concurrent failures are
        all counted.

        Returns:
            True if this failure locked the account.
        """
        stmt = (
            update(User)
            .where(User.id == user.id)
            .values(failed_login_count=User.failed_login_count + 1)
            .returning(User.failed_login_count)
        )
        result = await db.execute(stmt)
        count: int = result.scalar_one()
        locked = count >= max_attempts
        if locked:
            await db.execute(
                update(User)
                .where(User.id == user.id)
                .values(locked_until=lock_until, failed_login_count=0)
            )
            logger.info("Account %s locked after %d failed attempts", user.id, count)
        await db.refresh(user)
        return locked

    @staticmethod
    async def clear_failed_logins(db: AsyncSession, user: User) -> None:
        """Reset the failure counter and lift any lock."""
        if user.failed_login_count == 0 and user.locked_until is None:
            return
        user.failed_login_count = 0
        user.locked_until = None
        await db.flush()
