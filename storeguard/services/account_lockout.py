"""Brute-force protection for password sign-in.

After settings.lockout_max_failed_logins consecutive failures the account
is locked for settings.lockout_duration_minutes. A successful sign-in or a
password reset clears the counter.
"""

import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.core.config import settings
from storeguard.models.user import User
from storeguard.repositories.user_repository import UserRepository


@dataclass(frozen=True)
class FailedAttemptResult:
    """Outcome of recording a failed sign-in.

    Attributes:
        locked: True if this failure locked the account.
        locked_until: When the new lock expires, if one was applied.
    """

    locked: bool
    locked_until: datetime | None = None


def lockout_remaining_seconds(user: User, now: datetime | None = None) -> int | None:
    """Seconds until the account unlocks, or None if it is not locked."""
    if user.locked_until is None:
        return None
    now = now or datetime.now(UTC)
    remaining = (user.locked_until - now).total_seconds()
    if remaining <= 0:
        return None
    return max(1, math.ceil(remaining))


async def record_failed_attempt(db: AsyncSession, user: User) -> FailedAttemptResult:
    """Count a failed sign-in, locking the account at the threshold."""
    lock_until = datetime.now(UTC) + timedelta(minutes=settings.lockout_duration_minutes)
    locked = await UserRepository.register_failed_login(
        db,
        user,
        max_attempts=settings.lockout_max_failed_logins,
        lock_until=lock_until,
    )
    return FailedAttemptResult(locked=locked, locked_until=lock_until if locked else None)


async def record_successful_login(db: AsyncSession, user: User) -> None:
    """Clear failure count and any expired lock."""
    await UserRepository.clear_failed_logins(db, user)
