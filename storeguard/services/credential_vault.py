"""Password credential hashing, verification and legacy migration.

Two stored shapes exist:

- Salted: ``password_salt`` holds 64 hex chars (32 random bytes) and
  ``password_hash`` is ``bcrypt(base64(sha256(plaintext + salt)))``. The
  SHA-256 pre-digest keeps the bcrypt input at 44 bytes so neither a long
  password nor the 64-char salt is cut off at bcrypt's 72-byte limit.
- Legacy: ``password_hash`` is ``bcrypt(plaintext)`` with no salt column.
  These rows are verified with the saltless scheme only, including after
  the salt backfill, until the next password change rewrites the digest.

bcrypt runs in a worker thread with a bounded timeout so a slow hash never
stalls the event loop indefinitely.
"""

import asyncio
import base64
import hashlib
import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import bcrypt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.core.auth import DUMMY_HASH
from storeguard.core.config import MIN_PASSWORD_HASH_ROUNDS, settings
from storeguard.core.errors import ConflictError, InternalError
from storeguard.models.user import User
from storeguard.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

# 32 random bytes, hex-encoded
_SALT_BYTES = 32

# bcrypt ignores (bcrypt>=5: rejects) input past this many bytes
_BCRYPT_MAX_INPUT = 72


# =============================================================================
# Credential variants
# =============================================================================


@dataclass(frozen=True)
class LegacyCredential:
    """Digest produced by the saltless scheme."""

    digest: str


@dataclass(frozen=True)
class SaltedCredential:
    """Digest produced by the explicit-salt scheme, with its salt."""

    digest: str
    salt: str


Credential = LegacyCredential | SaltedCredential


def credential_from_row(
    digest: str | None,
    salt: str | None,
    legacy_digest: bool = False,
) -> Credential | None:
    """Build the credential variant from a user's stored columns.

    A row with no salt is always legacy. A row with a salt is still legacy
    while ``legacy_digest`` is set (salt backfilled, digest unchanged).

    Returns:
        The credential, or None when no digest is stored.
    """
    if not digest:
        return None
    if salt is None or legacy_digest:
        return LegacyCredential(digest=digest)
    return SaltedCredential(digest=digest, salt=salt)


def credential_for_user(user: User) -> Credential | None:
    """Shorthand for credential_from_row over a User's columns."""
    return credential_from_row(
        user.password_hash, user.password_salt, user.legacy_digest
    )


@dataclass
class MigrationStats:
    """Outcome of a legacy-salt migration batch.

    Attributes:
        migrated: Identities that received a salt.
        failed: Identities whose update failed.
        failed_ids: Ids of the failed identities, for follow-up.
    """

    migrated: int = 0
    failed: int = 0
    failed_ids: list[uuid.UUID] = field(default_factory=list)


# =============================================================================
# Scheme primitives (sync, run in worker threads)
# =============================================================================


def generate_salt() -> str:
    """Return a fresh 64-char hex salt from the OS CSPRNG."""
    return secrets.token_hex(_SALT_BYTES)


def _combine(plaintext: str, salt: str) -> bytes:
    combined = (plaintext + salt).encode()
    return base64.b64encode(hashlib.sha256(combined).digest())


def _legacy_input(plaintext: str) -> bytes:
    return plaintext.encode()[:_BCRYPT_MAX_INPUT]


def _checkpw(candidate: bytes, digest: str) -> bool:
    try:
        return bcrypt.checkpw(candidate, digest.encode())
    except ValueError:
        # Stored value is not a bcrypt digest
        logger.warning("Stored credential digest is malformed")
        return False


# =============================================================================
# CredentialVault
# =============================================================================


class CredentialVault:
    """Hash and verify password credentials.

    Stateless apart from its cost settings; safe to share.

    Args:
        rounds: bcrypt cost. Defaults to settings.password_hash_rounds.
        timeout_seconds: Upper bound per bcrypt call. Defaults to
            settings.hash_timeout_seconds.

    Raises:
        ValueError: If rounds is below the bcrypt cost floor.
    """

    def __init__(
        self,
        rounds: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.rounds = settings.password_hash_rounds if rounds is None else rounds
        if self.rounds < MIN_PASSWORD_HASH_ROUNDS:
            msg = (
                f"bcrypt cost must be at least {MIN_PASSWORD_HASH_ROUNDS}, "
                f"got {self.rounds}"
            )
            raise ValueError(msg)
        self.timeout_seconds = (
            settings.hash_timeout_seconds
            if timeout_seconds is None
            else timeout_seconds
        )

    async def _run(self, func: Callable[..., _T], *args: object) -> _T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            logger.error(
                "Credential hashing exceeded %.1fs", self.timeout_seconds
            )
            raise InternalError("Credential hashing timed out") from exc

    def _hash_sync(self, plaintext: str, salt: str) -> str:
        digest = bcrypt.hashpw(
            _combine(plaintext, salt), bcrypt.gensalt(rounds=self.rounds)
        )
        return digest.decode()

    @staticmethod
    def _verify_sync(plaintext: str, credential: Credential) -> bool:
        if isinstance(credential, SaltedCredential):
            return _checkpw(_combine(plaintext, credential.salt), credential.digest)
        return _checkpw(_legacy_input(plaintext), credential.digest)

    async def hash(self, plaintext: str) -> tuple[str, str]:
        """Hash a new password under the salted scheme.

        Args:
            plaintext: Password as entered.

        Returns:
            (digest, salt); both must be persisted.
        """
        salt = generate_salt()
        digest = await self._run(self._hash_sync, plaintext, salt)
        return digest, salt

    async def verify(self, plaintext: str, credential: Credential | None) -> bool:
        """Check a password against a stored credential.

        The scheme is chosen by the credential variant, never by trial.
        A missing credential still costs one bcrypt comparison so the
        caller's timing does not reveal it.
        """
        if credential is None:
            await self._run(_checkpw, _legacy_input(plaintext), DUMMY_HASH.decode())
            return False
        return await self._run(self._verify_sync, plaintext, credential)

    async def migrate_legacy(self, db: AsyncSession, user: User) -> str:
        """Backfill a salt onto a legacy identity.

        The digest is left untouched and the row stays on the legacy
        verification path until its next password change.

        Returns:
            The new salt.

        Raises:
            ConflictError: If the identity has no digest or already has a salt.
        """
        if user.password_hash is None or user.password_salt is not None:
            raise ConflictError(
                code="CREDENTIAL_NOT_LEGACY",
                message="Identity does not hold a legacy credential",
            )
        salt = generate_salt()
        await UserRepository.set_salt(db, user, password_salt=salt)
        return salt

    async def migrate_legacy_identities(self, db: AsyncSession) -> MigrationStats:
        """Backfill salts onto every legacy identity.

        Each identity is updated inside its own savepoint; a failure is
        logged and counted and the batch moves on. The caller commits.
        """
        stats = MigrationStats()
        legacy_ids = await UserRepository.list_legacy_ids(db)
        logger.info("Found %d legacy identities to migrate", len(legacy_ids))

        for user_id in legacy_ids:
            try:
                async with db.begin_nested():
                    user = await UserRepository.get_by_id(db, user_id)
                    # Migrated or removed since the id list was read
                    if user is None or user.password_salt is not None:
                        continue
                    await self.migrate_legacy(db, user)
                stats.migrated += 1
            except SQLAlchemyError:
                logger.exception("Failed to migrate identity %s", user_id)
                stats.failed += 1
                stats.failed_ids.append(user_id)

        logger.info(
            "Legacy migration finished: %d migrated, %d failed",
            stats.migrated,
            stats.failed,
        )
        return stats
