"""Issue and verify single-use email-verification and password-reset tokens.

Raw tokens are 32 random bytes as 64 hex chars and leave the service only
for out-of-band delivery. The database holds a bcrypt digest of each, so a
presented token cannot be looked up directly: verification loads the live
tokens of the requested purpose (bounded by settings.token_candidate_limit)
and compares them one by one until the first match.

Lifecycle: ISSUED -> CONSUMED | EXPIRED. Consumption is a single guarded
UPDATE, so two concurrent verifications of the same token cannot both win.
Expired tokens met during a scan are deleted on the spot.
"""

import asyncio
import logging
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

import bcrypt
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.core.config import settings
from storeguard.core.errors import InternalError
from storeguard.models.verification_token import TokenPurpose, VerificationToken
from storeguard.repositories.user_repository import UserRepository
from storeguard.repositories.verification_token_repository import (
    VerificationTokenRepository,
)

logger = logging.getLogger(__name__)

_TOKEN_BYTES = 32
_RAW_TOKEN_PATTERN = re.compile(r"[0-9a-f]{64}")


class MatchOutcome(str, Enum):
    """Result of presenting a raw token."""

    MATCHED = "MATCHED"
    INVALID = "INVALID"
    ALREADY_CONSUMED = "ALREADY_CONSUMED"
    SUBJECT_NOT_FOUND = "SUBJECT_NOT_FOUND"
    SUBJECT_INACTIVE = "SUBJECT_INACTIVE"
    ALREADY_VERIFIED = "ALREADY_VERIFIED"


@dataclass(frozen=True)
class MatchResult:
    """Outcome of a token check.

    Attributes:
        outcome: What happened.
        subject: Identifier the matched token was issued for.
        token_id: Id of the matched token row.
        user_id: Id of the subject's identity, when it exists.
    """

    outcome: MatchOutcome
    subject: str | None = None
    token_id: uuid.UUID | None = None
    user_id: uuid.UUID | None = None

    @property
    def matched(self) -> bool:
        return self.outcome is MatchOutcome.MATCHED


_INVALID = MatchResult(outcome=MatchOutcome.INVALID)


def is_well_formed(raw_token: str) -> bool:
    """True if raw_token has the issued shape (64 lowercase hex chars)."""
    return bool(_RAW_TOKEN_PATTERN.fullmatch(raw_token))


def _first_match(raw_token: str, digests: list[str]) -> int | None:
    candidate = raw_token.encode()
    for index, digest in enumerate(digests):
        try:
            if bcrypt.checkpw(candidate, digest.encode()):
                return index
        except ValueError:
            logger.warning("Skipping malformed token digest at position %d", index)
    return None


class TokenMatcher:
    """Token issuance and verification.

    Args:
        rounds: bcrypt cost for token digests. Defaults to
            settings.token_hash_rounds.
        candidate_limit: Maximum live tokens compared per verification.
            Defaults to settings.token_candidate_limit.
        timeout_seconds: Per-digest time allowance. Defaults to
            settings.hash_timeout_seconds.
    """

    def __init__(
        self,
        rounds: int | None = None,
        candidate_limit: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.rounds = settings.token_hash_rounds if rounds is None else rounds
        self.candidate_limit = (
            settings.token_candidate_limit
            if candidate_limit is None
            else candidate_limit
        )
        self.timeout_seconds = (
            settings.hash_timeout_seconds
            if timeout_seconds is None
            else timeout_seconds
        )

    # -------------------------------------------------------------------------
    # Issue
    # -------------------------------------------------------------------------

    async def issue(
        self,
        db: AsyncSession,
        *,
        subject: str,
        purpose: TokenPurpose,
        ttl: timedelta,
    ) -> str:
        """Create a token for subject and return its raw value.

        Any earlier unused token for the same (subject, purpose) is deleted
        first, so only the newest link works.

        Args:
            db: Async database session. The caller commits.
            subject: Email address the token is for.
            purpose: What the token authorizes.
            ttl: Lifetime from now.

        Returns:
            Raw 64-hex token for delivery. Never log it.
        """
        subject = subject.strip().lower()
        raw_token = secrets.token_hex(_TOKEN_BYTES)
        token_hash = await self._hash(raw_token)

        replaced = await VerificationTokenRepository.delete_live_for_identifier(
            db, identifier=subject, purpose=purpose.value
        )
        if replaced:
            logger.info("Replaced %d live %s token(s)", replaced, purpose.value)

        await VerificationTokenRepository.create(
            db,
            identifier=subject,
            token_hash=token_hash,
            purpose=purpose.value,
            expires=datetime.now(UTC) + ttl,
        )
        return raw_token

    # -------------------------------------------------------------------------
    # Verify
    # -------------------------------------------------------------------------

    async def verify(
        self, db: AsyncSession, raw_token: str, purpose: TokenPurpose
    ) -> MatchResult:
        """Match a raw token and consume it.

        Every outcome except INVALID consumes the matched token. On
        MATCHED the subject's other unused tokens of this purpose are
        deleted as well.

        Args:
            db: Async database session. The caller commits.
            raw_token: Token as presented by the client.
            purpose: Purpose the caller expects the token to have.

        Returns:
            MatchResult describing the outcome.
        """
        if not is_well_formed(raw_token):
            return _INVALID

        expired = await VerificationTokenRepository.delete_expired(
            db, purpose=purpose.value
        )
        if expired:
            logger.info("Deleted %d expired %s token(s)", expired, purpose.value)

        token = await self._find(db, raw_token, purpose)
        if token is None:
            return _INVALID

        if not await VerificationTokenRepository.mark_used(db, token.id):
            return MatchResult(
                outcome=MatchOutcome.ALREADY_CONSUMED,
                subject=token.identifier,
                token_id=token.id,
            )

        result = await self._check_subject(db, token, purpose)
        if result.matched:
            await VerificationTokenRepository.delete_live_for_identifier(
                db,
                identifier=token.identifier,
                purpose=purpose.value,
                exclude_id=token.id,
            )
        return result

    async def peek(
        self, db: AsyncSession, raw_token: str, purpose: TokenPurpose
    ) -> MatchResult:
        """Match a raw token without consuming or deleting anything.

        Lets a client check a reset link before showing the new-password
        form.
        """
        if not is_well_formed(raw_token):
            return _INVALID
        token = await self._find(db, raw_token, purpose)
        if token is None:
            return _INVALID
        return await self._check_subject(db, token, purpose)

    async def purge_expired(self, db: AsyncSession) -> int:
        """Delete every used or expired token.

        Returns:
            Number of rows removed.
        """
        removed = await VerificationTokenRepository.delete_spent(db)
        logger.info("Purged %d spent verification tokens", removed)
        return removed

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _hash(self, raw_token: str) -> str:
        def _hash_sync() -> str:
            return bcrypt.hashpw(
                raw_token.encode(), bcrypt.gensalt(rounds=self.rounds)
            ).decode()

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(_hash_sync), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            raise InternalError("Token hashing timed out") from exc

    async def _find(
        self, db: AsyncSession, raw_token: str, purpose: TokenPurpose
    ) -> VerificationToken | None:
        candidates = await VerificationTokenRepository.list_live(
            db, purpose=purpose.value, limit=self.candidate_limit
        )
        if not candidates:
            return None
        if len(candidates) == self.candidate_limit:
            logger.warning(
                "Live %s tokens reached the scan limit (%d)",
                purpose.value,
                self.candidate_limit,
            )

        digests = [c.token_hash for c in candidates]
        try:
            index = await asyncio.wait_for(
                asyncio.to_thread(_first_match, raw_token, digests),
                timeout=self.timeout_seconds * len(digests),
            )
        except TimeoutError as exc:
            raise InternalError("Token verification timed out") from exc
        return None if index is None else candidates[index]

    @staticmethod
    async def _check_subject(
        db: AsyncSession, token: VerificationToken, purpose: TokenPurpose
    ) -> MatchResult:
        user = await UserRepository.get_by_email(db, token.identifier)
        if user is None:
            outcome = MatchOutcome.SUBJECT_NOT_FOUND
        elif not user.is_active:
            outcome = MatchOutcome.SUBJECT_INACTIVE
        elif (
            purpose is TokenPurpose.EMAIL_VERIFICATION
            and user.email_verified is not None
        ):
            outcome = MatchOutcome.ALREADY_VERIFIED
        else:
            outcome = MatchOutcome.MATCHED
        return MatchResult(
            outcome=outcome,
            subject=token.identifier,
            token_id=token.id,
            user_id=user.id if user is not None else None,
        )
