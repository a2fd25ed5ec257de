"""Tests for CredentialVault: salted hashing, legacy verification and
salt backfill.

Hashing tests use the real cost-12 bcrypt the vault enforces, so they are
kept few. Migration tests require PostgreSQL and are skipped without it.
"""

from unittest.mock import patch

import bcrypt
import pytest
import pytest_asyncio
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.core.config import MIN_PASSWORD_HASH_ROUNDS
from storeguard.core.errors import ConflictError, InternalError
from storeguard.models.user import User
from storeguard.repositories.user_repository import UserRepository
from storeguard.services.credential_vault import (
    CredentialVault,
    LegacyCredential,
    SaltedCredential,
    _combine,
    credential_for_user,
    credential_from_row,
    generate_salt,
)
from tests.conftest import TEST_PASSWORD, legacy_digest

_HEX = set("0123456789abcdef")


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault()


@pytest_asyncio.fixture
async def legacy_users(db_session: AsyncSession) -> list[User]:
    """Three users holding pre-salt digests."""
    users = [
        User(email=f"legacy{i}@example.com", password_hash=legacy_digest(TEST_PASSWORD))
        for i in range(3)
    ]
    db_session.add_all(users)
    await db_session.commit()
    return users


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    """CredentialVault refuses weak bcrypt costs."""

    def test_rejects_cost_below_floor(self):
        with pytest.raises(ValueError, match="at least"):
            CredentialVault(rounds=MIN_PASSWORD_HASH_ROUNDS - 1)

    def test_accepts_cost_floor(self):
        assert CredentialVault(rounds=MIN_PASSWORD_HASH_ROUNDS).rounds == 12


# =============================================================================
# Salt and combination primitives
# =============================================================================


class TestGenerateSalt:
    """Salts are 64 hex chars from the OS CSPRNG."""

    def test_salt_is_64_hex_chars(self):
        salt = generate_salt()
        assert len(salt) == 64
        assert set(salt) <= _HEX

    def test_salts_are_unique(self):
        assert len({generate_salt() for _ in range(50)}) == 50


class TestCombine:
    """The pre-digest keeps bcrypt input under its 72-byte limit."""

    @given(password=st.text(max_size=300))
    @settings(max_examples=200, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_combined_input_is_always_44_bytes(self, password):
        assert len(_combine(password, generate_salt())) == 44

    def test_salt_changes_combined_input(self):
        assert _combine("secret", "a" * 64) != _combine("secret", "b" * 64)


# =============================================================================
# Credential variants
# =============================================================================


class TestCredentialFromRow:
    """Stored columns map to exactly one credential variant."""

    def test_no_digest_returns_none(self):
        assert credential_from_row(None, None) is None
        assert credential_from_row("", "a" * 64) is None

    def test_missing_salt_is_legacy(self):
        assert credential_from_row("$2b$digest", None) == LegacyCredential(
            digest="$2b$digest"
        )

    def test_backfilled_salt_stays_legacy(self):
        credential = credential_from_row("$2b$digest", "a" * 64, legacy_digest=True)
        assert isinstance(credential, LegacyCredential)

    def test_salt_without_legacy_flag_is_salted(self):
        credential = credential_from_row("$2b$digest", "a" * 64)
        assert credential == SaltedCredential(digest="$2b$digest", salt="a" * 64)

    def test_credential_for_user_reads_columns(self):
        user = User(
            email="x@example.com",
            password_hash="$2b$digest",
            password_salt="c" * 64,
            legacy_digest=False,
        )
        assert isinstance(credential_for_user(user), SaltedCredential)


# =============================================================================
# Hash and verify
# =============================================================================


class TestHash:
    """New passwords are hashed under the salted scheme."""

    async def test_returns_cost_12_digest_and_salt(self, vault):
        digest, salt = await vault.hash(TEST_PASSWORD)

        assert digest.startswith("$2b$12$")
        assert len(salt) == 64
        assert set(salt) <= _HEX

    async def test_same_password_gets_different_salt(self, vault):
        first = await vault.hash(TEST_PASSWORD)
        second = await vault.hash(TEST_PASSWORD)

        assert first[1] != second[1]
        assert first[0] != second[0]

    async def test_timeout_raises_internal_error(self):
        slow_vault = CredentialVault(timeout_seconds=0.0001)

        with pytest.raises(InternalError, match="timed out"):
            await slow_vault.hash(TEST_PASSWORD)


class TestVerify:
    """Verification picks the scheme from the credential variant."""

    async def test_salted_round_trip(self, vault):
        digest, salt = await vault.hash(TEST_PASSWORD)
        credential = SaltedCredential(digest=digest, salt=salt)

        assert await vault.verify(TEST_PASSWORD, credential) is True
        assert await vault.verify("WrongP@ss1", credential) is False

    async def test_salted_digest_needs_matching_salt(self, vault):
        digest, _salt = await vault.hash(TEST_PASSWORD)

        assert (
            await vault.verify(TEST_PASSWORD, SaltedCredential(digest, "0" * 64))
            is False
        )

    async def test_long_passwords_differing_past_72_bytes_are_distinct(self, vault):
        base = "P@ss1" + "x" * 80
        digest, salt = await vault.hash(base + "A")
        credential = SaltedCredential(digest=digest, salt=salt)

        assert await vault.verify(base + "B", credential) is False
        assert await vault.verify(base + "A", credential) is True

    async def test_legacy_digest_verifies_without_salt(self, vault):
        credential = LegacyCredential(digest=legacy_digest(TEST_PASSWORD))

        assert await vault.verify(TEST_PASSWORD, credential) is True
        assert await vault.verify("WrongP@ss1", credential) is False

    async def test_legacy_digest_is_not_tried_as_salted(self, vault):
        digest = legacy_digest(TEST_PASSWORD)

        assert (
            await vault.verify(TEST_PASSWORD, SaltedCredential(digest, "a" * 64))
            is False
        )

    async def test_missing_credential_runs_dummy_check(self, vault):
        with patch(
            "storeguard.services.credential_vault.bcrypt.checkpw",
            wraps=bcrypt.checkpw,
        ) as checkpw:
            result = await vault.verify(TEST_PASSWORD, None)

        assert result is False
        checkpw.assert_called_once()

    async def test_malformed_digest_returns_false(self, vault):
        credential = LegacyCredential(digest="not-a-bcrypt-digest")

        assert await vault.verify(TEST_PASSWORD, credential) is False


# =============================================================================
# Legacy migration (requires PostgreSQL)
# =============================================================================


class TestMigrateLegacy:
    """Backfilling salts keeps legacy passwords working."""

    async def test_backfill_sets_salt_and_keeps_digest(
        self, vault, db_session, legacy_users
    ):
        user = legacy_users[0]
        original_digest = user.password_hash

        salt = await vault.migrate_legacy(db_session, user)

        assert user.password_salt == salt
        assert user.password_hash == original_digest
        assert user.legacy_digest is True

    async def test_migrated_user_still_verifies(self, vault, db_session, legacy_users):
        user = legacy_users[0]
        await vault.migrate_legacy(db_session, user)

        assert await vault.verify(TEST_PASSWORD, credential_for_user(user)) is True

    async def test_already_salted_user_is_rejected(
        self, vault, db_session, legacy_users
    ):
        user = legacy_users[0]
        await vault.migrate_legacy(db_session, user)

        with pytest.raises(ConflictError) as exc_info:
            await vault.migrate_legacy(db_session, user)

        assert exc_info.value.code == "CREDENTIAL_NOT_LEGACY"

    async def test_user_without_password_is_rejected(self, vault, db_session):
        user = User(email="nopassword@example.com")
        db_session.add(user)
        await db_session.flush()

        with pytest.raises(ConflictError):
            await vault.migrate_legacy(db_session, user)


class TestMigrateLegacyIdentities:
    """Batch migration isolates per-identity failures."""

    async def test_migrates_every_legacy_identity(
        self, vault, db_session, legacy_users
    ):
        stats = await vault.migrate_legacy_identities(db_session)
        await db_session.commit()

        assert stats.migrated == 3
        assert stats.failed == 0
        assert await UserRepository.list_legacy_ids(db_session) == []

    async def test_second_run_is_a_no_op(self, vault, db_session, legacy_users):
        await vault.migrate_legacy_identities(db_session)
        await db_session.commit()

        stats = await vault.migrate_legacy_identities(db_session)

        assert stats.migrated == 0
        assert stats.failed == 0

    async def test_salted_users_are_left_alone(self, vault, db_session):
        digest, salt = await vault.hash(TEST_PASSWORD)
        await UserRepository.create(
            db_session,
            email="modern@example.com",
            password_hash=digest,
            password_salt=salt,
        )
        await db_session.commit()

        stats = await vault.migrate_legacy_identities(db_session)

        assert stats.migrated == 0

    async def test_one_failure_does_not_abort_batch(
        self, vault, db_session, legacy_users
    ):
        failing = legacy_users[1]
        original_set_salt = UserRepository.set_salt

        async def flaky_set_salt(db, user, *, password_salt):
            if user.email == failing.email:
                raise OperationalError("UPDATE users", {}, Exception("boom"))
            await original_set_salt(db, user, password_salt=password_salt)

        with patch.object(UserRepository, "set_salt", new=flaky_set_salt):
            stats = await vault.migrate_legacy_identities(db_session)
        await db_session.commit()

        assert stats.migrated == 2
        assert stats.failed == 1
        assert stats.failed_ids == [failing.id]
        assert await UserRepository.list_legacy_ids(db_session) == [failing.id]

    async def test_legacy_count_tracks_unconverted_digests(
        self, vault, db_session, legacy_users
    ):
        assert await UserRepository.count_legacy_digests(db_session) == 3

        await vault.migrate_legacy_identities(db_session)
        await db_session.commit()

        # Backfilled rows still carry saltless digests until a password change
        assert await UserRepository.count_legacy_digests(db_session) == 3
