"""Authentication endpoints: registration, sign-in, email verification and
password reset.

Security considerations:
- Every route sits behind a per-client rate-limit policy
- login: unknown emails still cost a bcrypt comparison; lockout after
  repeated failures
- forgot-password: identical response whether or not the account exists
- Token routes commit the consumption of a rejected token before the
  error response, and spend a matched token in the same commit as the
  change it authorizes
- Refused sign-ins and rejected tokens are recorded as blocked security
  events before the error is raised
"""

from datetime import UTC, datetime, timedelta
from typing import NoReturn

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.exc import IntegrityError

from storeguard.api.deps import (
    Audit,
    Client,
    ClientInfo,
    CurrentUserId,
    DbSession,
    Matcher,
    Vault,
    enforce_rate_limit,
)
from storeguard.core.auth import create_jwt, set_auth_cookie, validate_password_strength
from storeguard.core.config import settings
from storeguard.core.email import send_password_reset_email, send_verification_email
from storeguard.core.errors import (
    AccountLockedError,
    APIError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from storeguard.core.responses import DataResponse, MessageData
from storeguard.models.security_event import SecurityAction, Severity
from storeguard.models.verification_token import TokenPurpose
from storeguard.repositories.user_repository import UserRepository
from storeguard.services import account_lockout
from storeguard.services.audit_log import AuditLog
from storeguard.services.credential_vault import credential_for_user
from storeguard.services.token_matcher import MatchOutcome, MatchResult

router = APIRouter()

_INVALID_CREDENTIALS_MSG = "Invalid email or password"  # nosec B105

_FORGOT_PASSWORD_MSG = (
    "If an account with that email exists, a password reset link has been sent."
)


def _invalid_token(message: str) -> APIError:
    return APIError(code="INVALID_TOKEN", message=message, status_code=400)


def _token_error(result: MatchResult, *, invalid_message: str) -> APIError:
    """Map a non-MATCHED token outcome to its API error."""
    if result.outcome is MatchOutcome.SUBJECT_NOT_FOUND:
        return NotFoundError("User")
    if result.outcome is MatchOutcome.SUBJECT_INACTIVE:
        return ForbiddenError("Account is inactive", code="ACCOUNT_INACTIVE")
    if result.outcome is MatchOutcome.ALREADY_VERIFIED:
        return ConflictError(
            code="EMAIL_ALREADY_VERIFIED", message="Email is already verified"
        )
    if result.outcome is MatchOutcome.ALREADY_CONSUMED:
        return ConflictError(
            code="TOKEN_ALREADY_USED", message="This link has already been used"
        )
    return _invalid_token(invalid_message)


async def _reject_token(
    result: MatchResult,
    *,
    audit: AuditLog,
    client: ClientInfo,
    route: str,
    invalid_message: str,
    detailed: bool = True,
) -> NoReturn:
    """Record a refused token, then raise the error for its outcome.

    A replayed link is logged as suspicious; every other refusal as an
    unauthorized access attempt. With detailed=False every outcome is
    answered with the same INVALID_TOKEN error.
    """
    if result.outcome is MatchOutcome.ALREADY_CONSUMED:
        action, severity = SecurityAction.SUSPICIOUS_ACTIVITY, Severity.HIGH
    else:
        action, severity = SecurityAction.UNAUTHORIZED_ACCESS, Severity.MEDIUM
    await audit.emit(
        client.event(
            action,
            severity,
            user_id=result.user_id,
            blocked=True,
            route=route,
            outcome=result.outcome.value,
        ),
    )
    if not detailed:
        raise _invalid_token(invalid_message)
    raise _token_error(result, invalid_message=invalid_message)


# ===================================================================
# Request models
# ===================================================================


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register."""

    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    name: str | None = Field(None, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""

    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class EmailRequest(BaseModel):
    """Request body carrying only an email address."""

    model_config = ConfigDict(extra="forbid")

    email: EmailStr


class TokenRequest(BaseModel):
    """Request body for POST /auth/verify-reset-token."""

    model_config = ConfigDict(extra="forbid")

    token: str = Field(min_length=1, max_length=128)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /auth/reset-password."""

    model_config = ConfigDict(extra="forbid")

    token: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=128)


class UserData(BaseModel):
    """Public identity fields returned by register and login."""

    id: str
    email: str
    name: str | None = None


class TokenValidityData(BaseModel):
    """Response payload for POST /auth/verify-reset-token."""

    valid: bool


# ===================================================================
# POST /auth/register
# ===================================================================


@router.post(
    "/register",
    status_code=201,
    dependencies=[Depends(enforce_rate_limit("/register"))],
)
async def register(
    body: RegisterRequest,
    background_tasks: BackgroundTasks,
    db: DbSession,
    vault: Vault,
    matcher: Matcher,
) -> DataResponse[UserData]:
    """Register a new user with email + password.

    Stores a salted credential, issues an email-verification token and
    mails it after the response is sent.
    """
    validate_password_strength(body.password)
    digest, salt = await vault.hash(body.password)

    try:
        user = await UserRepository.create(
            db,
            email=body.email,
            password_hash=digest,
            password_salt=salt,
            name=body.name,
        )
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(
            code="EMAIL_ALREADY_EXISTS",
            message="Email already registered",
        ) from exc

    raw_token = await matcher.issue(
        db,
        subject=user.email,
        purpose=TokenPurpose.EMAIL_VERIFICATION,
        ttl=timedelta(hours=settings.email_verification_ttl_hours),
    )
    await db.commit()

    background_tasks.add_task(
        send_verification_email, to_email=user.email, token=raw_token
    )

    return DataResponse(data=UserData(id=str(user.id), email=user.email, name=user.name))


# ===================================================================
# POST /auth/login
# ===================================================================


@router.post("/login", dependencies=[Depends(enforce_rate_limit("/login"))])
async def login(
    body: LoginRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    db: DbSession,
    vault: Vault,
    audit: Audit,
    client: Client,
) -> DataResponse[UserData]:
    """Verify email + password and issue the session cookie.

    Legacy and salted credentials are both accepted; the stored shape
    picks the scheme. Lockout state is committed before any failure is
    returned.
    """
    user = await UserRepository.get_by_email(db, body.email)

    # Failure events are written inline: background tasks are dropped when
    # the handler raises.
    if user is None:
        await vault.verify(body.password, None)
        await audit.emit(
            client.event(
                SecurityAction.LOGIN_FAILED,
                Severity.MEDIUM,
                reason="unknown_email",
            ),
        )
        raise UnauthorizedError(_INVALID_CREDENTIALS_MSG)

    remaining = account_lockout.lockout_remaining_seconds(user)
    if remaining is not None:
        await audit.emit(
            client.event(
                SecurityAction.LOGIN_FAILED,
                Severity.MEDIUM,
                user_id=user.id,
                blocked=True,
                reason="account_locked",
            ),
        )
        raise AccountLockedError(retry_after=remaining)

    if not await vault.verify(body.password, credential_for_user(user)):
        attempt = await account_lockout.record_failed_attempt(db, user)
        await db.commit()
        if attempt.locked:
            await audit.emit(
                client.event(
                    SecurityAction.ACCOUNT_LOCKED,
                    Severity.HIGH,
                    user_id=user.id,
                    blocked=True,
                    lockout_minutes=settings.lockout_duration_minutes,
                ),
            )
            raise AccountLockedError(retry_after=settings.lockout_duration_minutes * 60)
        await audit.emit(
            client.event(
                SecurityAction.LOGIN_FAILED,
                Severity.MEDIUM,
                user_id=user.id,
                reason="bad_password",
            ),
        )
        raise UnauthorizedError(_INVALID_CREDENTIALS_MSG)

    if not user.is_active:
        await audit.emit(
            client.event(
                SecurityAction.LOGIN_FAILED,
                Severity.MEDIUM,
                user_id=user.id,
                blocked=True,
                reason="account_inactive",
            ),
        )
        raise ForbiddenError("Account is inactive", code="ACCOUNT_INACTIVE")

    if user.email_verified is None:
        await audit.emit(
            client.event(
                SecurityAction.LOGIN_FAILED,
                Severity.MEDIUM,
                user_id=user.id,
                blocked=True,
                reason="email_not_verified",
            ),
        )
        raise ForbiddenError(
            "Please verify your email before signing in.",
            code="EMAIL_NOT_VERIFIED",
        )

    await account_lockout.record_successful_login(db, user)
    await audit.emit(
        client.event(SecurityAction.LOGIN_SUCCESS, Severity.LOW, user_id=user.id),
        background_tasks,
    )

    token = create_jwt(
        user_id=str(user.id),
        secret=settings.auth_secret.get_secret_value(),
    )
    set_auth_cookie(response, token)

    return DataResponse(data=UserData(id=str(user.id), email=user.email, name=user.name))


# ===================================================================
# POST /auth/send-email-verification
# ===================================================================


@router.post(
    "/send-email-verification",
    dependencies=[Depends(enforce_rate_limit("/send-email-verification"))],
)
async def send_email_verification(
    body: EmailRequest,
    user_id: CurrentUserId,
    background_tasks: BackgroundTasks,
    db: DbSession,
    matcher: Matcher,
) -> DataResponse[MessageData]:
    """Re-send the verification link to the signed-in user's own address."""
    user = await UserRepository.get_by_id(db, user_id)
    if user is None:
        raise NotFoundError("User")
    if not user.is_active:
        raise ForbiddenError("Account is inactive", code="ACCOUNT_INACTIVE")
    if user.email != body.email.strip().lower():
        raise ValidationError("Email does not match your account")
    if user.email_verified is not None:
        raise ConflictError(
            code="EMAIL_ALREADY_VERIFIED", message="Email is already verified"
        )

    raw_token = await matcher.issue(
        db,
        subject=user.email,
        purpose=TokenPurpose.EMAIL_VERIFICATION,
        ttl=timedelta(hours=settings.email_verification_ttl_hours),
    )
    await db.commit()

    background_tasks.add_task(
        send_verification_email, to_email=user.email, token=raw_token
    )
    return DataResponse(data=MessageData(message="Verification email sent"))


# ===================================================================
# GET /auth/verify-email
# ===================================================================


@router.get(
    "/verify-email",
    dependencies=[Depends(enforce_rate_limit("/verify-email"))],
)
async def verify_email(
    background_tasks: BackgroundTasks,
    db: DbSession,
    matcher: Matcher,
    audit: Audit,
    client: Client,
    token: str = Query(min_length=1, max_length=128),
) -> DataResponse[MessageData]:
    """Consume an email-verification token and mark the address verified.

    The token is spent in the same commit that sets email_verified, so a
    failed update leaves the link usable.
    """
    result = await matcher.verify(db, token, TokenPurpose.EMAIL_VERIFICATION)
    if not result.matched or result.user_id is None:
        await db.commit()
        await _reject_token(
            result,
            audit=audit,
            client=client,
            route="/verify-email",
            invalid_message="Invalid or expired verification token",
        )

    user = await UserRepository.update(
        db, result.user_id, email_verified=datetime.now(UTC)
    )
    if user is None:
        raise NotFoundError("User")
    await db.commit()

    await audit.emit(
        client.event(
            SecurityAction.EMAIL_VERIFIED, Severity.LOW, user_id=result.user_id
        ),
        background_tasks,
    )
    return DataResponse(data=MessageData(message="Email verified successfully"))


# ===================================================================
# POST /auth/forgot-password
# ===================================================================


@router.post(
    "/forgot-password",
    dependencies=[Depends(enforce_rate_limit("/forgot-password"))],
)
async def forgot_password(
    body: EmailRequest,
    background_tasks: BackgroundTasks,
    db: DbSession,
    matcher: Matcher,
    audit: Audit,
    client: Client,
) -> DataResponse[MessageData]:
    """Issue a password-reset link.

    The response is the same whether or not the account exists, is
    active, or has a password.
    """
    user = await UserRepository.get_by_email(db, body.email)

    if user is not None and user.is_active and user.password_hash is not None:
        raw_token = await matcher.issue(
            db,
            subject=user.email,
            purpose=TokenPurpose.PASSWORD_RESET,
            ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
        )
        await db.commit()
        background_tasks.add_task(
            send_password_reset_email, to_email=user.email, token=raw_token
        )
        await audit.emit(
            client.event(
                SecurityAction.PASSWORD_RESET_REQUEST, Severity.LOW, user_id=user.id
            ),
            background_tasks,
        )

    return DataResponse(data=MessageData(message=_FORGOT_PASSWORD_MSG))


# ===================================================================
# POST /auth/verify-reset-token
# ===================================================================


@router.post(
    "/verify-reset-token",
    dependencies=[Depends(enforce_rate_limit("/verify-reset-token"))],
)
async def verify_reset_token(
    body: TokenRequest,
    db: DbSession,
    matcher: Matcher,
    audit: Audit,
    client: Client,
) -> DataResponse[TokenValidityData]:
    """Check a reset token without spending it."""
    result = await matcher.peek(db, body.token, TokenPurpose.PASSWORD_RESET)
    if not result.matched:
        await _reject_token(
            result,
            audit=audit,
            client=client,
            route="/verify-reset-token",
            invalid_message="Invalid or expired reset token",
            detailed=False,
        )
    return DataResponse(data=TokenValidityData(valid=True))


# ===================================================================
# POST /auth/reset-password
# ===================================================================


@router.post(
    "/reset-password",
    dependencies=[Depends(enforce_rate_limit("/reset-password"))],
)
async def reset_password(
    body: ResetPasswordRequest,
    background_tasks: BackgroundTasks,
    db: DbSession,
    vault: Vault,
    matcher: Matcher,
    audit: Audit,
    client: Client,
) -> DataResponse[MessageData]:
    """Consume a reset token and set a new salted credential.

    Reusing the current password is refused before the token is spent,
    so the link keeps working for a second attempt. The new digest is
    computed before consumption too, and the token is spent in the same
    commit as the credential change.
    """
    validate_password_strength(body.password)

    preview = await matcher.peek(db, body.token, TokenPurpose.PASSWORD_RESET)
    if preview.matched and preview.user_id is not None:
        current = await UserRepository.get_by_id(db, preview.user_id)
        if current is not None and await vault.verify(
            body.password, credential_for_user(current)
        ):
            raise ValidationError(
                "New password must be different from your current password"
            )

    digest, salt = await vault.hash(body.password)

    result = await matcher.verify(db, body.token, TokenPurpose.PASSWORD_RESET)
    if not result.matched or result.user_id is None:
        await db.commit()
        await _reject_token(
            result,
            audit=audit,
            client=client,
            route="/reset-password",
            invalid_message="Invalid or expired reset token",
        )

    user = await UserRepository.get_by_id(db, result.user_id)
    if user is None:
        raise NotFoundError("User")
    await UserRepository.set_credential(
        db,
        user,
        password_hash=digest,
        password_salt=salt,
        changed_at=datetime.now(UTC),
    )
    await db.commit()

    await audit.emit(
        client.event(
            SecurityAction.PASSWORD_CHANGE,
            Severity.MEDIUM,
            user_id=user.id,
            method="password_reset",
        ),
        background_tasks,
    )
    return DataResponse(data=MessageData(message="Password has been reset"))
