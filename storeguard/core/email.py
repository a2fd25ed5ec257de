"""Email sending via Resend API.

Plain-text messages carrying the raw verification or reset token in a
link to the storefront. Delivery failures are logged and never raised:
the HTTP flows that send mail must not reveal whether delivery happened.
"""

import logging
from urllib.parse import quote, urlencode

import httpx

from storeguard.core.config import settings

logger = logging.getLogger(__name__)

_RESEND_API_URL = "https://api.resend.com/emails"


def _link(path: str, token: str) -> str:
    params = urlencode({"token": token}, quote_via=quote)
    return f"{settings.frontend_url}{path}?{params}"


async def _send(*, to_email: str, subject: str, text: str) -> None:
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                _RESEND_API_URL,
                headers={
                    "Authorization": f"Bearer {settings.resend_api_key.get_secret_value()}",
                },
                json={
                    "from": settings.email_from,
                    "to": to_email,
                    "subject": subject,
                    "text": text,
                },
                timeout=settings.email_timeout_seconds,
            )
            resp.raise_for_status()
    except httpx.HTTPError:
        logger.warning("Failed to send email (subject=%s)", subject, exc_info=True)


async def send_verification_email(*, to_email: str, token: str) -> None:
    """Send the email-verification link.

    Args:
        to_email: Recipient email address.
        token: Raw 64-hex verification token.
    """
    hours = settings.email_verification_ttl_hours
    await _send(
        to_email=to_email,
        subject="Verify your email address",
        text=(
            f"Confirm your email address:\n\n{_link('/verify-email', token)}\n\n"
            f"This link expires in {hours} hours. "
            "If you didn't create an account, you can safely ignore this email."
        ),
    )


async def send_password_reset_email(*, to_email: str, token: str) -> None:
    """Send the password-reset link.

    Args:
        to_email: Recipient email address.
        token: Raw 64-hex reset token.
    """
    minutes = settings.password_reset_ttl_minutes
    await _send(
        to_email=to_email,
        subject="Reset your password",
        text=(
            f"Reset your password:\n\n{_link('/reset-password', token)}\n\n"
            f"This link expires in {minutes} minutes. "
            "If you didn't request this, you can safely ignore this email."
        ),
    )
