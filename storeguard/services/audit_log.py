"""Append-only security event log.

Events are validated before anything is written: an unknown action or
severity, or a missing required field, raises ValidationError and nothing
is stored. Valid events are written in their own session so an audit row
survives a rollback of the request that produced it.

A failure to store an event is logged to the operational log and
swallowed: the security decision the caller already made stands whether
or not its record could be written.
"""

from collections.abc import Mapping
from typing import Any

import pydantic
import structlog
from fastapi import BackgroundTasks
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storeguard.core.database import async_session_factory
from storeguard.core.errors import ValidationError
from storeguard.models.security_event import Severity
from storeguard.repositories.security_event_repository import (
    SecurityEventRepository,
)
from storeguard.schemas.security_event import AuditEvent

logger = structlog.get_logger()

REDACTED = "[REDACTED]"

# Any details key containing one of these (case-insensitive) is masked
_SENSITIVE_KEY_FRAGMENTS = (
    "password",
    "secret",
    "token",
    "credential",
    "salt",
    "digest",
    "hash",
    "api_key",
    "authorization",
    "cookie",
)

# Blocked events at these severities are written before the response returns
_SYNCHRONOUS_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


def redact(details: Mapping[str, Any]) -> dict[str, Any]:
    """Copy details with sensitive values masked, recursing into nested dicts."""
    safe: dict[str, Any] = {}
    for key, value in details.items():
        if _is_sensitive(str(key)):
            safe[key] = REDACTED
        elif isinstance(value, Mapping):
            safe[key] = redact(value)
        else:
            safe[key] = value
    return safe


def build_event(data: AuditEvent | Mapping[str, Any]) -> AuditEvent:
    """Validate raw event fields into an AuditEvent.

    Raises:
        ValidationError: If a required field is missing or a value is
            outside the known actions and severities.
    """
    if isinstance(data, AuditEvent):
        return data
    try:
        return AuditEvent.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "Invalid security event",
            details=[
                {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                for e in exc.errors()
            ],
        ) from exc


class AuditLog:
    """Writes security events.

    Args:
        session_factory: Source of independent sessions for each write.
            Defaults to the application's session factory.
    """

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._session_factory = session_factory or async_session_factory

    async def record(self, event: AuditEvent | Mapping[str, Any]) -> bool:
        """Validate and persist one event.

        Args:
            event: AuditEvent, or a mapping of its fields.

        Returns:
            True if stored, False if the store failed (already logged).

        Raises:
            ValidationError: If the event is malformed. Raised before any
                write is attempted.
        """
        validated = build_event(event)
        return await self._write(validated)

    async def emit(
        self,
        event: AuditEvent | Mapping[str, Any],
        background_tasks: BackgroundTasks | None = None,
    ) -> None:
        """Record an event, deferring the write where that is safe.

        HIGH and CRITICAL events that blocked the request are written
        before returning. Everything else is queued on background_tasks
        to run after the response is sent, or written inline when no
        task queue is given.

        Raises:
            ValidationError: If the event is malformed (never deferred).
        """
        validated = build_event(event)
        synchronous = (
            validated.blocked and validated.severity in _SYNCHRONOUS_SEVERITIES
        )
        if synchronous or background_tasks is None:
            await self._write(validated)
        else:
            background_tasks.add_task(self._write, validated)

    async def _write(self, event: AuditEvent) -> bool:
        try:
            async with self._session_factory() as session:
                await SecurityEventRepository.create(
                    session,
                    action=event.action.value,
                    ip_address=event.ip_address,
                    severity=event.severity.value,
                    details=redact(event.details),
                    blocked=event.blocked,
                    user_id=event.user_id,
                    user_agent=event.user_agent,
                )
                await session.commit()
        except (SQLAlchemyError, OSError, TimeoutError):
            logger.error(
                "Failed to store security event",
                action=event.action.value,
                severity=event.severity.value,
                blocked=event.blocked,
                exc_info=True,
            )
            return False
        return True


audit_log = AuditLog()
