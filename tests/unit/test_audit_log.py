"""Tests for the append-only security event log.

Validation, redaction and write scheduling use an in-memory session
stand-in. Persistence and the append-only guard require PostgreSQL.
"""

import uuid

import pytest
from fastapi import BackgroundTasks
from sqlalchemy.exc import OperationalError

from storeguard.core.errors import ValidationError
from storeguard.models.security_event import (
    AppendOnlyViolation,
    SecurityAction,
    SecurityEvent,
    Severity,
)
from storeguard.schemas.security_event import AuditEvent
from storeguard.services.audit_log import REDACTED, AuditLog, build_event, redact
from tests.conftest import security_events

_IP = "203.0.113.7"


class _FakeSession:
    """Just enough of AsyncSession for SecurityEventRepository.create."""

    def __init__(self, *, fail: bool = False) -> None:
        self.added: list[SecurityEvent] = []
        self.committed = False
        self.fail = fail

    def add(self, row: SecurityEvent) -> None:
        self.added.append(row)

    async def flush(self) -> None:
        if self.fail:
            raise OperationalError("INSERT INTO security_events", {}, Exception("down"))

    async def refresh(self, _row: SecurityEvent) -> None:
        return None

    async def commit(self) -> None:
        self.committed = True

    async def __aenter__(self) -> "_FakeSession":
        return self

    async def __aexit__(self, *_exc: object) -> bool:
        return False


def _fake_log(*, fail: bool = False) -> tuple[AuditLog, _FakeSession]:
    session = _FakeSession(fail=fail)
    return AuditLog(session_factory=lambda: session), session


def _event(**overrides: object) -> dict[str, object]:
    fields: dict[str, object] = {
        "action": "LOGIN_FAILED",
        "ip_address": _IP,
        "severity": "LOW",
    }
    fields.update(overrides)
    return fields


# =============================================================================
# Validation
# =============================================================================


class TestBuildEvent:
    """Malformed events are refused before any write."""

    def test_mapping_is_validated(self):
        event = build_event(_event())

        assert event.action is SecurityAction.LOGIN_FAILED
        assert event.severity is Severity.LOW
        assert event.blocked is False

    def test_unknown_action(self):
        with pytest.raises(ValidationError) as exc_info:
            build_event(_event(action="LOGIN_MAYBE"))

        assert exc_info.value.details[0]["loc"] == ["action"]

    def test_unknown_severity(self):
        with pytest.raises(ValidationError):
            build_event(_event(severity="CATASTROPHIC"))

    def test_missing_ip_address(self):
        fields = _event()
        del fields["ip_address"]

        with pytest.raises(ValidationError):
            build_event(fields)

    def test_unexpected_field(self):
        with pytest.raises(ValidationError):
            build_event(_event(password="hunter2"))

    def test_event_instance_passes_through(self):
        event = AuditEvent(
            action=SecurityAction.API_ACCESS, ip_address=_IP, severity=Severity.LOW
        )
        assert build_event(event) is event

    async def test_record_writes_nothing_for_invalid_event(self):
        log, session = _fake_log()

        with pytest.raises(ValidationError):
            await log.record(_event(action="NOPE"))

        assert session.added == []


# =============================================================================
# Redaction
# =============================================================================


class TestRedact:
    """Sensitive detail keys are masked before storage."""

    def test_masks_sensitive_keys(self):
        safe = redact(
            {
                "password": "hunter2",
                "reset_token": "abc",
                "Authorization": "Bearer x",
                "route": "/login",
            }
        )

        assert safe == {
            "password": REDACTED,
            "reset_token": REDACTED,
            "Authorization": REDACTED,
            "route": "/login",
        }

    def test_masks_nested_keys(self):
        safe = redact({"request": {"new_password": "x", "email": "a@b.c"}})

        assert safe == {"request": {"new_password": REDACTED, "email": "a@b.c"}}

    def test_input_is_not_mutated(self):
        details = {"password_hash": "$2b$..."}
        redact(details)
        assert details == {"password_hash": "$2b$..."}


# =============================================================================
# Recording
# =============================================================================


class TestRecord:
    """record() persists in its own session and never raises on store errors."""

    async def test_stores_event(self):
        log, session = _fake_log()
        user_id = uuid.uuid4()

        stored = await log.record(
            _event(user_id=str(user_id), blocked=True, details={"route": "/login"})
        )

        assert stored is True
        assert session.committed is True
        row = session.added[0]
        assert row.action == "LOGIN_FAILED"
        assert row.severity == "LOW"
        assert row.user_id == user_id
        assert row.blocked is True
        assert row.details == {"route": "/login"}

    async def test_stores_redacted_details(self):
        log, session = _fake_log()

        await log.record(_event(details={"token": "0" * 64}))

        assert session.added[0].details == {"token": REDACTED}

    async def test_store_failure_returns_false(self):
        log, session = _fake_log(fail=True)

        stored = await log.record(_event())

        assert stored is False
        assert session.committed is False


class TestEmit:
    """emit() defers writes unless the event blocked at high severity."""

    async def test_low_severity_is_deferred(self):
        log, session = _fake_log()
        tasks = BackgroundTasks()

        await log.emit(_event(), tasks)

        assert session.added == []
        assert len(tasks.tasks) == 1

    async def test_blocked_high_severity_is_written_inline(self):
        log, session = _fake_log()
        tasks = BackgroundTasks()

        await log.emit(
            _event(action="ACCOUNT_LOCKED", severity="HIGH", blocked=True), tasks
        )

        assert len(session.added) == 1
        assert tasks.tasks == []

    async def test_unblocked_high_severity_is_deferred(self):
        log, session = _fake_log()
        tasks = BackgroundTasks()

        await log.emit(_event(severity="HIGH"), tasks)

        assert session.added == []
        assert len(tasks.tasks) == 1

    async def test_without_task_queue_writes_inline(self):
        log, session = _fake_log()

        await log.emit(_event())

        assert len(session.added) == 1

    async def test_invalid_event_raises_even_when_deferred(self):
        log, _session = _fake_log()

        with pytest.raises(ValidationError):
            await log.emit(_event(severity="NOPE"), BackgroundTasks())


# =============================================================================
# Persistence (requires PostgreSQL)
# =============================================================================


class TestAppendOnly:
    """Stored events can be read but never changed or removed."""

    async def test_record_persists_row(self, session_factory, db_session):
        log = AuditLog(session_factory=session_factory)
        user_id = uuid.uuid4()

        await log.record(
            _event(action="PASSWORD_CHANGE", severity="MEDIUM", user_id=str(user_id))
        )

        events = await security_events(db_session, user_id=user_id)
        assert len(events) == 1
        assert events[0].action == "PASSWORD_CHANGE"
        assert events[0].created_at is not None

    async def test_update_is_refused(self, session_factory, db_session):
        await AuditLog(session_factory=session_factory).record(_event())
        (event,) = await security_events(db_session)

        event.blocked = True
        with pytest.raises(AppendOnlyViolation):
            await db_session.flush()

    async def test_delete_is_refused(self, session_factory, db_session):
        await AuditLog(session_factory=session_factory).record(_event())
        (event,) = await security_events(db_session)

        await db_session.delete(event)
        with pytest.raises(AppendOnlyViolation):
            await db_session.flush()
