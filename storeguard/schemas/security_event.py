"""Audit event schema."""

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from storeguard.models.security_event import SecurityAction, Severity


class AuditEvent(BaseModel):
    """A security event as submitted to the audit log.

    Attributes:
        action: What happened.
        ip_address: Client address.
        severity: How serious it is.
        user_id: Identity involved, if known.
        details: Free-form context. Sensitive keys are redacted on write.
        blocked: True when the request was refused.
        user_agent: Client User-Agent, if sent.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    action: SecurityAction
    ip_address: str = Field(min_length=1, max_length=64)
    severity: Severity
    user_id: uuid.UUID | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    blocked: bool = False
    user_agent: str | None = Field(default=None, max_length=512)
