"""Pydantic schemas shared across services and endpoints."""

from storeguard.schemas.security_event import AuditEvent

__all__ = [
    "AuditEvent",
]
