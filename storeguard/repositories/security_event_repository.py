"""Repository for SecurityEvent rows.

Insert-only. There are no update or delete methods, and the
model's mapper hooks refuse either operation if attempted through the ORM.
"""

import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.models.security_event import SecurityEvent


class SecurityEventRepository:
    """Stateless repository for SecurityEvent table operations."""

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        action: str,
        ip_address: str,
        severity: str,
        details: dict[str, Any],
        blocked: bool,
        user_id: uuid.UUID | None = None,
        user_agent: str | None = None,
    ) -> SecurityEvent:
        """Append one security event.

        Returns:
            Created SecurityEvent with database-generated fields populated.
        """
        row = SecurityEvent(
            user_id=user_id,
            action=action,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=severity,
            details=details,
            blocked=blocked,
        )
        db.add(row)
        await db.flush()
        await db.refresh(row)
        return row
