"""SQLAlchemy base classes and common mixins."""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class CreatedAtMixin:
    """Mixin that adds a database-set created_at column.

    Used alone by append-style tables (tokens, security events, payment
    logs) whose rows are never edited in place.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class TimestampMixin(CreatedAtMixin):
    """Mixin that adds created_at and updated_at columns.

    Attributes:
        created_at: Timestamp when the record was created. Set automatically
            by the database on insert.
        updated_at: Timestamp when the record was last modified. Updated
            automatically by the database on each update.
    """

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
