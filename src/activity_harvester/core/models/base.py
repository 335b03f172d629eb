"""SQLAlchemy declarative base and shared mixins for all ORM models.

Provides:
- Base: the DeclarativeBase subclass all models inherit from
- TimestampMixin: created_at / updated_at columns with server-side defaults
- utcnow(): the timestamp source used by services when stamping records
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(tz=timezone.utc)


class Base(DeclarativeBase):
    """Shared declarative base for all Activity Harvester models."""

    type_annotation_map = {
        uuid.UUID: UUID(as_uuid=True),
    }


class TimestampMixin:
    """Adds created_at and updated_at columns.

    Services stamp both columns explicitly so that objects held by the
    in-process repositories carry the same values the database would; the
    server defaults cover rows inserted by hand.
    """

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=sa.text("NOW()"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=sa.text("NOW()"),
        onupdate=utcnow,
    )
