"""ORM model for published activities (the Business Entities partition).

Rows are written only by the admin review pipeline on approval.  The nested
parts of an activity (schedule, location, pricing, ...) are stored as JSONB
documents shaped like ``core.schemas.activity.ActivityPayload``; the columns
the public read interface filters on are denormalised alongside them.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from activity_harvester.core.models.base import Base, TimestampMixin


class Activity(TimestampMixin, Base):
    """A published, user-facing activity.

    Attributes:
        id: ``act_`` plus 16 hex chars derived from title, date and location.
        entity_type: Entity kind, ``"activity"`` for everything published here.
        pk: ``{ENTITY_TYPE}#{id}``.
        dedup_key: ``lower(title)|lower(location name)|start_date``; unique.
        location_date_key: ``LOCATION#{city}#DATE#{start_date}``.
        category_age_key: ``CATEGORY#{category}#AGE#{age_category}``.
        venue_key: ``VENUE#{venue}``.
        provider_key: ``PROVIDER#{provider}``.
        start_date: ``schedule.start_date`` (YYYY-MM-DD), or None.
        approved_from_event_id: Admin event the activity was approved from.
    """

    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(sa.String(40), primary_key=True)
    entity_type: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text("'activity'"),
    )
    pk: Mapped[str] = mapped_column(sa.String(64), nullable=False)

    title: Mapped[str] = mapped_column(sa.Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    activity_type: Mapped[str] = mapped_column(sa.String(30), nullable=False)
    category: Mapped[str] = mapped_column(sa.String(60), nullable=False)
    subcategory: Mapped[Optional[str]] = mapped_column(sa.String(60), nullable=True)
    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text("'active'"),
    )

    age_groups: Mapped[list] = mapped_column(JSONB, nullable=False)
    schedule: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    location: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    pricing: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    registration: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    provider: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    source: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    images: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )
    tags: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )
    detail_url: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    dedup_key: Mapped[str] = mapped_column(sa.Text, nullable=False)
    start_date: Mapped[Optional[str]] = mapped_column(sa.String(10), nullable=True)
    location_date_key: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    category_age_key: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    venue_key: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    provider_key: Mapped[str] = mapped_column(sa.String(200), nullable=False)

    approved_from_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(nullable=True)

    __table_args__ = (
        sa.Index("uq_activities_dedup_key", "dedup_key", unique=True),
        sa.Index("idx_activities_location_date_key", "location_date_key"),
        sa.Index("idx_activities_category_age_key", "category_age_key"),
        sa.Index("idx_activities_venue_key", "venue_key"),
        sa.Index("idx_activities_provider_key", "provider_key"),
        sa.Index("idx_activities_category_start", "category", "start_date"),
        sa.Index("idx_activities_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<Activity id={self.id} title={self.title!r}>"
