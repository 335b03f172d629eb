"""ORM model for the admin review queue.

An ``AdminEvent`` is one raw extraction awaiting human review.  Status moves
``pending -> approved | rejected`` and ``pending -> edited -> approved |
rejected``; approval is one-way and produces exactly one ``Activity``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from activity_harvester.core.models.base import Base, TimestampMixin

#: Statuses in which an event still blocks a new crawl of the same URL.
OPEN_EVENT_STATUSES: tuple[str, ...] = ("pending", "edited", "approved")


class AdminEvent(TimestampMixin, Base):
    """A raw extraction pending review.

    Attributes:
        id: UUID primary key.
        pk: ``EVENT#{id}``.
        sort_key: ``SUBMISSION#{extracted_at}``.
        status_key: ``STATUS#{status}``.
        source_url: URL that was extracted.
        schema_type: Kind of schema used (``events``, ``activities``,
            ``venues`` or ``custom``).
        schema_used: The schema document sent to the extraction collaborator.
        raw_data: Structured payload returned by extraction.
        converted_data: Conversion preview, or None when conversion failed.
        conversion_issues: Problems found by the last conversion.
        revisions: Append-only edit history; each entry holds the replaced
            ``raw_data``, the editor and the edit time.
        activity_id: Published activity id once approved.
    """

    __tablename__ = "admin_events"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )
    pk: Mapped[str] = mapped_column(sa.String(60), nullable=False)
    sort_key: Mapped[str] = mapped_column(sa.String(40), nullable=False)
    status_key: Mapped[str] = mapped_column(sa.String(40), nullable=False)

    source_url: Mapped[str] = mapped_column(sa.Text, nullable=False)
    schema_type: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    schema_used: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    raw_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    converted_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    conversion_issues: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )

    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text("'pending'"),
    )
    extracted_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    extracted_by_user: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    submission_id: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )
    reviewed_by: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    activity_id: Mapped[Optional[str]] = mapped_column(sa.String(40), nullable=True)
    revisions: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )

    __table_args__ = (
        sa.Index("idx_admin_events_status_key", "status_key", "sort_key"),
        sa.Index("idx_admin_events_source_url", "source_url"),
    )

    def __repr__(self) -> str:
        return f"<AdminEvent id={self.id} status={self.status}>"
