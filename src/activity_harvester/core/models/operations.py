"""ORM models for the Scraping Operations partition.

Both tables carry an ``expires_at`` retention horizon; expired rows are
bulk-deleted by ``core.retention_service``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from activity_harvester.core.models.base import Base, TimestampMixin

#: Task statuses that count as "pending" for idempotent scheduling.
PENDING_TASK_STATUSES: tuple[str, ...] = ("scheduled", "queued")

#: Sort rank of each priority bucket; lower runs first.
PRIORITY_RANK: dict[str, int] = {"high": 0, "medium": 1, "low": 2}


class ScrapingTask(TimestampMixin, Base):
    """One scheduled unit of scraping work for a source.

    Attributes:
        id: UUID primary key.
        pk: ``TASK#{id}``.
        sort_key: ``TASK#{priority}#{source_id}#{id}``.
        source_id: Source the task scrapes.
        task_type: ``full_scrape``, ``incremental`` or ``validation``.
        priority: ``high``, ``medium`` or ``low``.
        priority_rank: Numeric rank of ``priority`` for ordering due tasks.
        scheduled_time: Earliest time the task may run.
        status: ``scheduled``, ``queued``, ``in_progress``, ``completed`` or
            ``failed``.
        retry_count: Retries consumed so far.
        max_retries: Retry budget.
        next_run_key: ``NEXT_RUN#{scheduled_time}`` index key.
        priority_source_key: ``PRIORITY#{priority}#{source_id}`` index key.
        manually_requested: True when created by a manual trigger.
        expires_at: Retention horizon.
    """

    __tablename__ = "scraping_tasks"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )
    pk: Mapped[str] = mapped_column(sa.String(60), nullable=False)
    sort_key: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    source_id: Mapped[str] = mapped_column(
        sa.String(120),
        sa.ForeignKey("sources.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    task_type: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    priority: Mapped[str] = mapped_column(sa.String(10), nullable=False)
    priority_rank: Mapped[int] = mapped_column(sa.SmallInteger, nullable=False)
    scheduled_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text("'scheduled'"),
    )
    retry_count: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    max_retries: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("3"),
    )

    target_urls: Mapped[list] = mapped_column(JSONB, nullable=False)
    extraction_rules: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    rate_limits: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    timeout_seconds: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("300"),
    )
    estimated_duration: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("120"),
    )

    manually_requested: Mapped[bool] = mapped_column(
        sa.Boolean,
        nullable=False,
        server_default=sa.text("false"),
    )
    requested_by: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    next_run_key: Mapped[str] = mapped_column(sa.String(40), nullable=False)
    priority_source_key: Mapped[str] = mapped_column(sa.String(150), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        sa.Index("idx_scraping_tasks_due", "status", "scheduled_time"),
        sa.Index("idx_scraping_tasks_next_run_key", "next_run_key"),
        sa.Index("idx_scraping_tasks_priority_source_key", "priority_source_key"),
        sa.Index("idx_scraping_tasks_expires_at", "expires_at"),
        # At most one pending task per (source, type); concurrent schedulers
        # collide here and fall back to the existing row.
        sa.Index(
            "uq_scraping_tasks_pending_source_type",
            "source_id",
            "task_type",
            unique=True,
            postgresql_where=sa.text("status IN ('scheduled', 'queued')"),
        ),
    )

    def __repr__(self) -> str:
        return f"<ScrapingTask id={self.id} source={self.source_id} status={self.status}>"


class ScrapingExecution(Base):
    """Record of one task run.  Immutable once ``status`` is terminal.

    Attributes:
        id: UUID primary key.
        pk: ``EXECUTION#{id}``.
        task_id: Task that was run (no FK: tasks may expire first).
        source_id: Source that was scraped.
        status: ``running``, ``completed`` or ``failed``.
        items_extracted: Candidate activities returned by extraction.
        items_processed: Candidates that passed validation.
        items_stored: Unique activities handed to review.
        attempts: Extraction attempts made.
        content_hash: Hash of the extracted activity set, used for stability.
        quality_score: Mean quality score (0-100) of the extracted activities.
        expires_at: Retention horizon.
    """

    __tablename__ = "scraping_executions"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )
    pk: Mapped[str] = mapped_column(sa.String(60), nullable=False)
    task_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    source_id: Mapped[str] = mapped_column(sa.String(120), nullable=False)
    run_id: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text("'running'"),
    )
    started_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )
    duration_ms: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    items_extracted: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    items_processed: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    items_stored: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    attempts: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    content_hash: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    quality_score: Mapped[Optional[float]] = mapped_column(sa.Float, nullable=True)
    tokens_used: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    cost: Mapped[float] = mapped_column(
        sa.Float,
        nullable=False,
        server_default=sa.text("0"),
    )
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=sa.text("NOW()"),
    )

    __table_args__ = (
        sa.Index("idx_scraping_executions_source_started", "source_id", "started_at"),
        sa.Index("idx_scraping_executions_task_id", "task_id"),
        sa.Index("idx_scraping_executions_expires_at", "expires_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")
