"""ORM models for the Source Management partition.

A source moves through three lifecycle stages, each stored in its own table
and keyed by ``(source_id, stage)``:

- ``sources``          SUBMISSION stage plus the lifecycle ``status``
- ``source_analyses``  ANALYSIS stage, at most one row per source
- ``source_configs``   CONFIG stage, created only when the source is activated

Secondary-index columns (``status_key``, ``priority_key``) are computed by the
registry from ``core.keys`` on every write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from activity_harvester.core.models.base import Base, TimestampMixin


class Source(TimestampMixin, Base):
    """Submission record and lifecycle status of one content origin.

    Attributes:
        id: Slug-style source identifier, e.g. ``"seattle-childrens-museum-1a2b3c4d"``.
        pk: Primary partition key ``SOURCE#{id}``.
        stage: Always ``"SUBMISSION"``.
        source_name: Display name supplied by the submitter.
        base_url: Root URL of the site.
        domain: Host of ``base_url`` without ``www.``; used for crawl lookups.
        source_type: ``venue``, ``event-organizer``, ``program-provider``,
            ``community-calendar`` or ``auto-discovered``.
        priority: ``high``, ``medium`` or ``low``.
        expected_content: Content tags declared by the submitter.
        hint_urls: Pages the submitter says contain activities.
        submitted_by: Submitter identity.
        status: Lifecycle status.
        status_key: ``STATUS#{status}`` index key.
        priority_key: ``PRIORITY#{priority}#{id}`` index key.
        admin_notes: Free text from the activating or rejecting admin.
    """

    __tablename__ = "sources"

    id: Mapped[str] = mapped_column(sa.String(120), primary_key=True)
    pk: Mapped[str] = mapped_column(sa.String(130), nullable=False, unique=True)
    stage: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text("'SUBMISSION'"),
    )

    source_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    base_url: Mapped[str] = mapped_column(sa.Text, nullable=False)
    domain: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    source_type: Mapped[str] = mapped_column(sa.String(40), nullable=False)
    priority: Mapped[str] = mapped_column(
        sa.String(10),
        nullable=False,
        server_default=sa.text("'medium'"),
    )
    expected_content: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )
    hint_urls: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )
    submitted_by: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
    )

    status: Mapped[str] = mapped_column(
        sa.String(30),
        nullable=False,
        server_default=sa.text("'pending_analysis'"),
    )
    status_key: Mapped[str] = mapped_column(sa.String(60), nullable=False)
    priority_key: Mapped[str] = mapped_column(sa.String(150), nullable=False)
    admin_notes: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    __table_args__ = (
        sa.Index("idx_sources_status_key", "status_key", "priority_key"),
        sa.Index("idx_sources_domain", "domain"),
        sa.Index("idx_sources_base_url", "base_url"),
    )

    def __repr__(self) -> str:
        return f"<Source id={self.id} status={self.status}>"


class SourceAnalysis(TimestampMixin, Base):
    """Automated analysis of a source, produced by the source analyzer.

    The JSONB columns keep the analyzer's nested output as documents:

    - ``discovered_patterns``: ``content_pages``, ``selectors``, ``structured_data``
    - ``extraction_test``: ``success``, ``sample_data``, ``quality``, ``completeness``
    - ``recommendations``: ``target_urls``, ``rate_limit``, ``scraping_frequency``,
      ``content_volatility``, ``preferred_extraction``, ``estimated_activities``
    """

    __tablename__ = "source_analyses"

    source_id: Mapped[str] = mapped_column(
        sa.String(120),
        sa.ForeignKey("sources.id", ondelete="CASCADE"),
        primary_key=True,
    )
    pk: Mapped[str] = mapped_column(sa.String(130), nullable=False)
    stage: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text("'ANALYSIS'"),
    )
    analyzed_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    discovered_patterns: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    extraction_test: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    recommendations: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    overall_score: Mapped[float] = mapped_column(sa.Float, nullable=False)
    recommendation: Mapped[str] = mapped_column(sa.Text, nullable=False)
    issues: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )


class SourceConfig(TimestampMixin, Base):
    """Active scraping configuration of a source.

    Created exactly once, at activation, from the analysis recommendation.
    ``reliability_score`` and ``adaptive_frequency`` are refreshed by the task
    executor after each run.
    """

    __tablename__ = "source_configs"

    source_id: Mapped[str] = mapped_column(
        sa.String(120),
        sa.ForeignKey("sources.id", ondelete="CASCADE"),
        primary_key=True,
    )
    pk: Mapped[str] = mapped_column(sa.String(130), nullable=False)
    stage: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text("'CONFIG'"),
    )
    source_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    base_url: Mapped[str] = mapped_column(sa.Text, nullable=False)
    source_type: Mapped[str] = mapped_column(sa.String(40), nullable=False)
    target_urls: Mapped[list] = mapped_column(JSONB, nullable=False)
    selectors: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    rate_limit: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    scraping_frequency: Mapped[str] = mapped_column(sa.String(20), nullable=False)

    user_agent: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    respect_robots_txt: Mapped[bool] = mapped_column(
        sa.Boolean,
        nullable=False,
        server_default=sa.text("true"),
    )
    timeout_seconds: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("30"),
    )
    max_retries: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("3"),
    )
    backoff_multiplier: Mapped[float] = mapped_column(
        sa.Float,
        nullable=False,
        server_default=sa.text("2.0"),
    )

    reliability_score: Mapped[float] = mapped_column(sa.Float, nullable=False)
    expected_activity_range: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    adaptive_frequency: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    activated_by: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    activated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    admin_notes: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )
