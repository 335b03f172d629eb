"""Initial schema: source management, scraping operations, review and activities.

Creates the Activity Harvester schema in FK-dependency order:

1. sources               - submission records and lifecycle status
2. source_analyses       - analyzer output, one row per source (FK → sources)
3. source_configs        - active scraping config (FK → sources)
4. scraping_tasks        - scheduled work units (FK → sources)
5. scraping_executions   - run records (no FK: tasks may expire first)
6. admin_events          - raw extractions awaiting review
7. activities            - published activities

``scraping_tasks`` carries a partial unique index on ``(source_id, task_type)``
restricted to pending statuses; concurrent schedulers rely on it.

Revision ID: 001
Revises:
Create Date: 2025-05-20
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    ]


def _empty_list() -> sa.TextClause:
    return sa.text("'[]'::jsonb")


# ---------------------------------------------------------------------------
# upgrade
# ---------------------------------------------------------------------------

def upgrade() -> None:
    """Create all tables and indexes."""

    # ------------------------------------------------------------------
    # 1. sources
    # ------------------------------------------------------------------
    op.create_table(
        "sources",
        sa.Column("id", sa.String(120), primary_key=True),
        sa.Column("pk", sa.String(130), nullable=False, unique=True),
        sa.Column("stage", sa.String(20), nullable=False, server_default=sa.text("'SUBMISSION'")),
        sa.Column("source_name", sa.String(255), nullable=False),
        sa.Column("base_url", sa.Text, nullable=False),
        sa.Column("domain", sa.String(255), nullable=False),
        sa.Column("source_type", sa.String(40), nullable=False),
        sa.Column("priority", sa.String(10), nullable=False, server_default=sa.text("'medium'")),
        sa.Column("expected_content", JSONB, nullable=False, server_default=_empty_list()),
        sa.Column("hint_urls", JSONB, nullable=False, server_default=_empty_list()),
        sa.Column("submitted_by", sa.String(255), nullable=False),
        sa.Column("submitted_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default=sa.text("'pending_analysis'")),
        sa.Column("status_key", sa.String(60), nullable=False),
        sa.Column("priority_key", sa.String(150), nullable=False),
        sa.Column("admin_notes", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_sources_status_key", "sources", ["status_key", "priority_key"])
    op.create_index("idx_sources_domain", "sources", ["domain"])
    op.create_index("idx_sources_base_url", "sources", ["base_url"])

    # ------------------------------------------------------------------
    # 2. source_analyses
    # ------------------------------------------------------------------
    op.create_table(
        "source_analyses",
        sa.Column(
            "source_id",
            sa.String(120),
            sa.ForeignKey("sources.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("pk", sa.String(130), nullable=False),
        sa.Column("stage", sa.String(20), nullable=False, server_default=sa.text("'ANALYSIS'")),
        sa.Column("analyzed_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("discovered_patterns", JSONB, nullable=False),
        sa.Column("extraction_test", JSONB, nullable=False),
        sa.Column("recommendations", JSONB, nullable=False),
        sa.Column("overall_score", sa.Float, nullable=False),
        sa.Column("recommendation", sa.Text, nullable=False),
        sa.Column("issues", JSONB, nullable=False, server_default=_empty_list()),
        *_timestamps(),
    )

    # ------------------------------------------------------------------
    # 3. source_configs
    # ------------------------------------------------------------------
    op.create_table(
        "source_configs",
        sa.Column(
            "source_id",
            sa.String(120),
            sa.ForeignKey("sources.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("pk", sa.String(130), nullable=False),
        sa.Column("stage", sa.String(20), nullable=False, server_default=sa.text("'CONFIG'")),
        sa.Column("source_name", sa.String(255), nullable=False),
        sa.Column("base_url", sa.Text, nullable=False),
        sa.Column("source_type", sa.String(40), nullable=False),
        sa.Column("target_urls", JSONB, nullable=False),
        sa.Column("selectors", JSONB, nullable=False),
        sa.Column("rate_limit", JSONB, nullable=False),
        sa.Column("scraping_frequency", sa.String(20), nullable=False),
        sa.Column("user_agent", sa.String(255), nullable=False),
        sa.Column("respect_robots_txt", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("timeout_seconds", sa.Integer, nullable=False, server_default=sa.text("30")),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default=sa.text("3")),
        sa.Column("backoff_multiplier", sa.Float, nullable=False, server_default=sa.text("2.0")),
        sa.Column("reliability_score", sa.Float, nullable=False),
        sa.Column("expected_activity_range", JSONB, nullable=False),
        sa.Column("adaptive_frequency", JSONB, nullable=False),
        sa.Column("activated_by", sa.String(255), nullable=False),
        sa.Column("activated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("admin_notes", sa.Text, nullable=True),
        sa.Column("last_scraped_at", sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
    )

    # ------------------------------------------------------------------
    # 4. scraping_tasks
    # ------------------------------------------------------------------
    op.create_table(
        "scraping_tasks",
        sa.Column("id", sa.UUID(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("pk", sa.String(60), nullable=False),
        sa.Column("sort_key", sa.String(200), nullable=False),
        sa.Column(
            "source_id",
            sa.String(120),
            sa.ForeignKey("sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_name", sa.String(255), nullable=False),
        sa.Column("task_type", sa.String(20), nullable=False),
        sa.Column("priority", sa.String(10), nullable=False),
        sa.Column("priority_rank", sa.SmallInteger, nullable=False),
        sa.Column("scheduled_time", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'scheduled'")),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default=sa.text("3")),
        sa.Column("target_urls", JSONB, nullable=False),
        sa.Column("extraction_rules", JSONB, nullable=False),
        sa.Column("rate_limits", JSONB, nullable=False),
        sa.Column("timeout_seconds", sa.Integer, nullable=False, server_default=sa.text("300")),
        sa.Column("estimated_duration", sa.Integer, nullable=False, server_default=sa.text("120")),
        sa.Column("manually_requested", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("requested_by", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("next_run_key", sa.String(40), nullable=False),
        sa.Column("priority_source_key", sa.String(150), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_scraping_tasks_due", "scraping_tasks", ["status", "scheduled_time"])
    op.create_index("idx_scraping_tasks_next_run_key", "scraping_tasks", ["next_run_key"])
    op.create_index(
        "idx_scraping_tasks_priority_source_key", "scraping_tasks", ["priority_source_key"]
    )
    op.create_index("idx_scraping_tasks_expires_at", "scraping_tasks", ["expires_at"])
    op.create_index(
        "uq_scraping_tasks_pending_source_type",
        "scraping_tasks",
        ["source_id", "task_type"],
        unique=True,
        postgresql_where=sa.text("status IN ('scheduled', 'queued')"),
    )

    # ------------------------------------------------------------------
    # 5. scraping_executions
    # ------------------------------------------------------------------
    op.create_table(
        "scraping_executions",
        sa.Column("id", sa.UUID(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("pk", sa.String(60), nullable=False),
        sa.Column("task_id", sa.UUID(), nullable=False),
        sa.Column("source_id", sa.String(120), nullable=False),
        sa.Column("run_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'running'")),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.Column("items_extracted", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("items_processed", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("items_stored", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("content_hash", sa.String(64), nullable=True),
        sa.Column("quality_score", sa.Float, nullable=True),
        sa.Column("tokens_used", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("cost", sa.Float, nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index(
        "idx_scraping_executions_source_started",
        "scraping_executions",
        ["source_id", "started_at"],
    )
    op.create_index("idx_scraping_executions_task_id", "scraping_executions", ["task_id"])
    op.create_index("idx_scraping_executions_expires_at", "scraping_executions", ["expires_at"])

    # ------------------------------------------------------------------
    # 6. admin_events
    # ------------------------------------------------------------------
    op.create_table(
        "admin_events",
        sa.Column("id", sa.UUID(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("pk", sa.String(60), nullable=False),
        sa.Column("sort_key", sa.String(40), nullable=False),
        sa.Column("status_key", sa.String(40), nullable=False),
        sa.Column("source_url", sa.Text, nullable=False),
        sa.Column("schema_type", sa.String(20), nullable=False),
        sa.Column("schema_used", JSONB, nullable=False),
        sa.Column("raw_data", JSONB, nullable=False),
        sa.Column("converted_data", JSONB, nullable=True),
        sa.Column("conversion_issues", JSONB, nullable=False, server_default=_empty_list()),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("extracted_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("extracted_by_user", sa.String(255), nullable=False),
        sa.Column("submission_id", sa.String(64), nullable=True),
        sa.Column("admin_notes", sa.Text, nullable=True),
        sa.Column("reviewed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(255), nullable=True),
        sa.Column("activity_id", sa.String(40), nullable=True),
        sa.Column("revisions", JSONB, nullable=False, server_default=_empty_list()),
        *_timestamps(),
    )
    op.create_index("idx_admin_events_status_key", "admin_events", ["status_key", "sort_key"])
    op.create_index("idx_admin_events_source_url", "admin_events", ["source_url"])

    # ------------------------------------------------------------------
    # 7. activities
    # ------------------------------------------------------------------
    op.create_table(
        "activities",
        sa.Column("id", sa.String(40), primary_key=True),
        sa.Column("entity_type", sa.String(20), nullable=False, server_default=sa.text("'activity'")),
        sa.Column("pk", sa.String(64), nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("activity_type", sa.String(30), nullable=False),
        sa.Column("category", sa.String(60), nullable=False),
        sa.Column("subcategory", sa.String(60), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'active'")),
        sa.Column("age_groups", JSONB, nullable=False),
        sa.Column("schedule", JSONB, nullable=False),
        sa.Column("location", JSONB, nullable=False),
        sa.Column("pricing", JSONB, nullable=False),
        sa.Column("registration", JSONB, nullable=True),
        sa.Column("provider", JSONB, nullable=False),
        sa.Column("source", JSONB, nullable=False),
        sa.Column("images", JSONB, nullable=False, server_default=_empty_list()),
        sa.Column("tags", JSONB, nullable=False, server_default=_empty_list()),
        sa.Column("detail_url", sa.Text, nullable=True),
        sa.Column("dedup_key", sa.Text, nullable=False),
        sa.Column("start_date", sa.String(10), nullable=True),
        sa.Column("location_date_key", sa.String(200), nullable=False),
        sa.Column("category_age_key", sa.String(200), nullable=False),
        sa.Column("venue_key", sa.String(200), nullable=False),
        sa.Column("provider_key", sa.String(200), nullable=False),
        sa.Column("approved_from_event_id", sa.UUID(), nullable=True),
        *_timestamps(),
    )
    op.create_index("uq_activities_dedup_key", "activities", ["dedup_key"], unique=True)
    op.create_index("idx_activities_location_date_key", "activities", ["location_date_key"])
    op.create_index("idx_activities_category_age_key", "activities", ["category_age_key"])
    op.create_index("idx_activities_venue_key", "activities", ["venue_key"])
    op.create_index("idx_activities_provider_key", "activities", ["provider_key"])
    op.create_index("idx_activities_category_start", "activities", ["category", "start_date"])
    op.create_index("idx_activities_updated_at", "activities", ["updated_at"])


# ---------------------------------------------------------------------------
# downgrade
# ---------------------------------------------------------------------------

def downgrade() -> None:
    """Drop all tables created by this migration in reverse dependency order."""
    op.drop_table("activities")
    op.drop_table("admin_events")
    op.drop_table("scraping_executions")
    op.drop_table("scraping_tasks")
    op.drop_table("source_configs")
    op.drop_table("source_analyses")
    op.drop_table("sources")
