"""Pydantic request/response schemas for sources and scraping tasks.

Submission payloads are deliberately permissive: field-level checks (empty
name, unparseable URL, unknown type) are performed by ``SourceRegistry`` so
that they surface as ``ValidationError`` with a 400 envelope rather than as
a request-schema failure.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SourceSubmission(BaseModel):
    """Founder-submitted source.

    Attributes:
        source_name: Display name of the source.
        base_url: Root URL of the site (http or https).
        source_type: ``venue``, ``event-organizer``, ``program-provider`` or
            ``community-calendar``.
        priority: ``high``, ``medium`` or ``low``; defaults to ``medium``.
        expected_content: Declared content tags, e.g. ``["events", "classes"]``.
        hint_urls: Pages known to list activities.
        submitted_by: Submitter identity.
    """

    source_name: str = ""
    base_url: str = ""
    source_type: str = ""
    priority: Optional[str] = None
    expected_content: List[str] = Field(default_factory=list)
    hint_urls: List[str] = Field(default_factory=list)
    submitted_by: str = "anonymous"


class SourceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source_name: str
    base_url: str
    domain: str
    source_type: str
    priority: str
    expected_content: list
    hint_urls: list
    submitted_by: str
    submitted_at: datetime
    status: str
    admin_notes: Optional[str]
    created_at: datetime
    updated_at: datetime


class SourceAnalysisRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    source_id: str
    analyzed_at: datetime
    discovered_patterns: dict[str, Any]
    extraction_test: dict[str, Any]
    recommendations: dict[str, Any]
    overall_score: float
    recommendation: str
    issues: list


class SourceConfigRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    source_id: str
    source_name: str
    base_url: str
    target_urls: list
    selectors: dict[str, Any]
    rate_limit: dict[str, Any]
    scraping_frequency: str
    user_agent: str
    respect_robots_txt: bool
    timeout_seconds: int
    max_retries: int
    backoff_multiplier: float
    reliability_score: float
    expected_activity_range: dict[str, Any]
    adaptive_frequency: dict[str, Any]
    activated_by: str
    activated_at: datetime
    admin_notes: Optional[str]
    last_scraped_at: Optional[datetime]


class ActivateRequest(BaseModel):
    activated_by: str = "admin"
    admin_notes: Optional[str] = None


class RejectSourceRequest(BaseModel):
    rejected_by: str = "admin"
    reason: Optional[str] = None


class DeleteSourceRequest(BaseModel):
    confirm_name: str


class ManualTriggerRequest(BaseModel):
    task_type: str = Field(default="full_scrape", pattern="^(full_scrape|incremental|validation)$")
    priority: str = Field(default="high", pattern="^(high|medium|low)$")
    requested_by: str = "admin"
    notes: Optional[str] = None


class TaskRead(BaseModel):
    """Scraping task as exposed by the source details endpoint."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    source_id: str
    task_type: str
    priority: str
    scheduled_time: datetime
    status: str
    retry_count: int
    max_retries: int
    manually_requested: bool
    requested_by: Optional[str]
    last_error: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime
