"""Pydantic request/response schemas for crawl submission and admin review."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class CrawlSubmission(BaseModel):
    """Ad-hoc crawl request.

    URL scheme, schema type and submitter are validated by the review
    pipeline so that failures use the 400 error envelope.
    """

    url: str = ""
    schema_type: str = ""
    custom_schema: Optional[dict[str, Any]] = None
    extracted_by_user: str = ""
    admin_notes: Optional[str] = None


class DebugExtractRequest(BaseModel):
    url: str = ""
    schema_type: str = "events"
    custom_schema: Optional[dict[str, Any]] = None


class ApproveEventRequest(BaseModel):
    reviewed_by: str = "admin"
    admin_notes: Optional[str] = None


class RejectEventRequest(BaseModel):
    reviewed_by: str = "admin"
    rejection_reason: Optional[str] = None


class EditEventRequest(BaseModel):
    raw_data: dict[str, Any]
    edited_by: str = "admin"
    admin_notes: Optional[str] = None


class AdminEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    source_url: str
    schema_type: str
    raw_data: dict[str, Any]
    converted_data: Optional[dict[str, Any]]
    conversion_issues: list
    status: str
    extracted_at: datetime
    extracted_by_user: str
    admin_notes: Optional[str]
    reviewed_at: Optional[datetime]
    reviewed_by: Optional[str]
    activity_id: Optional[str]
    revisions: list
