"""Crawl submission and admin review routes.

Routes (mounted under ``/api``):
    POST /crawl/submit          - extract a URL into a pending admin event (201)
    POST /debug/extract         - extraction + conversion preview, nothing stored
    GET  /events/pending        - review queue (pending and edited events)
    GET  /events/approved       - public read interface for published activities
    GET  /events/{id}           - one admin event with a fresh conversion preview
    PUT  /events/{id}/approve   - publish the event's activity
    PUT  /events/{id}/reject    - reject the event
    PUT  /events/{id}/edit      - replace the raw payload
    GET  /schemas               - predefined extraction schemas
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse

from activity_harvester.api.dependencies import get_pipeline
from activity_harvester.api.envelope import success
from activity_harvester.core.schemas.review import (
    AdminEventRead,
    ApproveEventRequest,
    CrawlSubmission,
    DebugExtractRequest,
    EditEventRequest,
    RejectEventRequest,
)
from activity_harvester.review.pipeline import PUBLISHED_CACHE_SECONDS, AdminReviewPipeline

router = APIRouter()

Pipeline = Annotated[AdminReviewPipeline, Depends(get_pipeline)]


@router.post("/crawl/submit", status_code=status.HTTP_201_CREATED)
async def submit_crawl(submission: CrawlSubmission, pipeline: Pipeline) -> JSONResponse:
    data = await pipeline.submit_crawl(submission)
    return success(data, message="Crawl submitted for review", status_code=status.HTTP_201_CREATED)


@router.post("/debug/extract")
async def debug_extract(request: DebugExtractRequest, pipeline: Pipeline) -> JSONResponse:
    return success(await pipeline.debug_extract(request))


# ---------------------------------------------------------------------------
# Admin events
# ---------------------------------------------------------------------------


@router.get("/events/pending")
async def list_pending_events(
    pipeline: Pipeline,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> JSONResponse:
    events = await pipeline.list_pending(limit)
    return success(
        {
            "events": [AdminEventRead.model_validate(e).model_dump(mode="json") for e in events],
            "count": len(events),
        }
    )


@router.get("/events/approved")
async def list_published_activities(
    pipeline: Pipeline,
    category: Optional[str] = None,
    date_from: Optional[str] = None,
    updated_since: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> JSONResponse:
    data = await pipeline.list_published(
        category=category,
        date_from=date_from,
        updated_since=updated_since,
        limit=limit,
        offset=offset,
    )
    response = success(data)
    response.headers["Cache-Control"] = f"public, max-age={PUBLISHED_CACHE_SECONDS}"
    return response


@router.get("/events/{event_id}")
async def get_event(event_id: str, pipeline: Pipeline) -> JSONResponse:
    event = await pipeline.get_event(event_id)
    return success(AdminEventRead.model_validate(event).model_dump(mode="json"))


@router.put("/events/{event_id}/approve")
async def approve_event(
    event_id: str,
    pipeline: Pipeline,
    body: Annotated[ApproveEventRequest, Body()] = ApproveEventRequest(),
) -> JSONResponse:
    data = await pipeline.approve(event_id, body.reviewed_by, body.admin_notes)
    message = (
        "Event approved with warnings" if data.get("warnings") else "Event approved and published"
    )
    return success(data, message=message)


@router.put("/events/{event_id}/reject")
async def reject_event(
    event_id: str,
    pipeline: Pipeline,
    body: Annotated[RejectEventRequest, Body()] = RejectEventRequest(),
) -> JSONResponse:
    data = await pipeline.reject(event_id, body.reviewed_by, body.rejection_reason)
    return success(data, message="Event rejected")


@router.put("/events/{event_id}/edit")
async def edit_event(event_id: str, body: EditEventRequest, pipeline: Pipeline) -> JSONResponse:
    data = await pipeline.edit(event_id, body.raw_data, body.edited_by, body.admin_notes)
    return success(data, message="Event updated")


@router.get("/schemas")
async def list_schemas(pipeline: Pipeline) -> JSONResponse:
    return success({"schemas": pipeline.schemas()})
