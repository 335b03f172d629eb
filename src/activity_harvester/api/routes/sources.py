"""Source lifecycle routes.

Routes (mounted under ``/api``):
    POST   /sources                 - submit a source (201)
    GET    /sources/pending         - sources awaiting analysis or activation
    GET    /sources/active          - active sources
    GET    /sources                 - list by ``status``
    GET    /sources/analytics       - counts per status and success rate
    GET    /sources/{id}            - submission record
    GET    /sources/{id}/details    - submission, analysis, config, tasks
    GET    /sources/{id}/analysis   - analysis record
    POST   /sources/{id}/analyze    - re-trigger analysis
    PUT    /sources/{id}/activate   - activate an analysed source
    PUT    /sources/{id}/reject     - reject a source
    DELETE /sources/{id}            - delete (body ``{confirm_name}``)
    POST   /sources/{id}/trigger    - manual scrape (201)

Domain errors are raised as ``HarvesterError`` subclasses and rendered into
the error envelope by the handlers installed in ``api/main.py``.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse

from activity_harvester.api.dependencies import get_registry, get_scheduler
from activity_harvester.api.envelope import success
from activity_harvester.core.schemas.sources import (
    ActivateRequest,
    DeleteSourceRequest,
    ManualTriggerRequest,
    RejectSourceRequest,
    SourceAnalysisRead,
    SourceConfigRead,
    SourceRead,
    SourceSubmission,
    TaskRead,
)
from activity_harvester.scheduler.scheduler import TaskScheduler
from activity_harvester.sources.registry import SourceRegistry

router = APIRouter()

Registry = Annotated[SourceRegistry, Depends(get_registry)]


def _source(source: Any) -> dict[str, Any]:
    return SourceRead.model_validate(source).model_dump(mode="json")


def _sources(sources: list[Any]) -> list[dict[str, Any]]:
    return [_source(s) for s in sources]


# ---------------------------------------------------------------------------
# Submission and listing
# ---------------------------------------------------------------------------


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_source(submission: SourceSubmission, registry: Registry) -> JSONResponse:
    source = await registry.submit(submission)
    return success(
        {"source_id": source.id, "status": source.status},
        message="Source submitted for analysis",
        status_code=status.HTTP_201_CREATED,
    )


@router.get("/pending")
async def list_pending_sources(
    registry: Registry,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> JSONResponse:
    sources = await registry.list_pending(limit)
    return success({"sources": _sources(sources), "count": len(sources)})


@router.get("/active")
async def list_active_sources(
    registry: Registry,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> JSONResponse:
    sources = await registry.list_by_status("active", limit)
    return success({"sources": _sources(sources), "count": len(sources)})


@router.get("")
async def list_sources(
    registry: Registry,
    status_filter: Annotated[str, Query(alias="status")] = "pending_analysis",
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> JSONResponse:
    sources = await registry.list_by_status(status_filter, limit)
    return success({"sources": _sources(sources), "count": len(sources), "status": status_filter})


@router.get("/analytics")
async def source_analytics(registry: Registry) -> JSONResponse:
    return success(await registry.analytics())


# ---------------------------------------------------------------------------
# Single source
# ---------------------------------------------------------------------------


@router.get("/{source_id}")
async def get_source(source_id: str, registry: Registry) -> JSONResponse:
    return success(_source(await registry.get(source_id)))


@router.get("/{source_id}/details")
async def get_source_details(source_id: str, registry: Registry) -> JSONResponse:
    details = await registry.details(source_id)
    analysis = details["analysis"]
    config = details["config"]
    return success(
        {
            "source": _source(details["source"]),
            "analysis": (
                SourceAnalysisRead.model_validate(analysis).model_dump(mode="json")
                if analysis is not None
                else None
            ),
            "config": (
                SourceConfigRead.model_validate(config).model_dump(mode="json")
                if config is not None
                else None
            ),
            "tasks": [TaskRead.model_validate(t).model_dump(mode="json") for t in details["tasks"]],
            "reliability": details["reliability"],
        }
    )


@router.get("/{source_id}/analysis")
async def get_source_analysis(source_id: str, registry: Registry) -> JSONResponse:
    analysis = await registry.get_analysis(source_id)
    return success(SourceAnalysisRead.model_validate(analysis).model_dump(mode="json"))


@router.post("/{source_id}/analyze")
async def retrigger_analysis(source_id: str, registry: Registry) -> JSONResponse:
    source = await registry.retrigger_analysis(source_id)
    return success({"source_id": source.id, "status": source.status}, message="Analysis re-triggered")


# ---------------------------------------------------------------------------
# Admin decisions
# ---------------------------------------------------------------------------


@router.put("/{source_id}/activate")
async def activate_source(
    source_id: str,
    registry: Registry,
    body: Annotated[ActivateRequest, Body()] = ActivateRequest(),
) -> JSONResponse:
    result = await registry.activate(source_id, body.activated_by, body.admin_notes)
    task = result["task"]
    return success(
        {
            "source_id": source_id,
            "status": result["source"].status,
            "config": SourceConfigRead.model_validate(result["config"]).model_dump(mode="json"),
            "task_id": str(task.id),
            "scheduled_for": task.scheduled_time.isoformat(),
        },
        message="Source activated",
    )


@router.put("/{source_id}/reject")
async def reject_source(
    source_id: str,
    registry: Registry,
    body: Annotated[RejectSourceRequest, Body()] = RejectSourceRequest(),
) -> JSONResponse:
    source = await registry.reject(source_id, body.rejected_by, body.reason)
    return success({"source_id": source.id, "status": source.status}, message="Source rejected")


@router.delete("/{source_id}")
async def delete_source(
    source_id: str,
    body: DeleteSourceRequest,
    registry: Registry,
) -> JSONResponse:
    await registry.delete(source_id, body.confirm_name)
    return success({"source_id": source_id}, message="Source deleted")


@router.post("/{source_id}/trigger", status_code=status.HTTP_201_CREATED)
async def trigger_scrape(
    source_id: str,
    scheduler: Annotated[TaskScheduler, Depends(get_scheduler)],
    body: Annotated[ManualTriggerRequest, Body()] = ManualTriggerRequest(),
) -> JSONResponse:
    data = await scheduler.trigger_manual(
        source_id,
        task_type=body.task_type,
        priority=body.priority,
        requested_by=body.requested_by,
        notes=body.notes,
    )
    message = (
        "Existing pending task promoted to a manual run"
        if data["reused_existing"]
        else "Manual scrape scheduled"
    )
    return success(data, message=message, status_code=status.HTTP_201_CREATED)
