"""FastAPI dependency injection providers.

Services are built per request on top of the request's ``AsyncSession``.
The extraction client is app-scoped: it is created on startup and kept on
``app.state.extraction_client``.

Dependency graph::

    get_db ─┬─ get_source_repository ─┬─ get_scheduler ── get_registry ─┐
            ├─ get_task_repository ───┘                                 │
            ├─ get_execution_repository                                 │
            ├─ get_activity_repository ─────────────────── get_pipeline ┘
            └─ get_event_repository ───────────────────────┘
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from activity_harvester.config.settings import Settings, get_settings
from activity_harvester.core.database import get_db
from activity_harvester.core.repositories import (
    SqlActivityRepository,
    SqlAdminEventRepository,
    SqlExecutionRepository,
    SqlSourceRepository,
    SqlTaskRepository,
)
from activity_harvester.core.repositories.base import (
    ActivityRepository,
    AdminEventRepository,
    ExecutionRepository,
    SourceRepository,
    TaskRepository,
)
from activity_harvester.engine.extraction_client import ExtractionClient
from activity_harvester.review.pipeline import AdminReviewPipeline
from activity_harvester.scheduler.scheduler import TaskScheduler
from activity_harvester.sources.registry import SourceRegistry

# ---------------------------------------------------------------------------
# Settings and app-scoped clients
# ---------------------------------------------------------------------------


def get_app_settings() -> Settings:
    return get_settings()


def get_extraction_client(request: Request) -> ExtractionClient:
    """Return the app-scoped extraction client, creating it on first use."""
    client = getattr(request.app.state, "extraction_client", None)
    if client is None:
        client = ExtractionClient.from_settings(get_settings())
        request.app.state.extraction_client = client
    return client


def enqueue_analysis(source_id: str) -> None:
    """Start an analysis run for *source_id* on a Celery worker."""
    from activity_harvester.workers.tasks import analyze_source  # noqa: PLC0415

    analyze_source.delay(source_id)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


def get_source_repository(db: Annotated[AsyncSession, Depends(get_db)]) -> SourceRepository:
    return SqlSourceRepository(db)


def get_task_repository(db: Annotated[AsyncSession, Depends(get_db)]) -> TaskRepository:
    return SqlTaskRepository(db)


def get_execution_repository(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ExecutionRepository:
    return SqlExecutionRepository(db)


def get_activity_repository(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ActivityRepository:
    return SqlActivityRepository(db)


def get_event_repository(db: Annotated[AsyncSession, Depends(get_db)]) -> AdminEventRepository:
    return SqlAdminEventRepository(db)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_scheduler(
    sources: Annotated[SourceRepository, Depends(get_source_repository)],
    tasks: Annotated[TaskRepository, Depends(get_task_repository)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> TaskScheduler:
    return TaskScheduler(sources, tasks, settings)


def get_registry(
    sources: Annotated[SourceRepository, Depends(get_source_repository)],
    tasks: Annotated[TaskRepository, Depends(get_task_repository)],
    executions: Annotated[ExecutionRepository, Depends(get_execution_repository)],
    scheduler: Annotated[TaskScheduler, Depends(get_scheduler)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> SourceRegistry:
    return SourceRegistry(
        sources,
        scheduler,
        settings,
        signal_analysis=enqueue_analysis,
        executions=executions,
        tasks=tasks,
    )


def get_pipeline(
    events: Annotated[AdminEventRepository, Depends(get_event_repository)],
    activities: Annotated[ActivityRepository, Depends(get_activity_repository)],
    sources: Annotated[SourceRepository, Depends(get_source_repository)],
    registry: Annotated[SourceRegistry, Depends(get_registry)],
    client: Annotated[ExtractionClient, Depends(get_extraction_client)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> AdminReviewPipeline:
    return AdminReviewPipeline(
        events,
        activities,
        sources,
        client,
        settings,
        registry=registry,
    )
