"""Async service wiring for the Celery tasks.

The synchronous task bodies in ``workers/tasks.py`` call these coroutines via
``asyncio.run()``.  Each helper opens its own ``AsyncSessionLocal`` so that
every invocation runs on a fresh event loop with no pre-existing session, and
builds the services it needs on top of that session.
"""

from __future__ import annotations

from typing import Any

from activity_harvester.config.settings import get_settings
from activity_harvester.core.database import AsyncSessionLocal
from activity_harvester.core.repositories import (
    SqlActivityRepository,
    SqlAdminEventRepository,
    SqlExecutionRepository,
    SqlSourceRepository,
    SqlTaskRepository,
)
from activity_harvester.core.retention_service import RetentionService
from activity_harvester.engine.executor import TaskExecutor
from activity_harvester.engine.extraction_client import ExtractionClient
from activity_harvester.engine.runner import ExecutionEngine
from activity_harvester.review.pipeline import AdminReviewPipeline
from activity_harvester.scheduler.scheduler import TaskScheduler
from activity_harvester.sources.analyzer import SourceAnalyzer
from activity_harvester.sources.registry import SourceRegistry

_retention_service = RetentionService()


async def analyze_source(source_id: str) -> dict[str, Any]:
    """Run a source analysis and return its headline figures."""
    settings = get_settings()
    async with AsyncSessionLocal() as session:
        sources = SqlSourceRepository(session)
        scheduler = TaskScheduler(sources, SqlTaskRepository(session), settings)
        registry = SourceRegistry(sources, scheduler, settings)
        analyzer = SourceAnalyzer(registry, ExtractionClient.from_settings(settings))
        analysis = await analyzer.analyze(source_id)
        return {
            "source_id": source_id,
            "overall_score": analysis.overall_score,
            "recommendation": analysis.recommendation,
            "issues": list(analysis.issues),
        }


async def run_due_tasks(limit: int) -> dict[str, Any]:
    """Run every due scraping task through the execution engine."""
    settings = get_settings()
    client = ExtractionClient.from_settings(settings)
    async with AsyncSessionLocal() as session:
        sources = SqlSourceRepository(session)
        tasks = SqlTaskRepository(session)
        activities = SqlActivityRepository(session)
        scheduler = TaskScheduler(sources, tasks, settings)
        pipeline = AdminReviewPipeline(
            SqlAdminEventRepository(session),
            activities,
            sources,
            client,
            settings,
        )
        executor = TaskExecutor(
            scheduler,
            sources,
            tasks,
            SqlExecutionRepository(session),
            activities,
            ExecutionEngine(client, settings),
            pipeline,
            settings,
        )
        return await executor.run_due(limit=limit)


async def schedule_active_sources() -> dict[str, int]:
    """Ensure every active source has a pending incremental task."""
    settings = get_settings()
    async with AsyncSessionLocal() as session:
        scheduler = TaskScheduler(
            SqlSourceRepository(session), SqlTaskRepository(session), settings
        )
        return await scheduler.schedule_active_sources()


async def purge_expired_records() -> dict[str, int]:
    """Delete scraping tasks and executions past their retention horizon."""
    async with AsyncSessionLocal() as session:
        return await _retention_service.purge_expired(session)
