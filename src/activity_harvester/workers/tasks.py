"""Celery tasks for source analysis and periodic orchestration.

Tasks:

- ``analyze_source`` runs the automated analysis of a submitted source.
  Enqueued by the registry on submission and on re-trigger.
- ``run_due_tasks`` runs every due scraping task through the execution
  engine and hands new activities to the review pipeline.
- ``schedule_active_sources`` ensures every active source has a pending
  incremental task.
- ``purge_expired_records`` deletes scraping tasks and executions past their
  retention horizon.

All tasks are synchronous Celery tasks that bridge to async DB operations via
``asyncio.run()``.  Async helpers live in ``workers._task_helpers``.

Error handling policy: each task catches all exceptions at the outermost
level, logs them at ERROR level, and does NOT re-raise.  Beat re-runs the
periodic tasks on its next tick, and a failed analysis leaves the source in
``pending_analysis`` where an admin can re-trigger it.

Task names must match the references in ``workers/beat_schedule.py``::

    activity_harvester.workers.tasks.run_due_tasks
    activity_harvester.workers.tasks.schedule_active_sources
    activity_harvester.workers.tasks.purge_expired_records
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

import structlog
from celery.exceptions import SoftTimeLimitExceeded

from activity_harvester.config.settings import get_settings
from activity_harvester.core.logging_config import bind_run_context
from activity_harvester.workers import _task_helpers
from activity_harvester.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)

settings = get_settings()


# ---------------------------------------------------------------------------
# Task 1: analyze_source
# ---------------------------------------------------------------------------


@celery_app.task(name="activity_harvester.workers.tasks.analyze_source", max_retries=0)
def analyze_source(source_id: str) -> dict[str, Any]:
    """Analyse a submitted source and store the recommendation.

    Args:
        source_id: Slug of a source in ``pending_analysis``.

    Returns:
        The analysis headline (``overall_score``, ``recommendation``,
        ``issues``), or ``{"error": ...}`` when the analysis failed.
    """
    bind_run_context("analyze_source", run_id=uuid.uuid4().hex[:12])
    log = logger.bind(source_id=source_id)
    log.info("analyze_source: starting")

    try:
        result = asyncio.run(_task_helpers.analyze_source(source_id))
    except Exception as exc:
        log.error("analyze_source: error", error=str(exc), exc_info=True)
        return {"source_id": source_id, "error": str(exc)}

    log.info(
        "analyze_source: complete",
        overall_score=result["overall_score"],
        issues=len(result["issues"]),
    )
    return result


# ---------------------------------------------------------------------------
# Task 2: run_due_tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    name="activity_harvester.workers.tasks.run_due_tasks",
    max_retries=0,
    soft_time_limit=int(settings.batch_deadline_seconds) + 30,
    time_limit=int(settings.batch_deadline_seconds) + 120,
)
def run_due_tasks() -> dict[str, Any]:
    """Run every due scraping task (at most ``due_task_batch_size``).

    The engine enforces its own batch deadline; the Celery soft limit sits
    just above it.

    Returns:
        The executor's counters and the batch summary, or ``{"error": ...}``.
    """
    bind_run_context("run_due_tasks")
    log = logger.bind(limit=settings.due_task_batch_size)
    log.info("run_due_tasks: starting")

    try:
        result = asyncio.run(_task_helpers.run_due_tasks(settings.due_task_batch_size))
    except SoftTimeLimitExceeded:
        log.error("run_due_tasks: soft time limit exceeded")
        return {"error": "soft time limit exceeded"}
    except Exception as exc:
        log.error("run_due_tasks: error", error=str(exc), exc_info=True)
        return {"error": str(exc)}

    log.info(
        "run_due_tasks: complete",
        run_id=result["run_id"],
        tasks_due=result["tasks_due"],
        completed=result["completed"],
        failed=result["failed"],
        retried=result["retried"],
    )
    return result


# ---------------------------------------------------------------------------
# Task 3: schedule_active_sources
# ---------------------------------------------------------------------------


@celery_app.task(
    name="activity_harvester.workers.tasks.schedule_active_sources", max_retries=0
)
def schedule_active_sources() -> dict[str, Any]:
    """Create or reuse a pending incremental task for every active source."""
    bind_run_context("schedule_active_sources")
    logger.info("schedule_active_sources: starting")

    try:
        counts = asyncio.run(_task_helpers.schedule_active_sources())
    except Exception as exc:
        logger.error("schedule_active_sources: error", error=str(exc), exc_info=True)
        return {"error": str(exc)}

    logger.info("schedule_active_sources: complete", **counts)
    return counts


# ---------------------------------------------------------------------------
# Task 4: purge_expired_records
# ---------------------------------------------------------------------------


@celery_app.task(
    name="activity_harvester.workers.tasks.purge_expired_records", max_retries=0
)
def purge_expired_records() -> dict[str, Any]:
    """Delete scraping tasks and executions whose ``expires_at`` has passed.

    Returns:
        Deleted row counts per partition, or ``{"error": ...}``.
    """
    bind_run_context("purge_expired_records")
    logger.info("purge_expired_records: starting")

    try:
        counts = asyncio.run(_task_helpers.purge_expired_records())
    except Exception as exc:
        logger.error("purge_expired_records: error", error=str(exc), exc_info=True)
        return {"error": str(exc), "scraping_tasks": 0, "scraping_executions": 0}

    logger.info("purge_expired_records: complete", **counts)
    return counts
