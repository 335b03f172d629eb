"""Task executor: runs due scheduler tasks through the execution engine.

One ``run_due`` call is one stateless invocation (the Celery beat tick):

1. Load due tasks, resolve each task's source and config and build a
   :class:`SourceSpec`.  Tasks whose source is missing, inactive or
   unconfigured are failed with an explanatory ``last_error``.
2. Move runnable tasks ``scheduled -> queued -> in_progress`` and open an
   execution record for each.
3. Run the batch.
4. Finalise every execution and settle its task: ``completed``, ``failed``,
   or back to ``scheduled`` for a retryable failure within the retry budget.
5. Hand each source's new unique activities to the review pipeline, one
   pending admin event per activity.  Activities are only ever published by
   approval.
6. Adapt the source's reliability and interval and schedule its next
   incremental task.

Every write is per entity.  A task whose settlement fails is marked
``failed`` with the error and its execution closed; the others carry on.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from activity_harvester.config.settings import Settings
from activity_harvester.core import keys
from activity_harvester.core.exceptions import HarvesterError
from activity_harvester.core.models import ScrapingExecution, ScrapingTask, Source, SourceConfig
from activity_harvester.core.models.base import utcnow
from activity_harvester.core.models.operations import PRIORITY_RANK
from activity_harvester.core.repositories.base import (
    ActivityRepository,
    ExecutionRepository,
    SourceRepository,
    TaskRepository,
)
from activity_harvester.core.schemas.activity import ActivityPayload
from activity_harvester.engine.runner import (
    BatchSummary,
    ExecutionEngine,
    SourceResult,
    SourceSpec,
)
from activity_harvester.review.pipeline import AdminReviewPipeline
from activity_harvester.scheduler.scheduler import TaskScheduler, transition_task

logger = structlog.get_logger(__name__)


@dataclass
class _Prepared:
    task: ScrapingTask
    source: Source
    config: SourceConfig
    execution: ScrapingExecution
    spec: SourceSpec
    finalized: bool = False


class TaskExecutor:
    """Bridges scheduler tasks and the execution engine.

    Args:
        scheduler: Task scheduler (due tasks, adaptation, next task).
        sources: Source Management repository.
        tasks: Task repository.
        executions: Execution repository.
        activities: Published activity repository, read for dedup keys.
        engine: Execution engine.
        pipeline: Review pipeline receiving engine output.
        settings: Application settings.
        clock: Current-time source; injectable for tests.
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        sources: SourceRepository,
        tasks: TaskRepository,
        executions: ExecutionRepository,
        activities: ActivityRepository,
        engine: ExecutionEngine,
        pipeline: AdminReviewPipeline,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._scheduler = scheduler
        self._sources = sources
        self._tasks = tasks
        self._executions = executions
        self._activities = activities
        self._engine = engine
        self._pipeline = pipeline
        self._settings = settings
        self._clock = clock

    async def run_due(self, now: Optional[datetime] = None, limit: int = 20) -> dict[str, Any]:
        """Run every task due at *now* (at most *limit*) and settle it.

        Returns:
            Counters for the invocation plus the batch summary.
        """
        now = now or self._clock()
        run_id = uuid.uuid4().hex[:12]
        counts = {
            "tasks_due": 0,
            "tasks_skipped": 0,
            "completed": 0,
            "failed": 0,
            "retried": 0,
            "events_created": 0,
        }

        due = await self._scheduler.next_runnable(now, limit)
        counts["tasks_due"] = len(due)
        prepared: list[_Prepared] = []
        for task in due:
            try:
                item = await self._prepare(task, run_id, now)
            except HarvesterError as exc:
                logger.error("task_prepare_failed", task_id=str(task.id), error=str(exc))
                continue
            if item is None:
                counts["tasks_skipped"] += 1
            else:
                prepared.append(item)

        if not prepared:
            logger.info("no_runnable_tasks", run_id=run_id, **counts)
            return {"run_id": run_id, **counts, "summary": None}

        summary = await self._engine.run_batch([p.spec for p in prepared], run_id=run_id)
        fresh = await self._fresh_by_result(summary)
        summary.new_activities = sum(len(items) for items in fresh)

        for item, result, activities in zip(prepared, summary.source_results, fresh):
            try:
                outcome = await self._settle(item, result, activities, run_id)
            except HarvesterError as exc:
                logger.error(
                    "task_settle_failed",
                    task_id=str(item.task.id),
                    source_id=item.source.id,
                    error=str(exc),
                )
                await self._abandon(item, exc)
                counts["failed"] += 1
                continue
            counts[outcome] += 1
            if outcome == "completed":
                counts["events_created"] += len(activities)

        logger.info("due_tasks_run", run_id=run_id, **counts)
        return {"run_id": run_id, **counts, "summary": summary.as_dict()}

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    async def _prepare(
        self, task: ScrapingTask, run_id: str, now: datetime
    ) -> Optional[_Prepared]:
        source = await self._sources.get(task.source_id)
        config = await self._sources.get_config(task.source_id) if source else None
        if source is None:
            reason = f"Source '{task.source_id}' no longer exists"
        elif source.status != "active":
            reason = f"Source '{task.source_id}' is not active (status: {source.status})"
        elif config is None:
            reason = f"Source '{task.source_id}' has no scraping configuration"
        else:
            reason = None
        if reason is not None:
            transition_task(task, "in_progress", now)
            transition_task(task, "failed", now, error=reason)
            await self._tasks.update(task)
            logger.warning("task_skipped", task_id=str(task.id), reason=reason)
            return None

        transition_task(task, "queued", now)
        await self._tasks.update(task)
        transition_task(task, "in_progress", now)
        await self._tasks.update(task)

        execution_id = uuid.uuid4()
        execution = await self._executions.create(
            ScrapingExecution(
                id=execution_id,
                pk=keys.execution_pk(str(execution_id)),
                task_id=task.id,
                source_id=source.id,
                run_id=run_id,
                status="running",
                started_at=now,
                items_extracted=0,
                items_processed=0,
                items_stored=0,
                attempts=0,
                tokens_used=0,
                cost=0.0,
                expires_at=keys.expiry(now, self._settings.execution_retention_days),
                created_at=now,
            )
        )
        targets = list(task.target_urls or config.target_urls or [])
        spec = SourceSpec(
            source_id=source.id,
            name=source.source_name,
            url=targets[0] if targets else config.base_url,
            domain=source.domain,
            priority=PRIORITY_RANK.get(task.priority, 1),
            timeout_seconds=float(self._settings.default_source_timeout_seconds),
            retry_count=self._settings.default_source_retry_count,
            task_id=task.id,
            execution_id=execution_id,
        )
        return _Prepared(task, source, config, execution, spec)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _fresh_by_result(self, summary: BatchSummary) -> list[list[ActivityPayload]]:
        """Each result's activities that are unique in the batch and unpublished.

        Keys are the ones the activities would be published under, so a
        location-less activity is matched on its source domain and dates are
        compared in normalised form.  The first occurrence of a key wins, in
        result order.
        """
        keyed = [
            [(self._pipeline.publish_key(r.url, a), a) for a in r.activities]
            for r in summary.source_results
        ]
        candidate_keys = {key for pairs in keyed for key, _ in pairs}
        published = (
            await self._activities.existing_dedup_keys(candidate_keys) if candidate_keys else set()
        )
        seen = set(published)
        fresh: list[list[ActivityPayload]] = []
        for pairs in keyed:
            kept: list[ActivityPayload] = []
            for key, activity in pairs:
                if key in seen:
                    continue
                seen.add(key)
                kept.append(activity)
            fresh.append(kept)
        return fresh

    async def _settle(
        self,
        item: _Prepared,
        result: SourceResult,
        activities: list[ActivityPayload],
        run_id: str,
    ) -> str:
        now = self._clock()
        task = item.task

        await self._executions.finalize(
            item.execution.id,
            status="completed" if result.success else "failed",
            completed_at=now,
            duration_ms=result.duration_ms,
            items_extracted=result.activities_found + result.invalid_candidates,
            items_processed=result.activities_found,
            items_stored=len(activities),
            attempts=result.attempts,
            content_hash=result.content_hash,
            quality_score=result.quality_score if result.success else None,
            tokens_used=result.tokens_used,
            cost=result.cost,
            error_message=result.error,
        )
        item.finalized = True

        if result.success:
            if activities:
                await self._pipeline.ingest_engine_output(item.spec.url, activities, run_id)
            transition_task(task, "completed", now)
            await self._tasks.update(task)
            outcome = "completed"
        elif result.retryable and task.retry_count < task.max_retries:
            if await self._tasks.find_pending(task.source_id, task.task_type) is not None:
                transition_task(
                    task, "failed", now, error=f"{result.error} (superseded by a pending task)"
                )
                await self._tasks.update(task)
                outcome = "failed"
            else:
                transition_task(task, "scheduled", now, error=result.error)
                delay = self._settings.retry_backoff_seconds * task.retry_count
                task.scheduled_time = now + timedelta(seconds=delay)
                task.next_run_key = keys.next_run_key(task.scheduled_time)
                await self._tasks.update(task)
                logger.info(
                    "task_retry_scheduled",
                    task_id=str(task.id),
                    retry_count=task.retry_count,
                    scheduled_time=task.scheduled_time.isoformat(),
                )
                return "retried"
        else:
            transition_task(task, "failed", now, error=result.error)
            await self._tasks.update(task)
            outcome = "failed"

        recent = await self._executions.recent_for_source(item.source.id)
        await self._scheduler.adapt_frequency(item.config, recent)
        await self._scheduler.schedule(item.config, "incremental", item.source.priority)
        logger.info(
            "task_settled",
            task_id=str(task.id),
            source_id=item.source.id,
            status=task.status,
            activities_found=result.activities_found,
            new_activities=len(activities),
        )
        return outcome

    async def _abandon(self, item: _Prepared, exc: HarvesterError) -> None:
        """Leave a task whose settlement raised in a terminal state.

        An ``in_progress`` task is failed with the error.  A task already moved
        in memory (completed, or rescheduled for retry) is written as is.  The
        execution is closed as failed unless it was finalised before the error.
        """
        now = self._clock()
        task = item.task
        error = f"Settlement failed: {exc}"
        try:
            if task.status == "in_progress":
                transition_task(task, "failed", now, error=error)
            await self._tasks.update(task)
        except HarvesterError as update_exc:
            logger.error("task_abandon_failed", task_id=str(task.id), error=str(update_exc))
        if item.finalized:
            return
        try:
            await self._executions.finalize(
                item.execution.id,
                status="failed",
                completed_at=now,
                error_message=error,
            )
            item.finalized = True
        except HarvesterError as finalize_exc:
            logger.error(
                "execution_abandon_failed",
                execution_id=str(item.execution.id),
                error=str(finalize_exc),
            )
