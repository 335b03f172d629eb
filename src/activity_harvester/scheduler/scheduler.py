"""Task scheduler.

Creates scraping tasks, selects due tasks for the execution engine and keeps
each source's adaptive interval up to date.

Task status graph (enforced by :func:`transition_task`)::

    scheduled   -> queued | in_progress
    queued      -> in_progress | scheduled
    in_progress -> completed | failed | scheduled (retry, retry_count + 1)
    completed, failed: terminal

Scheduling is idempotent per (source, task type): while a task for the pair
is ``scheduled`` or ``queued`` a second request reuses it.  The store backs
this with a partial unique index so concurrent schedulers cannot both insert.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

import structlog

from activity_harvester.config.settings import Settings
from activity_harvester.core import keys
from activity_harvester.core.exceptions import ConflictError, NotFoundError
from activity_harvester.core.models import ScrapingTask, SourceConfig
from activity_harvester.core.models.base import utcnow
from activity_harvester.core.models.operations import PRIORITY_RANK
from activity_harvester.core.repositories.base import SourceRepository, TaskRepository
from activity_harvester.scheduler.frequency import (
    FrequencyDecision,
    base_interval_hours,
    compute_interval,
)

logger = structlog.get_logger(__name__)

TASK_TYPES: tuple[str, ...] = ("full_scrape", "incremental", "validation")

TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "scheduled": frozenset({"queued", "in_progress"}),
    "queued": frozenset({"in_progress", "scheduled"}),
    "in_progress": frozenset({"completed", "failed", "scheduled"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

DEFAULT_TASK_TIMEOUT_SECONDS = 300
DEFAULT_ESTIMATED_DURATION_SECONDS = 120


def transition_task(
    task: ScrapingTask,
    new_status: str,
    now: Optional[datetime] = None,
    error: Optional[str] = None,
) -> ScrapingTask:
    """Move *task* to *new_status* in place.

    ``in_progress -> scheduled`` is a retry: ``retry_count`` is incremented.
    Entering ``in_progress`` stamps ``started_at``; entering a terminal
    status stamps ``completed_at``.

    Raises:
        ConflictError: If the transition is not in :data:`TASK_TRANSITIONS`.
    """
    allowed = TASK_TRANSITIONS.get(task.status, frozenset())
    if new_status not in allowed:
        raise ConflictError(
            f"Task '{task.id}' cannot move from {task.status} to {new_status}",
            entity="scraping_task",
            entity_id=str(task.id),
            current_status=task.status,
        )
    now = now or utcnow()
    if task.status == "in_progress" and new_status == "scheduled":
        task.retry_count += 1
    if new_status == "in_progress":
        task.started_at = now
    if new_status in ("completed", "failed"):
        task.completed_at = now
    if error is not None:
        task.last_error = error
    task.status = new_status
    task.updated_at = now
    return task


class TaskScheduler:
    """Creates and prioritises scraping tasks.

    Args:
        sources: Source Management repository.
        tasks: Task repository.
        settings: Application settings (delays, retry budgets, TTLs, bounds).
        clock: Current-time source; injectable for tests.
    """

    def __init__(
        self,
        sources: SourceRepository,
        tasks: TaskRepository,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sources = sources
        self._tasks = tasks
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Task creation
    # ------------------------------------------------------------------

    async def schedule(
        self,
        config: SourceConfig,
        task_type: str = "incremental",
        priority: str = "medium",
        *,
        immediate: bool = False,
        manual: bool = False,
        requested_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> tuple[ScrapingTask, bool]:
        """Create a task for a configured source, or reuse the pending one.

        Args:
            config: The source's active config.
            task_type: ``full_scrape``, ``incremental`` or ``validation``.
            priority: ``high``, ``medium`` or ``low``.
            immediate: Schedule after the initial delay (activation).
            manual: Manual trigger semantics: short delay, reduced retry
                budget, shorter retention and ``manually_requested`` set.
            requested_by: Who asked for a manual task.
            notes: Free text recorded on the task.

        Returns:
            ``(task, created)``.
        """
        now = self._clock()
        s = self._settings
        if manual:
            scheduled_time = now + timedelta(seconds=s.manual_task_delay_seconds)
        elif immediate:
            scheduled_time = now + timedelta(seconds=s.initial_task_delay_seconds)
        else:
            scheduled_time = now + timedelta(hours=self._interval_hours(config))

        task_id = uuid.uuid4()
        retention = s.manual_task_retention_days if manual else s.task_retention_days
        task = ScrapingTask(
            id=task_id,
            pk=keys.task_pk(str(task_id)),
            sort_key=keys.task_sort_key(priority, config.source_id, str(task_id)),
            source_id=config.source_id,
            source_name=config.source_name,
            task_type=task_type,
            priority=priority,
            priority_rank=PRIORITY_RANK[priority],
            scheduled_time=scheduled_time,
            status="scheduled",
            retry_count=0,
            max_retries=s.manual_task_max_retries if manual else s.task_max_retries,
            target_urls=list(config.target_urls),
            extraction_rules={"selectors": dict(config.selectors)},
            rate_limits=dict(config.rate_limit),
            timeout_seconds=DEFAULT_TASK_TIMEOUT_SECONDS,
            estimated_duration=DEFAULT_ESTIMATED_DURATION_SECONDS,
            manually_requested=manual,
            requested_by=requested_by,
            notes=notes,
            next_run_key=keys.next_run_key(scheduled_time),
            priority_source_key=keys.task_priority_source_key(priority, config.source_id),
            expires_at=keys.expiry(now, retention),
            created_at=now,
            updated_at=now,
        )

        stored, created = await self._tasks.create_if_absent(task)
        if created:
            logger.info(
                "task_scheduled",
                task_id=str(stored.id),
                source_id=stored.source_id,
                task_type=task_type,
                priority=priority,
                scheduled_time=scheduled_time.isoformat(),
                manual=manual,
            )
            return stored, True

        if manual:
            stored = await self._promote_to_manual(stored, scheduled_time, requested_by, notes)
        logger.info(
            "task_reused",
            task_id=str(stored.id),
            source_id=stored.source_id,
            task_type=task_type,
            status=stored.status,
        )
        return stored, False

    async def _promote_to_manual(
        self,
        task: ScrapingTask,
        scheduled_time: datetime,
        requested_by: Optional[str],
        notes: Optional[str],
    ) -> ScrapingTask:
        if task.status == "scheduled" and task.scheduled_time > scheduled_time:
            task.scheduled_time = scheduled_time
            task.next_run_key = keys.next_run_key(scheduled_time)
        task.manually_requested = True
        task.requested_by = requested_by
        if notes:
            task.notes = notes
        task.max_retries = min(task.max_retries, self._settings.manual_task_max_retries)
        task.updated_at = self._clock()
        return await self._tasks.update(task)

    def _interval_hours(self, config: SourceConfig) -> float:
        adaptive = config.adaptive_frequency or {}
        hours = adaptive.get("current_interval_hours") or base_interval_hours(
            config.scraping_frequency
        )
        return min(
            max(float(hours), self._settings.min_frequency_hours),
            self._settings.max_frequency_hours,
        )

    async def trigger_manual(
        self,
        source_id: str,
        task_type: str = "full_scrape",
        priority: str = "high",
        requested_by: str = "admin",
        notes: Optional[str] = None,
    ) -> dict[str, Any]:
        """Schedule a manually requested scrape for an active source.

        Raises:
            NotFoundError: If the source does not exist.
            ConflictError: If the source is not active or has no config.
        """
        source = await self._sources.get(source_id)
        if source is None:
            raise NotFoundError("source", source_id)
        if source.status != "active":
            raise ConflictError(
                f"Source '{source_id}' is not active (status: {source.status})",
                entity="source",
                entity_id=source_id,
                current_status=source.status,
            )
        config = await self._sources.get_config(source_id)
        if config is None:
            raise ConflictError(
                f"Source '{source_id}' has no scraping configuration",
                entity="source",
                entity_id=source_id,
                current_status=source.status,
            )

        task, created = await self.schedule(
            config,
            task_type,
            priority,
            manual=True,
            requested_by=requested_by,
            notes=notes,
        )
        return {
            "task_id": str(task.id),
            "source_id": source_id,
            "task_type": task.task_type,
            "priority": task.priority,
            "scheduled_for": task.scheduled_time.isoformat(),
            "estimated_completion": (
                task.scheduled_time + timedelta(seconds=task.estimated_duration)
            ).isoformat(),
            "reused_existing": not created,
        }

    async def schedule_active_sources(self) -> dict[str, int]:
        """Ensure every active, configured source has a pending incremental task."""
        created = reused = 0
        for config in await self._sources.list_active_configs():
            source = await self._sources.get(config.source_id)
            priority = source.priority if source is not None else "medium"
            _, was_created = await self.schedule(config, "incremental", priority)
            if was_created:
                created += 1
            else:
                reused += 1
        logger.info("active_sources_scheduled", created=created, reused=reused)
        return {"created": created, "reused": reused}

    # ------------------------------------------------------------------
    # Selection and adaptation
    # ------------------------------------------------------------------

    async def next_runnable(self, before: datetime, limit: int) -> list[ScrapingTask]:
        """Due tasks by priority bucket, then scheduled time, then source id."""
        return await self._tasks.due(before, limit)

    async def adapt_frequency(
        self,
        config: SourceConfig,
        executions: Sequence[Any],
    ) -> FrequencyDecision:
        """Recompute and store the source's adaptive interval and reliability."""
        decision = compute_interval(
            config.adaptive_frequency or {},
            config.scraping_frequency,
            executions,
            self._settings.min_frequency_hours,
            self._settings.max_frequency_hours,
        )
        now = self._clock()
        # Reassign the JSONB document so the ORM sees the change.
        config.adaptive_frequency = {
            **(config.adaptive_frequency or {}),
            "current_interval_hours": decision.interval_hours,
            "content_stability": decision.stability,
            "last_adjustment": decision.adjustment,
            "last_adjusted_at": now.isoformat(),
        }
        config.reliability_score = decision.reliability
        config.last_scraped_at = now
        config.updated_at = now
        await self._sources.update_config(config)
        logger.info(
            "frequency_adapted",
            source_id=config.source_id,
            interval_hours=decision.interval_hours,
            adjustment=decision.adjustment,
            reliability=decision.reliability,
            stability=decision.stability,
        )
        return decision
