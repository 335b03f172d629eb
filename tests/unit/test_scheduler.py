"""Unit tests for scheduler/scheduler.py - task creation, selection and adaptation.

Tests cover:
- schedule(): delays per mode, idempotence per (source, task type)
- trigger_manual(): guards and promotion of an existing pending task
- schedule_active_sources(): one pending incremental task per active source
- next_runnable(): priority bucket, then time, then source id
- transition_task(): allowed moves, retry counting, timestamps
- adapt_frequency(): interval and reliability written back to the config
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from activity_harvester.core.exceptions import ConflictError, NotFoundError
from activity_harvester.scheduler.scheduler import transition_task
from tests.factories import (
    FIXED_NOW,
    ScrapingExecutionFactory,
    ScrapingTaskFactory,
    SourceConfigFactory,
    SourceFactory,
)


async def _active_source(source_repo, **config_overrides):
    source = SourceFactory.build(status="active")
    config = SourceConfigFactory.build(
        source_id=source.id, source_name=source.source_name, **config_overrides
    )
    await source_repo.add(source)
    await source_repo.add_config(config)
    return source, config


# ---------------------------------------------------------------------------
# schedule()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestSchedule:
    async def test_regular_task_runs_after_current_interval(self, scheduler, source_repo) -> None:
        _, config = await _active_source(
            source_repo, adaptive_frequency={"current_interval_hours": 36.0}
        )

        task, created = await scheduler.schedule(config, "incremental", "medium")

        assert created is True
        assert task.scheduled_time == FIXED_NOW + timedelta(hours=36)
        assert task.status == "scheduled"
        assert task.priority_rank == 1
        assert task.next_run_key == "NEXT_RUN#2025-06-04T00:00:00Z"
        assert task.max_retries == 3
        assert task.expires_at == FIXED_NOW + timedelta(days=90)

    async def test_immediate_task_uses_initial_delay(self, scheduler, source_repo) -> None:
        _, config = await _active_source(source_repo)

        task, _ = await scheduler.schedule(config, "full_scrape", "high", immediate=True)

        assert task.scheduled_time == FIXED_NOW + timedelta(seconds=300)
        assert task.target_urls == config.target_urls

    async def test_second_request_reuses_pending_task(
        self, scheduler, source_repo, task_repo
    ) -> None:
        _, config = await _active_source(source_repo)

        first, created_first = await scheduler.schedule(config, "incremental")
        second, created_second = await scheduler.schedule(config, "incremental")

        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert len(task_repo.tasks) == 1

    async def test_different_task_type_is_a_separate_task(
        self, scheduler, source_repo, task_repo
    ) -> None:
        _, config = await _active_source(source_repo)

        await scheduler.schedule(config, "incremental")
        _, created = await scheduler.schedule(config, "validation")

        assert created is True
        assert len(task_repo.tasks) == 2

    async def test_finished_task_does_not_block_a_new_one(self, scheduler, source_repo) -> None:
        _, config = await _active_source(source_repo)
        first, _ = await scheduler.schedule(config, "incremental")
        transition_task(first, "in_progress", FIXED_NOW)
        transition_task(first, "completed", FIXED_NOW)

        second, created = await scheduler.schedule(config, "incremental")

        assert created is True
        assert second.id != first.id

    async def test_interval_is_clamped_to_bounds(self, scheduler, source_repo) -> None:
        _, config = await _active_source(
            source_repo, adaptive_frequency={"current_interval_hours": 5000}
        )

        task, _ = await scheduler.schedule(config)

        assert task.scheduled_time == FIXED_NOW + timedelta(hours=720)


# ---------------------------------------------------------------------------
# trigger_manual()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestTriggerManual:
    async def test_creates_manual_task(self, scheduler, source_repo, task_repo) -> None:
        source, _ = await _active_source(source_repo)

        result = await scheduler.trigger_manual(source.id, requested_by="ops", notes="new season")

        task = next(iter(task_repo.tasks.values()))
        assert result["reused_existing"] is False
        assert result["task_type"] == "full_scrape"
        assert result["priority"] == "high"
        assert result["scheduled_for"] == (FIXED_NOW + timedelta(seconds=60)).isoformat()
        assert task.manually_requested is True
        assert task.requested_by == "ops"
        assert task.max_retries == 2
        assert task.expires_at == FIXED_NOW + timedelta(days=30)

    async def test_promotes_existing_pending_task(self, scheduler, source_repo, task_repo) -> None:
        source, config = await _active_source(source_repo)
        existing, _ = await scheduler.schedule(config, "full_scrape", "high")
        assert existing.scheduled_time == FIXED_NOW + timedelta(hours=24)

        result = await scheduler.trigger_manual(source.id, requested_by="ops")

        assert result["reused_existing"] is True
        assert result["task_id"] == str(existing.id)
        assert len(task_repo.tasks) == 1
        assert existing.scheduled_time == FIXED_NOW + timedelta(seconds=60)
        assert existing.manually_requested is True
        assert existing.max_retries == 2

    async def test_unknown_source(self, scheduler) -> None:
        with pytest.raises(NotFoundError):
            await scheduler.trigger_manual("no-such-source")

    async def test_inactive_source_is_a_conflict(self, scheduler, source_repo) -> None:
        source = SourceFactory.build(status="analysis_complete")
        await source_repo.add(source)

        with pytest.raises(ConflictError) as exc_info:
            await scheduler.trigger_manual(source.id)

        assert exc_info.value.current_status == "analysis_complete"

    async def test_active_source_without_config_is_a_conflict(self, scheduler, source_repo) -> None:
        source = SourceFactory.build(status="active")
        await source_repo.add(source)

        with pytest.raises(ConflictError, match="no scraping configuration"):
            await scheduler.trigger_manual(source.id)


# ---------------------------------------------------------------------------
# schedule_active_sources() and next_runnable()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestScheduleActiveSources:
    async def test_only_active_sources_get_tasks(self, scheduler, source_repo, task_repo) -> None:
        await _active_source(source_repo)
        await _active_source(source_repo)
        rejected = SourceFactory.build(status="rejected")
        await source_repo.add(rejected)
        await source_repo.add_config(SourceConfigFactory.build(source_id=rejected.id))

        first = await scheduler.schedule_active_sources()
        second = await scheduler.schedule_active_sources()

        assert first == {"created": 2, "reused": 0}
        assert second == {"created": 0, "reused": 2}
        assert rejected.id not in {t.source_id for t in task_repo.tasks.values()}
        assert all(t.task_type == "incremental" for t in task_repo.tasks.values())


@pytest.mark.asyncio
class TestNextRunnable:
    async def test_orders_by_priority_then_time_then_source(self, scheduler, task_repo) -> None:
        later = FIXED_NOW - timedelta(minutes=5)
        earlier = FIXED_NOW - timedelta(minutes=30)
        tasks = [
            ScrapingTaskFactory.build(source_id="b-src", priority="medium", scheduled_time=earlier),
            ScrapingTaskFactory.build(source_id="a-src", priority="medium", scheduled_time=earlier),
            ScrapingTaskFactory.build(source_id="c-src", priority="high", scheduled_time=later),
            ScrapingTaskFactory.build(source_id="d-src", priority="low", scheduled_time=earlier),
            ScrapingTaskFactory.build(
                source_id="e-src", priority="high", scheduled_time=FIXED_NOW + timedelta(hours=1)
            ),
            ScrapingTaskFactory.build(source_id="f-src", status="queued", scheduled_time=earlier),
        ]
        for task in tasks:
            await task_repo.create_if_absent(task)

        due = await scheduler.next_runnable(FIXED_NOW, limit=10)

        assert [t.source_id for t in due] == ["c-src", "a-src", "b-src", "d-src"]

    async def test_limit(self, scheduler, task_repo) -> None:
        for n in range(5):
            await task_repo.create_if_absent(ScrapingTaskFactory.build(source_id=f"src-{n}"))

        assert len(await scheduler.next_runnable(FIXED_NOW, limit=3)) == 3


# ---------------------------------------------------------------------------
# transition_task()
# ---------------------------------------------------------------------------


class TestTransitionTask:
    def test_happy_path_stamps_times(self) -> None:
        task = ScrapingTaskFactory.build()
        started = FIXED_NOW + timedelta(minutes=1)
        finished = FIXED_NOW + timedelta(minutes=3)

        transition_task(task, "queued", FIXED_NOW)
        transition_task(task, "in_progress", started)
        transition_task(task, "completed", finished)

        assert task.status == "completed"
        assert task.started_at == started
        assert task.completed_at == finished

    def test_retry_increments_retry_count(self) -> None:
        task = ScrapingTaskFactory.build()
        transition_task(task, "in_progress", FIXED_NOW)

        transition_task(task, "scheduled", FIXED_NOW, error="HTTP 503")

        assert task.retry_count == 1
        assert task.last_error == "HTTP 503"
        assert task.status == "scheduled"

    @pytest.mark.parametrize(
        "start, target",
        [("completed", "scheduled"), ("failed", "in_progress"), ("scheduled", "completed")],
    )
    def test_illegal_moves_raise(self, start: str, target: str) -> None:
        task = ScrapingTaskFactory.build(status=start)

        with pytest.raises(ConflictError):
            transition_task(task, target, FIXED_NOW)

        assert task.status == start


# ---------------------------------------------------------------------------
# adapt_frequency()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAdaptFrequency:
    async def test_writes_interval_and_reliability(self, scheduler, source_repo) -> None:
        _, config = await _active_source(source_repo)
        runs = [
            ScrapingExecutionFactory.build(source_id=config.source_id, content_hash="same"),
            ScrapingExecutionFactory.build(source_id=config.source_id, content_hash="same"),
        ]

        decision = await scheduler.adapt_frequency(config, runs)

        stored = await source_repo.get_config(config.source_id)
        assert decision.adjustment == "widen"
        assert stored.adaptive_frequency["current_interval_hours"] == 48.0
        assert stored.adaptive_frequency["base_frequency"] == "daily"
        assert stored.reliability_score == 1.0
        assert stored.last_scraped_at == FIXED_NOW

    async def test_next_task_uses_adapted_interval(self, scheduler, source_repo) -> None:
        _, config = await _active_source(source_repo)
        await scheduler.adapt_frequency(config, [ScrapingExecutionFactory.build(status="failed")])

        task, _ = await scheduler.schedule(config)

        assert task.scheduled_time == FIXED_NOW + timedelta(hours=12)
