"""Unit tests for engine/executor.py - running due tasks end to end.

Tests cover:
- Success: execution finalised, one pending admin event per new activity,
  task completed, interval adapted, next incremental task scheduled
- Already-published activities are not queued again, including ones
  published under their source domain for want of a location
- Retryable failures go back to scheduled with backoff until the retry
  budget is spent; a pending task of the same type supersedes the retry
- Terminal failures fail the task
- Tasks whose source is missing, inactive or unconfigured are skipped
- A settlement error fails the task and closes its execution
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from activity_harvester.core.exceptions import ExtractionError, PersistenceError
from activity_harvester.engine.executor import TaskExecutor
from activity_harvester.engine.extraction_client import ActivityExtraction
from activity_harvester.engine.runner import ExecutionEngine
from tests.factories import (
    FIXED_NOW,
    ActivityCandidateFactory,
    ActivityFactory,
    ScrapingTaskFactory,
    SourceConfigFactory,
    SourceFactory,
    activity_extraction,
)

EVENTS_URL = "https://library.example.org/events"


@pytest.fixture
def executor(
    scheduler,
    source_repo,
    task_repo,
    execution_repo,
    activity_repo,
    pipeline,
    fake_client,
    settings,
    recording_sleep,
    clock,
) -> TaskExecutor:
    engine = ExecutionEngine(fake_client, settings, sleep=recording_sleep, clock=clock)
    return TaskExecutor(
        scheduler,
        source_repo,
        task_repo,
        execution_repo,
        activity_repo,
        engine,
        pipeline,
        settings,
        clock=clock,
    )


async def _due_task(source_repo, task_repo, **task_overrides):
    source = SourceFactory.build(status="active")
    config = SourceConfigFactory.build(source_id=source.id, source_name=source.source_name)
    await source_repo.add(source)
    await source_repo.add_config(config)
    task = ScrapingTaskFactory.build(source_id=source.id, **task_overrides)
    await task_repo.create_if_absent(task)
    return source, config, task


def _other_tasks(task_repo, task):
    return [t for t in task_repo.tasks.values() if t.id != task.id]


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestSuccessfulRun:
    async def test_full_cycle(
        self, executor, fake_client, source_repo, task_repo, execution_repo, event_repo
    ) -> None:
        source, config, task = await _due_task(source_repo, task_repo)
        fake_client.on(EVENTS_URL, activity_extraction(2))

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["tasks_due"] == 1
        assert outcome["completed"] == 1
        assert outcome["events_created"] == 2
        assert outcome["summary"]["new_activities"] == 2

        (execution,) = execution_repo.executions.values()
        assert execution.status == "completed"
        assert execution.task_id == task.id
        assert execution.run_id == outcome["run_id"]
        assert execution.items_extracted == 2
        assert execution.items_stored == 2
        assert execution.attempts == 1
        assert execution.quality_score == 100.0
        assert execution.content_hash is not None

        events = list(event_repo.events.values())
        assert len(events) == 2
        for event in events:
            assert event.status == "pending"
            assert event.schema_type == "activities"
            assert event.extracted_by_user == "system:engine"
            assert event.submission_id == outcome["run_id"]
            assert event.source_url == EVENTS_URL
            assert len(event.raw_data["activities"]) == 1
            assert event.converted_data["title"].startswith("Family Storytime")

        assert task.status == "completed"
        assert task.completed_at == FIXED_NOW
        assert config.adaptive_frequency["current_interval_hours"] == 48.0
        assert config.reliability_score == 1.0
        (next_task,) = _other_tasks(task_repo, task)
        assert next_task.task_type == "incremental"
        assert next_task.scheduled_time == FIXED_NOW + timedelta(hours=48)

    async def test_published_activities_are_not_queued_again(
        self, executor, fake_client, source_repo, task_repo, activity_repo, event_repo,
        execution_repo,
    ) -> None:
        await _due_task(source_repo, task_repo)
        await activity_repo.put(
            ActivityFactory.build(
                title="Story Hour",
                dedup_key="story hour|green lake library|2025-07-12",
            )
        )
        fake_client.on(
            EVENTS_URL,
            ActivityExtraction(
                activities=[
                    ActivityCandidateFactory.build(title="Story Hour"),
                    ActivityCandidateFactory.build(title="Toddler Art"),
                ],
                content_length=2000,
            ),
        )

        outcome = await executor.run_due(FIXED_NOW)

        (event,) = event_repo.events.values()
        assert [item["name"] for item in event.raw_data["activities"]] == ["Toddler Art"]
        assert outcome["summary"]["new_activities"] == 1
        (execution,) = execution_repo.executions.values()
        assert execution.items_processed == 2
        assert execution.items_stored == 1

    async def test_published_activity_without_location_is_not_queued_again(
        self, executor, fake_client, source_repo, task_repo, activity_repo, event_repo,
        pipeline,
    ) -> None:
        _, _, task = await _due_task(source_repo, task_repo)
        fake_client.on(
            EVENTS_URL,
            ActivityExtraction(
                activities=[
                    ActivityCandidateFactory.build(
                        title="Family Storytime 0",
                        location=None,
                        schedule={"start_date": "July 12, 2025"},
                    )
                ],
                content_length=2000,
            ),
        )
        await executor.run_due(FIXED_NOW)
        (event,) = event_repo.events.values()
        await pipeline.approve(event.id)
        (published,) = activity_repo.activities.values()
        assert published.dedup_key == "family storytime 0|library.example.org|2025-07-12"

        (next_task,) = _other_tasks(task_repo, task)
        outcome = await executor.run_due(next_task.scheduled_time)

        assert outcome["completed"] == 1
        assert outcome["summary"]["new_activities"] == 0
        assert outcome["events_created"] == 0
        assert len(event_repo.events) == 1

    async def test_nothing_new_creates_no_event(
        self, executor, fake_client, source_repo, task_repo, event_repo
    ) -> None:
        _, _, task = await _due_task(source_repo, task_repo)
        fake_client.on(EVENTS_URL, ActivityExtraction(activities=[], content_length=2000))

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["completed"] == 1
        assert outcome["events_created"] == 0
        assert event_repo.events == {}
        assert task.status == "completed"

    async def test_no_due_tasks(self, executor, fake_client) -> None:
        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["tasks_due"] == 0
        assert outcome["summary"] is None
        assert fake_client.calls == []


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestFailedRun:
    async def test_retryable_failure_is_rescheduled(
        self, executor, fake_client, source_repo, task_repo, execution_repo, sleeps
    ) -> None:
        _, config, task = await _due_task(source_repo, task_repo)
        fake_client.on(EVENTS_URL, ExtractionError("HTTP 503", status_code=503))

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["retried"] == 1
        assert sleeps == [2.0]
        assert task.status == "scheduled"
        assert task.retry_count == 1
        assert task.last_error == "HTTP 503"
        assert task.scheduled_time == FIXED_NOW + timedelta(seconds=2)
        assert task.next_run_key == "NEXT_RUN#2025-06-02T12:00:02Z"
        assert _other_tasks(task_repo, task) == []
        (execution,) = execution_repo.executions.values()
        assert execution.status == "failed"
        assert execution.error_message == "HTTP 503"
        assert execution.attempts == 2
        assert config.last_scraped_at is None

    async def test_retry_budget_spent_fails_task(
        self, executor, fake_client, source_repo, task_repo
    ) -> None:
        _, config, task = await _due_task(source_repo, task_repo, retry_count=3)
        fake_client.on(EVENTS_URL, ExtractionError("HTTP 503", status_code=503))

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["failed"] == 1
        assert task.status == "failed"
        assert config.adaptive_frequency["current_interval_hours"] == 12.0
        (next_task,) = _other_tasks(task_repo, task)
        assert next_task.scheduled_time == FIXED_NOW + timedelta(hours=12)

    async def test_terminal_failure_is_not_retried(
        self, executor, fake_client, source_repo, task_repo
    ) -> None:
        _, _, task = await _due_task(source_repo, task_repo)
        fake_client.on(EVENTS_URL, ExtractionError("HTTP 404", status_code=404))

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["failed"] == 1
        assert task.status == "failed"
        assert task.retry_count == 0
        assert task.last_error == "HTTP 404"

    async def test_pending_task_supersedes_retry(
        self, executor, fake_client, source_repo, task_repo
    ) -> None:
        source, _, task = await _due_task(source_repo, task_repo, task_type="full_scrape")
        later = ScrapingTaskFactory.build(
            source_id=source.id,
            task_type="full_scrape",
            scheduled_time=FIXED_NOW + timedelta(hours=6),
        )
        task_repo.tasks[later.id] = later
        fake_client.on(EVENTS_URL, ExtractionError("HTTP 503", status_code=503))

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["failed"] == 1
        assert task.status == "failed"
        assert task.last_error == "HTTP 503 (superseded by a pending task)"
        assert later.status == "scheduled"


# ---------------------------------------------------------------------------
# Skipped tasks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestSkippedTasks:
    async def test_missing_source(self, executor, task_repo, fake_client) -> None:
        task = ScrapingTaskFactory.build(source_id="gone")
        await task_repo.create_if_absent(task)

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["tasks_skipped"] == 1
        assert task.status == "failed"
        assert task.last_error == "Source 'gone' no longer exists"
        assert fake_client.calls == []

    async def test_inactive_source(self, executor, source_repo, task_repo) -> None:
        source = SourceFactory.build(status="rejected")
        await source_repo.add(source)
        task = ScrapingTaskFactory.build(source_id=source.id)
        await task_repo.create_if_absent(task)

        await executor.run_due(FIXED_NOW)

        assert task.status == "failed"
        assert task.last_error == f"Source '{source.id}' is not active (status: rejected)"

    async def test_unconfigured_source(self, executor, source_repo, task_repo) -> None:
        source = SourceFactory.build(status="active")
        await source_repo.add(source)
        task = ScrapingTaskFactory.build(source_id=source.id)
        await task_repo.create_if_absent(task)

        await executor.run_due(FIXED_NOW)

        assert task.last_error == f"Source '{source.id}' has no scraping configuration"

    async def test_skipped_task_does_not_block_others(
        self, executor, fake_client, source_repo, task_repo
    ) -> None:
        await task_repo.create_if_absent(ScrapingTaskFactory.build(source_id="gone", priority="high"))
        _, _, task = await _due_task(source_repo, task_repo)
        fake_client.on(EVENTS_URL, activity_extraction(1))

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["tasks_due"] == 2
        assert outcome["tasks_skipped"] == 1
        assert outcome["completed"] == 1
        assert task.status == "completed"


# ---------------------------------------------------------------------------
# Settlement errors
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestSettlementErrors:
    async def test_event_write_failure_fails_the_task(
        self, executor, fake_client, source_repo, task_repo, execution_repo, event_repo,
        monkeypatch,
    ) -> None:
        _, _, task = await _due_task(source_repo, task_repo)
        fake_client.on(EVENTS_URL, activity_extraction(1))
        monkeypatch.setattr(
            event_repo,
            "create",
            AsyncMock(side_effect=PersistenceError("event write failed", entity="admin_event")),
        )

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["failed"] == 1
        assert outcome["completed"] == 0
        assert outcome["events_created"] == 0
        assert task.status == "failed"
        assert task.completed_at == FIXED_NOW
        assert task.last_error == "Settlement failed: event write failed"
        assert task_repo.tasks[task.id].status == "failed"
        (execution,) = execution_repo.executions.values()
        assert execution.status == "completed"

    async def test_finalize_failure_closes_the_execution(
        self, executor, fake_client, source_repo, task_repo, execution_repo, monkeypatch
    ) -> None:
        _, _, task = await _due_task(source_repo, task_repo)
        fake_client.on(EVENTS_URL, activity_extraction(1))
        finalize = execution_repo.finalize
        statuses = []

        async def flaky_finalize(execution_id, **fields):
            statuses.append(fields["status"])
            if len(statuses) == 1:
                raise PersistenceError("execution write failed", entity="scraping_execution")
            return await finalize(execution_id, **fields)

        monkeypatch.setattr(execution_repo, "finalize", flaky_finalize)

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["failed"] == 1
        assert statuses == ["completed", "failed"]
        assert task.status == "failed"
        (execution,) = execution_repo.executions.values()
        assert execution.status == "failed"
        assert execution.completed_at == FIXED_NOW
        assert execution.error_message == "Settlement failed: execution write failed"

    async def test_settlement_error_does_not_block_others(
        self, executor, fake_client, source_repo, task_repo, event_repo, monkeypatch
    ) -> None:
        _, _, first = await _due_task(source_repo, task_repo, priority="high")
        _, _, second = await _due_task(source_repo, task_repo)
        fake_client.on(EVENTS_URL, activity_extraction(1))
        create = event_repo.create
        calls = []

        async def flaky_create(event):
            calls.append(event)
            if len(calls) == 1:
                raise PersistenceError("event write failed", entity="admin_event")
            return await create(event)

        monkeypatch.setattr(event_repo, "create", flaky_create)

        outcome = await executor.run_due(FIXED_NOW)

        assert outcome["failed"] == 1
        assert outcome["completed"] == 1
        assert first.status == "failed"
        assert second.status == "completed"
