"""Repository interfaces, one per entity kind.

Services depend on these abstract classes only.  The SQLAlchemy
implementations live beside this module; tests substitute in-memory
implementations.

Every write is a single-entity operation committed on its own.  There are
no multi-entity transactions, so a caller that performs several writes must
order them so that a failure part-way through never reports success for a
step that did not happen.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from activity_harvester.core.models import (
    Activity,
    AdminEvent,
    ScrapingExecution,
    ScrapingTask,
    Source,
    SourceAnalysis,
    SourceConfig,
)


class SourceRepository(ABC):
    """Source Management partition: submission, analysis and config records."""

    @abstractmethod
    async def add(self, source: Source) -> Source: ...

    @abstractmethod
    async def get(self, source_id: str) -> Optional[Source]: ...

    @abstractmethod
    async def update(self, source: Source) -> Source: ...

    @abstractmethod
    async def list_by_status(self, status: str, limit: int) -> list[Source]:
        """Sources in *status*, high priority first, newest first within a priority."""

    @abstractmethod
    async def find_by_url(self, url: str) -> Optional[Source]: ...

    @abstractmethod
    async def find_by_domain(self, domain: str) -> Optional[Source]: ...

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]: ...

    @abstractmethod
    async def delete(self, source_id: str) -> None:
        """Remove every Source Management record (all stages) for *source_id*."""

    @abstractmethod
    async def get_analysis(self, source_id: str) -> Optional[SourceAnalysis]: ...

    @abstractmethod
    async def put_analysis(self, analysis: SourceAnalysis) -> SourceAnalysis:
        """Insert or replace the analysis record of a source."""

    @abstractmethod
    async def get_config(self, source_id: str) -> Optional[SourceConfig]: ...

    @abstractmethod
    async def add_config(self, config: SourceConfig) -> SourceConfig: ...

    @abstractmethod
    async def update_config(self, config: SourceConfig) -> SourceConfig: ...

    @abstractmethod
    async def list_active_configs(self) -> list[SourceConfig]:
        """Configs of every source whose status is ``active``."""


class TaskRepository(ABC):
    """Scraping tasks."""

    @abstractmethod
    async def create_if_absent(self, task: ScrapingTask) -> tuple[ScrapingTask, bool]:
        """Insert *task* unless a pending task exists for its (source, type).

        Returns:
            ``(task, created)``: the inserted task and ``True``, or the
            existing pending task and ``False``.
        """

    @abstractmethod
    async def find_pending(self, source_id: str, task_type: str) -> Optional[ScrapingTask]: ...

    @abstractmethod
    async def get(self, task_id: uuid.UUID) -> Optional[ScrapingTask]: ...

    @abstractmethod
    async def due(self, before: datetime, limit: int) -> list[ScrapingTask]:
        """Scheduled tasks with ``scheduled_time <= before``.

        Ordered by priority bucket, then scheduled time, then source id.
        """

    @abstractmethod
    async def update(self, task: ScrapingTask) -> ScrapingTask: ...

    @abstractmethod
    async def list_for_source(self, source_id: str, limit: int = 20) -> list[ScrapingTask]: ...


class ExecutionRepository(ABC):
    """Task execution records."""

    @abstractmethod
    async def create(self, execution: ScrapingExecution) -> ScrapingExecution: ...

    @abstractmethod
    async def finalize(
        self, execution_id: uuid.UUID, **fields: Any
    ) -> ScrapingExecution:
        """Apply the final *fields* to a running execution.

        Raises:
            NotFoundError: If the execution does not exist.
            ConflictError: If the execution is already terminal.
        """

    @abstractmethod
    async def recent_for_source(self, source_id: str, limit: int = 10) -> list[ScrapingExecution]:
        """Most recent executions of a source, newest first."""


class ActivityRepository(ABC):
    """Business Entities partition: published activities."""

    @abstractmethod
    async def put(self, activity: Activity) -> Activity:
        """Persist a new activity.

        Raises:
            ConflictError: If an activity with the same dedup key exists.
            PersistenceError: If the write fails for any other reason.
        """

    @abstractmethod
    async def get(self, activity_id: str) -> Optional[Activity]: ...

    @abstractmethod
    async def get_by_dedup_key(self, dedup_key: str) -> Optional[Activity]: ...

    @abstractmethod
    async def existing_dedup_keys(self, dedup_keys: set[str]) -> set[str]:
        """Subset of *dedup_keys* that already belong to published activities."""

    @abstractmethod
    async def query_by_location_date(self, location_date_key: str) -> list[Activity]: ...

    @abstractmethod
    async def query_by_category_age(self, category_age_key: str) -> list[Activity]: ...

    @abstractmethod
    async def query_by_venue(self, venue_key: str) -> list[Activity]: ...

    @abstractmethod
    async def query_by_provider(self, provider_key: str) -> list[Activity]: ...

    @abstractmethod
    async def list_published(
        self,
        *,
        category: Optional[str] = None,
        date_from: Optional[str] = None,
        updated_since: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Activity], int, Optional[datetime]]:
        """Filtered page of published activities.

        Returns:
            ``(activities, total, last_updated)`` where ``total`` counts every
            match regardless of paging and ``last_updated`` is the newest
            ``updated_at`` among the matches.
        """


class AdminEventRepository(ABC):
    """Admin review queue."""

    @abstractmethod
    async def create(self, event: AdminEvent) -> AdminEvent: ...

    @abstractmethod
    async def get(self, event_id: uuid.UUID) -> Optional[AdminEvent]: ...

    @abstractmethod
    async def update(self, event: AdminEvent) -> AdminEvent: ...

    @abstractmethod
    async def find_open_by_url(self, url: str) -> Optional[AdminEvent]:
        """An event for *url* that is pending, edited or approved, if any."""

    @abstractmethod
    async def list_by_status(self, statuses: tuple[str, ...], limit: int = 100) -> list[AdminEvent]:
        """Events in any of *statuses*, newest submission first."""
