"""SQLAlchemy implementations of the repository interfaces.

Each repository wraps one ``AsyncSession`` and commits after every
single-entity write.  ``SQLAlchemyError`` raised by a write is rolled back
and re-raised as :class:`~activity_harvester.core.exceptions.PersistenceError`;
unique-key collisions that have a domain meaning (pending task per source
and type, dedup key per activity) are translated separately.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from activity_harvester.core.deduplication import normalise_url
from activity_harvester.core.exceptions import ConflictError, NotFoundError, PersistenceError
from activity_harvester.core.models import (
    Activity,
    AdminEvent,
    ScrapingExecution,
    ScrapingTask,
    Source,
    SourceAnalysis,
    SourceConfig,
)
from activity_harvester.core.models.admin_events import OPEN_EVENT_STATUSES
from activity_harvester.core.models.operations import PENDING_TASK_STATUSES, PRIORITY_RANK
from activity_harvester.core.repositories.base import (
    ActivityRepository,
    AdminEventRepository,
    ExecutionRepository,
    SourceRepository,
    TaskRepository,
)

logger = structlog.get_logger(__name__)


class _SqlRepository:
    """Shared session handling for the SQL repositories."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _commit(self, entity: str, entity_id: Any) -> None:
        """Commit the session, converting driver failures to PersistenceError."""
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error(
                "store_write_failed",
                entity=entity,
                entity_id=str(entity_id),
                error=str(exc),
            )
            raise PersistenceError(
                f"Failed to write {entity} '{entity_id}'",
                entity=entity,
                entity_id=str(entity_id),
            ) from exc

    async def _save(self, obj: Any, entity: str, entity_id: Any) -> Any:
        self._session.add(obj)
        await self._commit(entity, entity_id)
        return obj


# ---------------------------------------------------------------------------
# Source Management
# ---------------------------------------------------------------------------


class SqlSourceRepository(_SqlRepository, SourceRepository):
    async def add(self, source: Source) -> Source:
        return await self._save(source, "source", source.id)

    async def get(self, source_id: str) -> Optional[Source]:
        return await self._session.get(Source, source_id)

    async def update(self, source: Source) -> Source:
        return await self._save(source, "source", source.id)

    async def list_by_status(self, status: str, limit: int) -> list[Source]:
        priority_order = case(PRIORITY_RANK, value=Source.priority, else_=len(PRIORITY_RANK))
        stmt = (
            select(Source)
            .where(Source.status == status)
            .order_by(priority_order, Source.submitted_at.desc(), Source.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_by_url(self, url: str) -> Optional[Source]:
        # base_url is stored as submitted; compare on the normalised form.
        target = normalise_url(url)
        stmt = select(Source).where(
            func.rtrim(func.lower(Source.base_url), "/").in_(
                {target, target.replace("://", "://www.", 1)}
            )
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def find_by_domain(self, domain: str) -> Optional[Source]:
        stmt = (
            select(Source)
            .where(Source.domain == domain.lower())
            .order_by(Source.submitted_at)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(Source.status, func.count()).group_by(Source.status)
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def delete(self, source_id: str) -> None:
        for model in (SourceConfig, SourceAnalysis):
            await self._session.execute(delete(model).where(model.source_id == source_id))
        await self._session.execute(delete(Source).where(Source.id == source_id))
        await self._commit("source", source_id)

    async def get_analysis(self, source_id: str) -> Optional[SourceAnalysis]:
        return await self._session.get(SourceAnalysis, source_id)

    async def put_analysis(self, analysis: SourceAnalysis) -> SourceAnalysis:
        merged = await self._session.merge(analysis)
        await self._commit("source_analysis", analysis.source_id)
        return merged

    async def get_config(self, source_id: str) -> Optional[SourceConfig]:
        return await self._session.get(SourceConfig, source_id)

    async def add_config(self, config: SourceConfig) -> SourceConfig:
        self._session.add(config)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise ConflictError(
                f"Source '{config.source_id}' already has a config",
                entity="source_config",
                entity_id=config.source_id,
            ) from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError(
                f"Failed to write source_config '{config.source_id}'",
                entity="source_config",
                entity_id=config.source_id,
            ) from exc
        return config

    async def update_config(self, config: SourceConfig) -> SourceConfig:
        return await self._save(config, "source_config", config.source_id)

    async def list_active_configs(self) -> list[SourceConfig]:
        stmt = (
            select(SourceConfig)
            .join(Source, Source.id == SourceConfig.source_id)
            .where(Source.status == "active")
            .order_by(SourceConfig.source_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Scraping Operations
# ---------------------------------------------------------------------------


class SqlTaskRepository(_SqlRepository, TaskRepository):
    async def create_if_absent(self, task: ScrapingTask) -> tuple[ScrapingTask, bool]:
        existing = await self.find_pending(task.source_id, task.task_type)
        if existing is not None:
            return existing, False

        self._session.add(task)
        try:
            await self._session.commit()
        except IntegrityError:
            # A concurrent scheduler inserted the pending task first.
            await self._session.rollback()
            existing = await self.find_pending(task.source_id, task.task_type)
            if existing is None:
                raise PersistenceError(
                    f"Failed to write scraping_task '{task.id}'",
                    entity="scraping_task",
                    entity_id=str(task.id),
                ) from None
            logger.info(
                "task_create_race_resolved",
                source_id=task.source_id,
                task_type=task.task_type,
                task_id=str(existing.id),
            )
            return existing, False
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError(
                f"Failed to write scraping_task '{task.id}'",
                entity="scraping_task",
                entity_id=str(task.id),
            ) from exc
        return task, True

    async def find_pending(self, source_id: str, task_type: str) -> Optional[ScrapingTask]:
        stmt = select(ScrapingTask).where(
            ScrapingTask.source_id == source_id,
            ScrapingTask.task_type == task_type,
            ScrapingTask.status.in_(PENDING_TASK_STATUSES),
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def get(self, task_id: uuid.UUID) -> Optional[ScrapingTask]:
        return await self._session.get(ScrapingTask, task_id)

    async def due(self, before: datetime, limit: int) -> list[ScrapingTask]:
        stmt = (
            select(ScrapingTask)
            .where(
                ScrapingTask.status == "scheduled",
                ScrapingTask.scheduled_time <= before,
            )
            .order_by(
                ScrapingTask.priority_rank,
                ScrapingTask.scheduled_time,
                ScrapingTask.source_id,
            )
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update(self, task: ScrapingTask) -> ScrapingTask:
        return await self._save(task, "scraping_task", task.id)

    async def list_for_source(self, source_id: str, limit: int = 20) -> list[ScrapingTask]:
        stmt = (
            select(ScrapingTask)
            .where(ScrapingTask.source_id == source_id)
            .order_by(ScrapingTask.scheduled_time.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class SqlExecutionRepository(_SqlRepository, ExecutionRepository):
    async def create(self, execution: ScrapingExecution) -> ScrapingExecution:
        return await self._save(execution, "scraping_execution", execution.id)

    async def finalize(self, execution_id: uuid.UUID, **fields: Any) -> ScrapingExecution:
        execution = await self._session.get(ScrapingExecution, execution_id)
        if execution is None:
            raise NotFoundError("scraping_execution", str(execution_id))
        if execution.is_terminal:
            raise ConflictError(
                f"Execution '{execution_id}' is already {execution.status}",
                entity="scraping_execution",
                entity_id=str(execution_id),
                current_status=execution.status,
            )
        for name, value in fields.items():
            setattr(execution, name, value)
        return await self._save(execution, "scraping_execution", execution_id)

    async def recent_for_source(self, source_id: str, limit: int = 10) -> list[ScrapingExecution]:
        stmt = (
            select(ScrapingExecution)
            .where(ScrapingExecution.source_id == source_id)
            .order_by(ScrapingExecution.started_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Business Entities
# ---------------------------------------------------------------------------


class SqlActivityRepository(_SqlRepository, ActivityRepository):
    async def put(self, activity: Activity) -> Activity:
        self._session.add(activity)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            logger.warning(
                "activity_duplicate_rejected",
                activity_id=activity.id,
                dedup_key=activity.dedup_key,
            )
            raise ConflictError(
                f"An activity with dedup key '{activity.dedup_key}' is already published",
                entity="activity",
                entity_id=activity.id,
            ) from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError(
                f"Failed to write activity '{activity.id}'",
                entity="activity",
                entity_id=activity.id,
            ) from exc
        return activity

    async def get(self, activity_id: str) -> Optional[Activity]:
        return await self._session.get(Activity, activity_id)

    async def get_by_dedup_key(self, dedup_key: str) -> Optional[Activity]:
        result = await self._session.execute(
            select(Activity).where(Activity.dedup_key == dedup_key)
        )
        return result.scalars().first()

    async def existing_dedup_keys(self, dedup_keys: set[str]) -> set[str]:
        if not dedup_keys:
            return set()
        result = await self._session.execute(
            select(Activity.dedup_key).where(Activity.dedup_key.in_(dedup_keys))
        )
        return set(result.scalars().all())

    async def _by_key(self, column: Any, value: str) -> list[Activity]:
        stmt = select(Activity).where(column == value).order_by(Activity.start_date, Activity.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def query_by_location_date(self, location_date_key: str) -> list[Activity]:
        return await self._by_key(Activity.location_date_key, location_date_key)

    async def query_by_category_age(self, category_age_key: str) -> list[Activity]:
        return await self._by_key(Activity.category_age_key, category_age_key)

    async def query_by_venue(self, venue_key: str) -> list[Activity]:
        return await self._by_key(Activity.venue_key, venue_key)

    async def query_by_provider(self, provider_key: str) -> list[Activity]:
        return await self._by_key(Activity.provider_key, provider_key)

    async def list_published(
        self,
        *,
        category: Optional[str] = None,
        date_from: Optional[str] = None,
        updated_since: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Activity], int, Optional[datetime]]:
        conditions = [Activity.status == "active"]
        if category:
            conditions.append(Activity.category == category)
        if date_from:
            conditions.append(Activity.start_date >= date_from)
        if updated_since is not None:
            conditions.append(Activity.updated_at > updated_since)

        totals = await self._session.execute(
            select(func.count(), func.max(Activity.updated_at)).where(*conditions)
        )
        total, last_updated = totals.one()

        stmt = (
            select(Activity)
            .where(*conditions)
            .order_by(Activity.start_date, Activity.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), int(total or 0), last_updated


# ---------------------------------------------------------------------------
# Admin review
# ---------------------------------------------------------------------------


class SqlAdminEventRepository(_SqlRepository, AdminEventRepository):
    async def create(self, event: AdminEvent) -> AdminEvent:
        return await self._save(event, "admin_event", event.id)

    async def get(self, event_id: uuid.UUID) -> Optional[AdminEvent]:
        return await self._session.get(AdminEvent, event_id)

    async def update(self, event: AdminEvent) -> AdminEvent:
        return await self._save(event, "admin_event", event.id)

    async def find_open_by_url(self, url: str) -> Optional[AdminEvent]:
        target = normalise_url(url)
        stmt = (
            select(AdminEvent)
            .where(
                AdminEvent.status.in_(OPEN_EVENT_STATUSES),
                func.rtrim(func.lower(AdminEvent.source_url), "/").in_(
                    {target, target.replace("://", "://www.", 1)}
                ),
            )
            .order_by(AdminEvent.extracted_at.desc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def list_by_status(self, statuses: tuple[str, ...], limit: int = 100) -> list[AdminEvent]:
        stmt = (
            select(AdminEvent)
            .where(AdminEvent.status.in_(statuses))
            .order_by(AdminEvent.sort_key.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
