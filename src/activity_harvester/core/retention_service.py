"""Retention enforcement for Scraping Operations records.

Tasks and executions carry an ``expires_at`` horizon computed when they are
written (see ``core.keys.expiry``).  ``purge_expired`` removes every row whose
horizon has passed, using bulk DELETE statements rather than loading ORM
objects.  Business Entities and Source Management records never expire.

Usage::

    from activity_harvester.core.retention_service import RetentionService
    from activity_harvester.core.database import AsyncSessionLocal

    async with AsyncSessionLocal() as db:
        summary = await RetentionService().purge_expired(db)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class RetentionService:
    """Deletes operational records past their retention horizon.

    Stateless; a single instance can be reused.  The caller supplies the
    session and this service commits it.
    """

    async def purge_expired(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> dict[str, int]:
        """Delete expired scraping tasks and executions.

        Only terminal tasks are purged: a task that is still pending or
        running keeps its row even when its horizon has passed, so that a
        slow run never loses the record it will finalize.

        Args:
            db: Active async database session.
            now: Reference time; defaults to the current UTC time.

        Returns:
            Dict with keys ``scraping_tasks`` and ``scraping_executions``
            mapping to the number of rows deleted from each table.
        """
        cutoff = now or datetime.now(tz=timezone.utc)

        # Import lazily to avoid circular imports at module level.
        from activity_harvester.core.models.operations import (  # noqa: PLC0415
            ScrapingExecution,
            ScrapingTask,
        )

        tasks_result = await db.execute(
            delete(ScrapingTask).where(
                ScrapingTask.expires_at < cutoff,
                ScrapingTask.status.in_(("completed", "failed")),
            )
        )
        executions_result = await db.execute(
            delete(ScrapingExecution).where(ScrapingExecution.expires_at < cutoff)
        )
        await db.commit()

        summary = {
            "scraping_tasks": tasks_result.rowcount or 0,
            "scraping_executions": executions_result.rowcount or 0,
        }
        logger.info(
            "retention_purge_complete",
            extra={"cutoff": cutoff.isoformat(), **summary},
        )
        return summary
