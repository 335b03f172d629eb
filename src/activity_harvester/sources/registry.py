"""Source registry: the source lifecycle state machine.

Status graph::

    pending_analysis -> analyzing -> analysis_complete -> active
           ^               |
           +---------------+  (analysis run failed; re-queued)

    any status -> rejected    (unconditional; rejecting twice is a no-op)

``active`` and ``rejected`` are terminal.  A rejected source comes back only
as a fresh submission.  The config record is created exactly once, when the
source becomes active.
"""

from __future__ import annotations

import inspect
import re
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlparse

import structlog

from activity_harvester.config.settings import Settings
from activity_harvester.core import keys
from activity_harvester.core.deduplication import domain_of
from activity_harvester.core.exceptions import ConflictError, NotFoundError, ValidationError
from activity_harvester.core.models import Source, SourceAnalysis, SourceConfig
from activity_harvester.core.models.base import utcnow
from activity_harvester.core.repositories.base import (
    ExecutionRepository,
    SourceRepository,
    TaskRepository,
)
from activity_harvester.core.schemas.sources import SourceSubmission
from activity_harvester.scheduler.frequency import base_interval_hours, reliability_of
from activity_harvester.scheduler.scheduler import TaskScheduler

logger = structlog.get_logger(__name__)

SOURCE_TYPES: tuple[str, ...] = ("venue", "event-organizer", "program-provider", "community-calendar")
AUTO_DISCOVERED = "auto-discovered"
PRIORITIES: tuple[str, ...] = ("high", "medium", "low")
STATUSES: tuple[str, ...] = ("pending_analysis", "analyzing", "analysis_complete", "active", "rejected")
PENDING_STATUSES: tuple[str, ...] = ("pending_analysis", "analyzing", "analysis_complete")

DEFAULT_RATE_LIMIT: dict[str, int] = {
    "requests_per_minute": 10,
    "delay_between_requests_ms": 6000,
    "concurrent_requests": 1,
}

SOURCE_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending_analysis": frozenset({"analyzing", "rejected"}),
    "analyzing": frozenset({"analysis_complete", "pending_analysis", "rejected"}),
    "analysis_complete": frozenset({"active", "rejected"}),
    "active": frozenset({"rejected"}),
    "rejected": frozenset(),
}

AnalysisSignal = Callable[[str], Union[Awaitable[None], None]]

_ID_STRIP = re.compile(r"[^a-z0-9-]+")


# ---------------------------------------------------------------------------
# Identifier helpers
# ---------------------------------------------------------------------------


def _suffix() -> str:
    return uuid.uuid4().hex[:8]


def generate_source_id(name: str) -> str:
    """Slug of *name* plus a random 8-hex suffix.

    >>> generate_source_id("Kids & Co Museum")[:-9]
    'kids-and-co-museum'
    """
    slug = name.lower().replace("&", "and").replace(" ", "-")
    slug = _ID_STRIP.sub("", slug)
    return f"{slug}-{_suffix()}"


def generate_source_id_from_url(url: str) -> str:
    domain = domain_of(url)
    for tld in (".com", ".org"):
        if domain.endswith(tld):
            domain = domain[: -len(tld)]
            break
    return f"{domain.replace('.', '-')}-{_suffix()}"


def source_name_from_url(url: str) -> str:
    domain = domain_of(url)
    base = domain.split(".")[0] if domain else url
    return " ".join(word[:1].upper() + word[1:] for word in re.split(r"[-_\s]+", base) if word)


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SourceRegistry:
    """Owns the source lifecycle.

    Args:
        sources: Source Management repository.
        scheduler: Task scheduler used to create the activation task.
        settings: Application settings.
        signal_analysis: Fire-and-forget callable that starts an analysis
            run for a source id (enqueues the Celery task in production).
        executions: Execution repository, used for reliability figures.
        tasks: Task repository, used for source details.
        clock: Current-time source; injectable for tests.
    """

    def __init__(
        self,
        sources: SourceRepository,
        scheduler: TaskScheduler,
        settings: Settings,
        signal_analysis: Optional[AnalysisSignal] = None,
        executions: Optional[ExecutionRepository] = None,
        tasks: Optional[TaskRepository] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sources = sources
        self._scheduler = scheduler
        self._settings = settings
        self._signal_analysis = signal_analysis
        self._executions = executions
        self._tasks = tasks
        self._clock = clock

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, submission: SourceSubmission) -> Source:
        """Validate and store a new source in ``pending_analysis``.

        Raises:
            ValidationError: For an empty name, an unparseable base URL or
                hint URL, or an unknown source type or priority.  Nothing is
                persisted in that case.
        """
        name = submission.source_name.strip()
        if not name:
            raise ValidationError("source_name is required", field="source_name")
        base_url = submission.base_url.strip()
        if not base_url:
            raise ValidationError("base_url is required", field="base_url")
        if not _is_http_url(base_url):
            raise ValidationError(f"base_url '{base_url}' is not a valid http(s) URL", field="base_url")
        if submission.source_type not in SOURCE_TYPES:
            raise ValidationError(
                f"Invalid source_type '{submission.source_type}'. Must be one of: {', '.join(SOURCE_TYPES)}",
                field="source_type",
            )
        priority = submission.priority or "medium"
        if priority not in PRIORITIES:
            raise ValidationError(
                f"Invalid priority '{priority}'. Must be one of: {', '.join(PRIORITIES)}",
                field="priority",
            )
        bad_hints = [url for url in submission.hint_urls if not _is_http_url(url)]
        if bad_hints:
            raise ValidationError(f"Invalid hint URLs: {', '.join(bad_hints)}", field="hint_urls")

        now = self._clock()
        source_id = generate_source_id(name)
        source = Source(
            id=source_id,
            pk=keys.source_pk(source_id),
            stage=keys.STAGE_SUBMISSION,
            source_name=name,
            base_url=base_url,
            domain=domain_of(base_url),
            source_type=submission.source_type,
            priority=priority,
            expected_content=list(submission.expected_content),
            hint_urls=list(submission.hint_urls),
            submitted_by=submission.submitted_by or "anonymous",
            submitted_at=now,
            status="pending_analysis",
            status_key=keys.status_key("pending_analysis"),
            priority_key=keys.source_priority_key(priority, source_id),
            created_at=now,
            updated_at=now,
        )
        await self._sources.add(source)
        logger.info(
            "source_submitted",
            source_id=source_id,
            source_type=source.source_type,
            priority=priority,
            submitted_by=source.submitted_by,
        )
        await self._signal(source_id)
        return source

    async def _signal(self, source_id: str) -> bool:
        """Ask the analyzer to run; a failure is logged, never raised."""
        if self._signal_analysis is None:
            return False
        try:
            outcome = self._signal_analysis(source_id)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:  # noqa: BLE001
            logger.warning("analysis_signal_failed", source_id=source_id, error=str(exc))
            return False
        return True

    async def retrigger_analysis(self, source_id: str) -> Source:
        """Re-signal the analyzer for a source still waiting in ``pending_analysis``."""
        source = await self.get(source_id)
        if source.status != "pending_analysis":
            raise ConflictError(
                f"Analysis can only be re-triggered for pending sources (status: {source.status})",
                entity="source",
                entity_id=source_id,
                current_status=source.status,
            )
        signalled = await self._signal(source_id)
        logger.info("analysis_retriggered", source_id=source_id, signalled=signalled)
        return source

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, source_id: str) -> Source:
        source = await self._sources.get(source_id)
        if source is None:
            raise NotFoundError("source", source_id)
        return source

    async def get_analysis(self, source_id: str) -> SourceAnalysis:
        await self.get(source_id)
        analysis = await self._sources.get_analysis(source_id)
        if analysis is None:
            raise NotFoundError("source_analysis", source_id)
        return analysis

    async def list_by_status(self, status: str, limit: int = 50) -> list[Source]:
        if status not in STATUSES:
            raise ValidationError(
                f"Invalid status '{status}'. Must be one of: {', '.join(STATUSES)}",
                field="status",
            )
        return await self._sources.list_by_status(status, limit)

    async def list_pending(self, limit: int = 50) -> list[Source]:
        """Sources awaiting analysis or activation, most advanced stage first."""
        pending: list[Source] = []
        for status in reversed(PENDING_STATUSES):
            pending.extend(await self._sources.list_by_status(status, limit))
        return pending[:limit]

    async def analytics(self) -> dict[str, Any]:
        counts = await self._sources.count_by_status()
        by_status = {status: counts.get(status, 0) for status in STATUSES}
        decided = by_status["active"] + by_status["rejected"]
        return {
            "by_status": by_status,
            "total_submitted": sum(counts.values()),
            "success_rate": round(by_status["active"] / decided, 4) if decided else 0.0,
        }

    async def reliability(self, source_id: str) -> float:
        """Share of completed runs among the source's recent finished runs."""
        if self._executions is None:
            return 0.0
        recent = await self._executions.recent_for_source(source_id, limit=10)
        if not any(e.status in ("completed", "failed") for e in recent):
            return 0.0
        reliability, _ = reliability_of(recent)
        return round(reliability, 4)

    async def details(self, source_id: str, task_limit: int = 20) -> dict[str, Any]:
        """Submission, analysis, config and recent tasks for one source."""
        source = await self.get(source_id)
        analysis = await self._sources.get_analysis(source_id)
        config = await self._sources.get_config(source_id)
        tasks = (
            await self._tasks.list_for_source(source_id, limit=task_limit)
            if self._tasks is not None
            else []
        )
        return {
            "source": source,
            "analysis": analysis,
            "config": config,
            "tasks": tasks,
            "reliability": await self.reliability(source_id),
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _check_transition(self, source: Source, new_status: str) -> None:
        if new_status not in SOURCE_TRANSITIONS.get(source.status, frozenset()):
            raise ConflictError(
                f"Source '{source.id}' cannot move from {source.status} to {new_status}",
                entity="source",
                entity_id=source.id,
                current_status=source.status,
            )

    async def _set_status(
        self, source: Source, new_status: str, notes: Optional[str] = None
    ) -> Source:
        self._check_transition(source, new_status)
        previous = source.status
        source.status = new_status
        source.status_key = keys.status_key(new_status)
        if notes is not None:
            source.admin_notes = notes
        source.updated_at = self._clock()
        await self._sources.update(source)
        logger.info(
            "source_status_changed",
            source_id=source.id,
            from_status=previous,
            to_status=new_status,
        )
        return source

    async def begin_analysis(self, source_id: str) -> Source:
        return await self._set_status(await self.get(source_id), "analyzing")

    async def complete_analysis(self, source_id: str, analysis: SourceAnalysis) -> Source:
        """Persist *analysis*, then mark the source ``analysis_complete``."""
        source = await self.get(source_id)
        self._check_transition(source, "analysis_complete")
        await self._sources.put_analysis(analysis)
        return await self._set_status(source, "analysis_complete")

    async def fail_analysis(self, source_id: str, error: str) -> Source:
        """Return an ``analyzing`` source to ``pending_analysis`` for a manual retry."""
        source = await self.get(source_id)
        logger.warning("source_analysis_failed", source_id=source_id, error=error)
        return await self._set_status(source, "pending_analysis")

    async def activate(
        self,
        source_id: str,
        activated_by: str = "admin",
        admin_notes: Optional[str] = None,
    ) -> dict[str, Any]:
        """Activate an analysed source.

        Builds the config from the analysis recommendation, persists it,
        flips the source to ``active`` and schedules one high-priority
        ``full_scrape`` task.

        Raises:
            NotFoundError: If the source does not exist.
            ConflictError: If the source is already active, or its analysis
                is missing or not complete.
        """
        source = await self.get(source_id)
        if source.status == "active":
            raise ConflictError(
                f"Source '{source_id}' is already active",
                entity="source",
                entity_id=source_id,
                current_status=source.status,
            )
        analysis = await self._sources.get_analysis(source_id)
        if source.status != "analysis_complete" or analysis is None:
            raise ConflictError(
                f"Source '{source_id}' has no completed analysis (status: {source.status})",
                entity="source",
                entity_id=source_id,
                current_status=source.status,
            )

        config = self._config_from_analysis(source, analysis, activated_by, admin_notes)
        await self._sources.add_config(config)
        await self._set_status(source, "active", notes=admin_notes)
        task, _ = await self._scheduler.schedule(config, "full_scrape", "high", immediate=True)
        logger.info(
            "source_activated",
            source_id=source_id,
            activated_by=activated_by,
            task_id=str(task.id),
        )
        return {"source": source, "config": config, "task": task}

    async def reject(
        self,
        source_id: str,
        rejected_by: str = "admin",
        reason: Optional[str] = None,
    ) -> Source:
        """Reject a source from any status.  Rejecting twice changes nothing."""
        source = await self.get(source_id)
        if source.status == "rejected":
            return source
        await self._set_status(source, "rejected", notes=reason)
        logger.info("source_rejected", source_id=source_id, rejected_by=rejected_by)
        return source

    async def delete(self, source_id: str, confirm_name: str) -> None:
        """Delete every Source Management record of a source.

        Raises:
            ValidationError: If *confirm_name* is not the exact source name.
        """
        source = await self.get(source_id)
        if confirm_name != source.source_name:
            raise ValidationError(
                "confirm_name must match the source name exactly",
                field="confirm_name",
            )
        await self._sources.delete(source_id)
        logger.warning("source_deleted", source_id=source_id, source_name=source.source_name)

    # ------------------------------------------------------------------
    # Crawl auto-registration
    # ------------------------------------------------------------------

    async def register_from_crawl(
        self,
        url: str,
        schema_type: str,
        submitter: str,
        events_count: int,
    ) -> Optional[Source]:
        """Create or activate a source for the domain of a successful crawl.

        Returns:
            The activated or created source, or None when an existing source
            was left untouched.
        """
        domain = domain_of(url)
        existing = await self._sources.find_by_domain(domain)
        if existing is not None:
            if existing.status == "analysis_complete":
                result = await self.activate(
                    existing.id,
                    activated_by=f"auto-discovery-by-{submitter}",
                    admin_notes=f"Activated after crawl extracted {events_count} items",
                )
                return result["source"]
            logger.info(
                "crawl_source_registration_skipped",
                source_id=existing.id,
                status=existing.status,
                domain=domain,
            )
            return None

        now = self._clock()
        source_id = generate_source_id_from_url(url)
        source = Source(
            id=source_id,
            pk=keys.source_pk(source_id),
            stage=keys.STAGE_SUBMISSION,
            source_name=source_name_from_url(url),
            base_url=url,
            domain=domain,
            source_type=AUTO_DISCOVERED,
            priority="medium",
            expected_content=[schema_type],
            hint_urls=[url],
            submitted_by=f"auto-discovery-by-{submitter}",
            submitted_at=now,
            status="active",
            status_key=keys.status_key("active"),
            priority_key=keys.source_priority_key("medium", source_id),
            created_at=now,
            updated_at=now,
        )
        await self._sources.add(source)
        frequency = "weekly"
        await self._sources.add_config(
            SourceConfig(
                source_id=source_id,
                pk=keys.source_pk(source_id),
                stage=keys.STAGE_CONFIG,
                source_name=source.source_name,
                base_url=url,
                source_type=AUTO_DISCOVERED,
                target_urls=[url],
                selectors={},
                rate_limit=dict(DEFAULT_RATE_LIMIT),
                scraping_frequency=frequency,
                user_agent=self._settings.default_user_agent,
                respect_robots_txt=True,
                timeout_seconds=30,
                max_retries=3,
                backoff_multiplier=2.0,
                reliability_score=0.5,
                expected_activity_range={"min": 1, "max": max(events_count * 2, 10)},
                adaptive_frequency={
                    "base_frequency": frequency,
                    "current_interval_hours": base_interval_hours(frequency),
                },
                activated_by=source.submitted_by,
                activated_at=now,
                admin_notes=f"Auto-discovered from crawl ({events_count} items)",
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "crawl_source_registered",
            source_id=source_id,
            domain=domain,
            events_count=events_count,
        )
        return source

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _config_from_analysis(
        self,
        source: Source,
        analysis: SourceAnalysis,
        activated_by: str,
        admin_notes: Optional[str],
    ) -> SourceConfig:
        recs = analysis.recommendations or {}
        frequency = recs.get("scraping_frequency") or "weekly"
        now = self._clock()
        return SourceConfig(
            source_id=source.id,
            pk=keys.source_pk(source.id),
            stage=keys.STAGE_CONFIG,
            source_name=source.source_name,
            base_url=source.base_url,
            source_type=source.source_type,
            target_urls=list(recs.get("target_urls") or [source.base_url]),
            selectors=dict((analysis.discovered_patterns or {}).get("selectors") or {}),
            rate_limit=dict(recs.get("rate_limit") or DEFAULT_RATE_LIMIT),
            scraping_frequency=frequency,
            user_agent=self._settings.default_user_agent,
            respect_robots_txt=True,
            timeout_seconds=30,
            max_retries=3,
            backoff_multiplier=2.0,
            reliability_score=analysis.overall_score,
            expected_activity_range={"min": 5, "max": 50},
            adaptive_frequency={
                "base_frequency": frequency,
                "current_interval_hours": base_interval_hours(frequency),
                "content_volatility": recs.get("content_volatility"),
            },
            activated_by=activated_by,
            activated_at=now,
            admin_notes=admin_notes,
            created_at=now,
            updated_at=now,
        )

