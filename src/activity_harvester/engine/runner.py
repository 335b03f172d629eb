"""Bounded-concurrency scraping execution engine.

``ExecutionEngine.run_batch`` scrapes a batch of sources in parallel:

1. Sources are filtered to the enabled ones, optionally narrowed by an
   explicit filter matching domain, name or source id.
2. Each source runs in its own worker under an ``asyncio.Semaphore`` sized by
   ``Settings.max_concurrent_extractions``, with a hard per-source timeout.
3. Inside a worker the source's :class:`ErrorPolicy` prepares a fresh
   :class:`ClientConfig` for every attempt and classifies each failure as
   transient (retry after ``attempt * retry_backoff_seconds``) or terminal.
   Content shorter than ``min_content_length`` is terminal.
4. The whole batch is bounded by ``batch_deadline_seconds``; sources still
   running at the deadline are cancelled and reported as failed, while
   finished sources keep their results.
5. After every worker has finished (the join barrier) the candidates are
   deduplicated and quality scores are aggregated into a
   :class:`BatchSummary`.

One source's failure never aborts the batch.  The engine never writes to the
store; :mod:`activity_harvester.engine.executor` does that around it.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog
from pydantic import ValidationError as PydanticValidationError

from activity_harvester.config.settings import Settings
from activity_harvester.core.deduplication import content_hash, deduplicate
from activity_harvester.core.exceptions import (
    ExtractionError,
    TerminalExtractionError,
    TransientExtractionError,
)
from activity_harvester.core.models.base import utcnow
from activity_harvester.core.quality import INDICATORS, QualityScorer
from activity_harvester.core.schemas.activity import ActivityPayload
from activity_harvester.engine.extraction_client import ActivityExtraction, ExtractionClient
from activity_harvester.engine.policies import ClientConfig, PolicyTable

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Batch input and output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceSpec:
    """One source to scrape in a batch.

    Attributes:
        source_id: Source identifier.
        name: Display name.
        url: Page to extract.
        domain: Domain used for error-policy lookup.
        priority: Numeric priority rank (0 = high).
        enabled: Disabled sources are skipped.
        timeout_seconds: Hard timeout for the whole scrape, retries included.
        retry_count: Maximum extraction attempts.
        task_id: Scraping task this spec was built from, if any.
        execution_id: Execution record tracking this run, if any.
    """

    source_id: str
    name: str
    url: str
    domain: str
    priority: int = 1
    enabled: bool = True
    timeout_seconds: float = 60.0
    retry_count: int = 2
    task_id: Optional[uuid.UUID] = None
    execution_id: Optional[uuid.UUID] = None

    def matches(self, source_filter: str) -> bool:
        needle = source_filter.lower()
        return needle in (self.domain.lower(), self.name.lower(), self.source_id.lower())


@dataclass
class SourceResult:
    """Outcome of scraping one source."""

    source_id: str
    source_name: str
    url: str
    success: bool = False
    activities_found: int = 0
    activities: list[ActivityPayload] = field(default_factory=list)
    attempts: int = 0
    duration_ms: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    quality_score: float = 0.0
    quality_breakdown: dict[str, int] = field(default_factory=dict)
    content_hash: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    invalid_candidates: int = 0
    task_id: Optional[uuid.UUID] = None
    execution_id: Optional[uuid.UUID] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_name": self.source_name,
            "url": self.url,
            "success": self.success,
            "activities_found": self.activities_found,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "quality_score": self.quality_score,
            "error": self.error,
            "retryable": self.retryable,
        }


@dataclass
class BatchSummary:
    """Aggregate outcome of one batch."""

    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    total_sources: int = 0
    successful_sources: int = 0
    failed_sources: int = 0
    total_activities: int = 0
    new_activities: int = 0
    duplicates_removed: int = 0
    total_tokens_used: int = 0
    total_cost: float = 0.0
    average_quality_score: float = 0.0
    quality_breakdown: dict[str, int] = field(default_factory=dict)
    source_results: list[SourceResult] = field(default_factory=list)
    unique_activities: list[ActivityPayload] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        """JSON-serialisable view without the activity payloads."""
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "total_sources": self.total_sources,
            "successful_sources": self.successful_sources,
            "failed_sources": self.failed_sources,
            "total_activities": self.total_activities,
            "new_activities": self.new_activities,
            "duplicates_removed": self.duplicates_removed,
            "total_tokens_used": self.total_tokens_used,
            "total_cost": round(self.total_cost, 6),
            "average_quality_score": self.average_quality_score,
            "quality_breakdown": self.quality_breakdown,
            "source_results": [r.as_dict() for r in self.source_results],
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ExecutionEngine:
    """Runs extraction for a batch of sources.

    Args:
        client: Extraction collaborator client.
        settings: Application settings (pool size, guards, backoff, deadline,
            domain policies, quality weights).
        policies: Domain policy table; built from settings when omitted.
        sleep: Awaitable used for backoff waits; injectable for tests.
        clock: Current-time source.
    """

    def __init__(
        self,
        client: ExtractionClient,
        settings: Settings,
        policies: Optional[PolicyTable] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._settings = settings
        self._policies = policies or PolicyTable(settings.domain_error_policies)
        self._scorer = QualityScorer(settings.quality_weights)
        self._sleep = sleep
        self._clock = clock

    async def run_batch(
        self,
        sources: Sequence[SourceSpec],
        source_filter: Optional[str] = None,
        known_keys: Optional[set[str]] = None,
        run_id: Optional[str] = None,
    ) -> BatchSummary:
        """Scrape *sources* and summarise the results.

        Args:
            sources: Candidate sources.
            source_filter: Only run sources whose domain, name or id equals
                this value (case-insensitive).
            known_keys: Dedup keys of already-published activities; matching
                activities are not counted as new.
            run_id: Identifier for logs; generated when omitted.

        Returns:
            A :class:`BatchSummary` with one result per selected source, in
            input order.
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        summary = BatchSummary(run_id=run_id, started_at=self._clock())
        started = time.monotonic()

        selected = [
            s for s in sources if s.enabled and (source_filter is None or s.matches(source_filter))
        ]
        logger.info(
            "batch_started",
            run_id=run_id,
            sources=len(selected),
            skipped=len(sources) - len(selected),
            max_concurrent=self._settings.max_concurrent_extractions,
        )

        results = await self._run_workers(selected) if selected else []

        self._aggregate(summary, results, known_keys)
        summary.completed_at = self._clock()
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "batch_completed",
            run_id=run_id,
            total_sources=summary.total_sources,
            successful_sources=summary.successful_sources,
            failed_sources=summary.failed_sources,
            total_activities=summary.total_activities,
            new_activities=summary.new_activities,
            duplicates_removed=summary.duplicates_removed,
            average_quality_score=summary.average_quality_score,
            duration_ms=summary.duration_ms,
        )
        return summary

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _run_workers(self, selected: list[SourceSpec]) -> list[SourceResult]:
        semaphore = asyncio.Semaphore(self._settings.max_concurrent_extractions)
        progress = [0] * len(selected)

        async def worker(index: int, spec: SourceSpec) -> SourceResult:
            async with semaphore:
                return await self._run_source(spec, progress, index)

        tasks = [asyncio.create_task(worker(i, spec)) for i, spec in enumerate(selected)]
        done, pending = await asyncio.wait(tasks, timeout=self._settings.batch_deadline_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("batch_deadline_exceeded", unfinished=len(pending))

        results: list[SourceResult] = []
        for index, (spec, task) in enumerate(zip(selected, tasks)):
            if task in done:
                results.append(task.result())
            else:
                results.append(
                    self._failure(
                        spec,
                        "Batch deadline exceeded before the source finished",
                        attempts=progress[index],
                        retryable=True,
                    )
                )
        return results

    async def _run_source(
        self, spec: SourceSpec, progress: list[int], index: int
    ) -> SourceResult:
        started = time.monotonic()
        try:
            extraction = await asyncio.wait_for(
                self._extract_with_policy(spec, progress, index),
                timeout=spec.timeout_seconds,
            )
        except asyncio.TimeoutError:
            result = self._failure(
                spec,
                f"Timed out after {spec.timeout_seconds:g}s",
                attempts=progress[index],
                retryable=True,
            )
        except ExtractionError as exc:
            result = self._failure(
                spec,
                str(exc),
                attempts=progress[index],
                retryable=isinstance(exc, TransientExtractionError),
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("source_worker_crashed", source_id=spec.source_id)
            result = self._failure(
                spec,
                f"Unexpected error: {exc}",
                attempts=progress[index],
            )
        else:
            result = self._success(spec, extraction, progress[index])

        result.duration_ms = int((time.monotonic() - started) * 1000)
        if result.success:
            logger.info(
                "source_scrape_succeeded",
                source_id=spec.source_id,
                activities_found=result.activities_found,
                attempts=result.attempts,
                quality_score=result.quality_score,
                duration_ms=result.duration_ms,
            )
        else:
            logger.warning(
                "source_scrape_failed",
                source_id=spec.source_id,
                error=result.error,
                attempts=result.attempts,
                retryable=result.retryable,
            )
        return result

    async def _extract_with_policy(
        self, spec: SourceSpec, progress: list[int], index: int
    ) -> ActivityExtraction:
        """Extract with retries as directed by the source's error policy.

        Raises:
            TransientExtractionError: When every attempt failed transiently.
            TerminalExtractionError: On a terminal failure or short content.
        """
        policy = self._policies.for_domain(spec.domain)
        base_config = ClientConfig(
            user_agent=self._settings.default_user_agent,
            timeout_seconds=spec.timeout_seconds,
        )
        max_attempts = max(1, spec.retry_count)
        last_error: Optional[TransientExtractionError] = None

        for attempt in range(max_attempts):
            if attempt > 0:
                await self._sleep(attempt * self._settings.retry_backoff_seconds)
            progress[index] = attempt + 1
            config = policy.prepare(base_config, attempt)
            try:
                extraction = await self._client.extract_activities(spec.url, config)
            except ExtractionError as exc:
                if not policy.is_retryable(exc):
                    raise TerminalExtractionError.from_error(exc) from exc
                last_error = TransientExtractionError.from_error(exc)
                logger.info(
                    "extraction_attempt_failed",
                    source_id=spec.source_id,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    policy=policy.name,
                    error=str(exc),
                )
                continue

            if extraction.content_length < self._settings.min_content_length:
                raise TerminalExtractionError(
                    f"Content too short ({extraction.content_length} chars)",
                    url=spec.url,
                    domain=spec.domain,
                )
            return extraction

        if last_error is None:
            raise TerminalExtractionError(
                "No extraction attempt was made", url=spec.url, domain=spec.domain
            )
        raise last_error

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _failure(
        self,
        spec: SourceSpec,
        error: str,
        attempts: int,
        retryable: bool = False,
    ) -> SourceResult:
        return SourceResult(
            source_id=spec.source_id,
            source_name=spec.name,
            url=spec.url,
            success=False,
            attempts=attempts,
            error=error,
            retryable=retryable,
            task_id=spec.task_id,
            execution_id=spec.execution_id,
        )

    def _success(
        self, spec: SourceSpec, extraction: ActivityExtraction, attempts: int
    ) -> SourceResult:
        activities: list[ActivityPayload] = []
        invalid = 0
        for candidate in extraction.activities:
            try:
                activities.append(ActivityPayload.model_validate(candidate))
            except PydanticValidationError:
                invalid += 1
        if invalid:
            logger.warning(
                "invalid_candidates_dropped",
                source_id=spec.source_id,
                dropped=invalid,
                kept=len(activities),
            )

        report = self._scorer.report(activities)
        return SourceResult(
            source_id=spec.source_id,
            source_name=spec.name,
            url=spec.url,
            success=True,
            activities_found=len(activities),
            activities=activities,
            attempts=attempts,
            tokens_used=extraction.tokens_used,
            cost=extraction.cost,
            quality_score=report.score,
            quality_breakdown=report.breakdown,
            content_hash=content_hash(activities),
            invalid_candidates=invalid,
            task_id=spec.task_id,
            execution_id=spec.execution_id,
        )

    def _aggregate(
        self,
        summary: BatchSummary,
        results: list[SourceResult],
        known_keys: Optional[set[str]],
    ) -> None:
        summary.source_results = results
        summary.total_sources = len(results)
        summary.quality_breakdown = {name: 0 for name in INDICATORS}

        candidates: list[ActivityPayload] = []
        scored: list[float] = []
        for result in results:
            summary.total_tokens_used += result.tokens_used
            summary.total_cost += result.cost
            if not result.success:
                summary.failed_sources += 1
                continue
            summary.successful_sources += 1
            summary.total_activities += result.activities_found
            candidates.extend(result.activities)
            if result.activities_found:
                scored.append(result.quality_score)
            for name, count in result.quality_breakdown.items():
                summary.quality_breakdown[name] = summary.quality_breakdown.get(name, 0) + count

        dedup = deduplicate(candidates, known_keys)
        summary.unique_activities = dedup.unique
        summary.duplicates_removed = dedup.duplicates_removed
        summary.new_activities = len(dedup.new)
        summary.average_quality_score = round(sum(scored) / len(scored), 2) if scored else 0.0
