"""Automated source analysis.

Runs the extraction collaborator against a submitted source's base URL and
hint URLs and turns what comes back into a scored recommendation: which
pages to scrape, with which selectors, how often, and how confident we are.

The analyzer is triggered asynchronously by the registry (Celery task
``analyze_source``).  It drives the source through
``pending_analysis -> analyzing -> analysis_complete``; an unexpected
failure returns the source to ``pending_analysis`` so an admin can retry.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

import structlog

from activity_harvester.core import keys
from activity_harvester.core.exceptions import ExtractionError
from activity_harvester.core.models import Source, SourceAnalysis
from activity_harvester.core.models.base import utcnow
from activity_harvester.engine.extraction_client import ExtractionClient
from activity_harvester.review.schemas import ActivitiesSchema
from activity_harvester.sources.registry import DEFAULT_RATE_LIMIT, SourceRegistry

logger = structlog.get_logger(__name__)

DEFAULT_SELECTORS: dict[str, str] = {
    "title": "h1, h2, h3, .title, .event-title, .activity-title",
    "date": ".date, .event-date, time, [datetime]",
    "description": ".description, .summary, .event-description, p",
    "location": ".location, .venue, .address",
    "price": ".price, .cost, .fee",
    "age_range": ".age, .ages, .age-range, .age-group",
}

_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "title": ("title", "name"),
    "date": ("date", "start_date", "schedule"),
    "description": ("description",),
    "location": ("location", "venue", "address"),
    "price": ("price", "cost", "fee"),
}
_SCORED_FIELDS = ("title", "date", "description", "location")


def _has(item: dict[str, Any], field: str) -> bool:
    return any(item.get(key) not in (None, "", [], {}) for key in _FIELD_KEYS[field])


def classify_page(items: list[dict[str, Any]], expected_content: list[str]) -> tuple[str, float]:
    """Page type and confidence for a hint page."""
    if items:
        return "events", 0.9
    if expected_content:
        return expected_content[0], 0.5
    return "unknown", 0.3


def extraction_quality(items: list[dict[str, Any]]) -> tuple[float, dict[str, float]]:
    """Mean per-item score and per-field completeness over *items*.

    Each item earns 0.25 for each of title, date, description and location.
    """
    if not items:
        return 0.0, {field: 0.0 for field in _FIELD_KEYS}
    per_item = [
        sum(0.25 for field in _SCORED_FIELDS if _has(item, field)) for item in items
    ]
    completeness = {
        field: round(sum(1 for item in items if _has(item, field)) / len(items), 4)
        for field in _FIELD_KEYS
    }
    return round(sum(per_item) / len(per_item), 4), completeness


def frequency_for_quality(quality: float) -> tuple[str, float]:
    """``(scraping_frequency, content_volatility)`` for an extraction quality."""
    if quality > 0.8:
        return "daily", 0.7
    if quality > 0.5:
        return "weekly", 0.4
    return "monthly", 0.2


def overall_score(content_pages_found: bool, quality: float, structured_found: bool) -> float:
    """Mean of the contributing factors; 0 when nothing contributes."""
    factors: list[float] = []
    if content_pages_found:
        factors.append(0.3)
    if quality > 0:
        factors.append(0.5 * quality)
    if structured_found:
        factors.append(0.2)
    if not factors:
        return 0.0
    return round(sum(factors) / len(factors), 4)


def recommendation_text(score: float) -> str:
    if score >= 0.7:
        return "High-quality source recommended for immediate activation"
    if score >= 0.5:
        return "Medium-quality source requiring manual review"
    return "Low-quality source requiring significant configuration"


class SourceAnalyzer:
    """Analyses a submitted source through the extraction collaborator.

    Args:
        registry: Source registry (status transitions and persistence).
        client: Extraction collaborator client.
        clock: Current-time source; injectable for tests.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        client: ExtractionClient,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._client = client
        self._clock = clock
        self._schema = ActivitiesSchema()

    async def analyze(self, source_id: str) -> SourceAnalysis:
        """Run a full analysis of *source_id* and store the result.

        Raises:
            NotFoundError: If the source does not exist.
            ConflictError: If the source is not ``pending_analysis``.
            Exception: Any unexpected failure, after the source has been
                returned to ``pending_analysis``.
        """
        source = await self._registry.begin_analysis(source_id)
        logger.info("source_analysis_started", source_id=source_id, base_url=source.base_url)
        try:
            analysis = await self._analyze(source)
            await self._registry.complete_analysis(source_id, analysis)
        except Exception as exc:
            await self._registry.fail_analysis(source_id, str(exc))
            raise
        logger.info(
            "source_analysis_completed",
            source_id=source_id,
            overall_score=analysis.overall_score,
            content_pages=len(analysis.discovered_patterns["content_pages"]),
            issues=len(analysis.issues),
        )
        return analysis

    async def _items(self, url: str) -> list[dict[str, Any]]:
        result = await self._client.extract(url, self._schema.document())
        items = result.data.get(self._schema.list_key) or []
        return [item for item in items if isinstance(item, dict)]

    async def _analyze(self, source: Source) -> SourceAnalysis:
        issues: list[str] = []

        try:
            base_items = await self._items(source.base_url)
        except ExtractionError as exc:
            base_items = []
            issues.append(f"Base URL extraction failed: {exc}")

        content_pages: list[dict[str, Any]] = []
        page_items: list[list[dict[str, Any]]] = []
        for url in source.hint_urls:
            try:
                items = await self._items(url)
            except ExtractionError as exc:
                logger.warning(
                    "hint_url_extraction_failed",
                    source_id=source.id,
                    url=url,
                    error=str(exc),
                )
                continue
            page_type, confidence = classify_page(items, list(source.expected_content))
            first = items[0] if items else {}
            content_pages.append(
                {
                    "url": url,
                    "page_type": page_type,
                    "confidence": confidence,
                    "title": first.get("title") or first.get("name") or "Unknown Title",
                    "items_found": len(items),
                }
            )
            page_items.append(items)

        structured_found = bool(base_items)
        sample = page_items[0] if page_items else []
        quality, completeness = extraction_quality(sample)
        frequency, volatility = frequency_for_quality(quality)

        if structured_found:
            preferred = "structured-data"
        elif content_pages:
            preferred = "html"
        else:
            preferred = "manual"

        n = len(sample)
        score = overall_score(bool(content_pages), quality, structured_found)
        now = self._clock()
        return SourceAnalysis(
            source_id=source.id,
            pk=keys.source_pk(source.id),
            stage=keys.STAGE_ANALYSIS,
            analyzed_at=now,
            discovered_patterns={
                "content_pages": content_pages,
                "selectors": dict(DEFAULT_SELECTORS),
                "structured_data": {
                    "found": structured_found,
                    "items_on_base_url": len(base_items),
                },
            },
            extraction_test={
                "success": bool(sample),
                "tested_url": content_pages[0]["url"] if content_pages else None,
                "sample_data": sample[:3],
                "quality": quality,
                "completeness": completeness,
            },
            recommendations={
                "target_urls": list(source.hint_urls) or [source.base_url],
                "rate_limit": dict(DEFAULT_RATE_LIMIT),
                "scraping_frequency": frequency,
                "content_volatility": volatility,
                "preferred_extraction": preferred,
                "estimated_activities": f"{n}-{2 * n}" if n else "5-15",
            },
            overall_score=score,
            recommendation=recommendation_text(score),
            issues=issues,
            created_at=now,
            updated_at=now,
        )
