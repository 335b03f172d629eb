"""Admin review pipeline.

Raw extractions enter the review queue as ``AdminEvent`` rows, either from an
ad-hoc crawl submitted by an admin or from execution-engine output.  A
reviewer then approves, rejects or edits each event:

- **approve** re-runs conversion and publishes exactly one ``Activity``.  The
  event is marked ``approved`` only after the activity write succeeded.
- **reject** is terminal and allowed whatever the conversion outcome.
- **edit** replaces the raw payload (keeping the previous one in
  ``revisions``), refreshes the conversion preview and leaves the event
  reviewable as ``edited``.

Conversion is never cached as ground truth: every approval converts again.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional, Sequence

import structlog

from activity_harvester.config.settings import Settings
from activity_harvester.core import keys
from activity_harvester.core.deduplication import dedup_key
from activity_harvester.core.exceptions import (
    ConflictError,
    ConversionError,
    NotFoundError,
    ValidationError,
)
from activity_harvester.core.models import Activity, AdminEvent
from activity_harvester.core.models.base import utcnow
from activity_harvester.core.repositories.base import (
    ActivityRepository,
    AdminEventRepository,
    SourceRepository,
)
from activity_harvester.core.schemas.activity import ActivityPayload, ActivityRead
from activity_harvester.core.schemas.review import CrawlSubmission, DebugExtractRequest
from activity_harvester.engine.extraction_client import ExtractionClient
from activity_harvester.review.conversion import ConversionResult, ConversionService
from activity_harvester.review.schemas import (
    ActivitiesSchema,
    predefined_schemas,
    resolve_schema,
)
from activity_harvester.sources.registry import SourceRegistry

logger = structlog.get_logger(__name__)

REVIEWABLE_STATUSES: tuple[str, ...] = ("pending", "edited")
ENGINE_SUBMITTER = "system:engine"
PUBLISHED_CACHE_SECONDS = 300
MAX_PUBLISHED_LIMIT = 500


def _check_http_url(url: str) -> str:
    url = (url or "").strip()
    if not url.startswith(("http://", "https://")):
        raise ValidationError("url must start with http:// or https://", field="url")
    return url


def _raw_item(activity: ActivityPayload) -> dict[str, Any]:
    """Flatten an engine activity into the raw shape conversion reads."""
    item: dict[str, Any] = {"name": activity.title}
    if activity.description:
        item["description"] = activity.description
    if activity.schedule is not None:
        item["date"] = activity.schedule.start_date
        item["time"] = activity.schedule.start_time
        item["duration"] = activity.schedule.duration
        if activity.schedule.recurring:
            item["schedule"] = activity.schedule.frequency or "weekly"
    if activity.location is not None:
        item["location"] = activity.location.name
        item["address"] = activity.location.address
    if activity.pricing is not None:
        if activity.pricing.type == "free":
            item["cost"] = "Free"
        elif activity.pricing.cost is not None:
            item["cost"] = f"${activity.pricing.cost:g}"
        else:
            item["cost"] = activity.pricing.description
    if activity.age_groups:
        item["age_groups"] = [g.description or g.category for g in activity.age_groups]
    if activity.registration is not None and activity.registration.url:
        item["registration_url"] = activity.registration.url
    if activity.detail_url:
        item["detail_url"] = activity.detail_url
    if activity.images:
        item["image"] = activity.images[0].url
    return {k: v for k, v in item.items() if v not in (None, "", [])}


class AdminReviewPipeline:
    """Crawl submission, conversion preview and the approval gate.

    Args:
        events: Admin event repository.
        activities: Published activity repository.
        sources: Source repository, used to refuse crawls of known sources.
        client: Extraction collaborator client.
        settings: Application settings.
        registry: Source registry for crawl auto-registration; skipped when
            None.
        converter: Conversion service; a default one is created when None.
        clock: Current-time source; injectable for tests.
    """

    def __init__(
        self,
        events: AdminEventRepository,
        activities: ActivityRepository,
        sources: SourceRepository,
        client: Optional[ExtractionClient],
        settings: Settings,
        registry: Optional[SourceRegistry] = None,
        converter: Optional[ConversionService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._events = events
        self._activities = activities
        self._sources = sources
        self._client = client
        self._settings = settings
        self._registry = registry
        self._converter = converter or ConversionService()
        self._clock = clock

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def submit_crawl(self, submission: CrawlSubmission) -> dict[str, Any]:
        """Extract *submission.url* and queue the result for review.

        Raises:
            ValidationError: For a bad URL, schema type or submitter.
            ConflictError: If the URL already has an open admin event or is
                an existing source.  No extraction is made in that case.
            ExtractionError: If the extraction collaborator fails.
        """
        url = _check_http_url(submission.url)
        schema = resolve_schema(submission.schema_type, submission.custom_schema)
        submitter = (submission.extracted_by_user or "").strip()
        if not submitter:
            raise ValidationError("extracted_by_user is required", field="extracted_by_user")

        open_event = await self._events.find_open_by_url(url)
        if open_event is not None:
            raise ConflictError(
                f"URL already submitted for review (event {open_event.id}, status: {open_event.status})",
                entity="admin_event",
                entity_id=str(open_event.id),
                current_status=open_event.status,
            )
        source = await self._sources.find_by_url(url)
        if source is not None:
            raise ConflictError(
                f"URL already exists as source '{source.id}' (status: {source.status})",
                entity="source",
                entity_id=source.id,
                current_status=source.status,
            )

        result = await self._require_client().extract(url, schema.document())
        now = self._clock()
        event = self._new_event(
            url,
            submission.schema_type,
            schema.document(),
            result.data,
            submitter,
            submission_id=f"crawl-{uuid.uuid4().hex[:12]}",
            admin_notes=submission.admin_notes,
            now=now,
        )
        conversion = self._preview(event)
        await self._events.create(event)
        logger.info(
            "crawl_submitted",
            event_id=str(event.id),
            url=url,
            schema_type=submission.schema_type,
            events_count=result.events_count,
            conversion_issues=len(conversion.issues),
        )

        if result.events_count > 0 and self._registry is not None:
            try:
                await self._registry.register_from_crawl(
                    url, submission.schema_type, submitter, result.events_count
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("crawl_source_registration_failed", url=url, error=str(exc))

        return {
            "event_id": str(event.id),
            "events_count": result.events_count,
            "credits_used": result.credits_used,
            "processing_time": result.processing_time_ms,
            "conversion_preview": {
                **conversion.summary(),
                "can_approve": conversion.can_approve,
            },
        }

    async def debug_extract(self, request: DebugExtractRequest) -> dict[str, Any]:
        """Run extraction and a conversion preview without storing anything."""
        url = _check_http_url(request.url)
        schema = resolve_schema(request.schema_type, request.custom_schema)
        result = await self._require_client().extract(url, schema.document())
        event = self._new_event(
            url,
            request.schema_type,
            schema.document(),
            result.data,
            "debug",
            now=self._clock(),
        )
        conversion = self._converter.convert(event)
        return {
            "url": url,
            "schema_type": request.schema_type,
            "events_count": result.events_count,
            "credits_used": result.credits_used,
            "processing_time": result.processing_time_ms,
            "raw_data": result.data,
            "conversion": {
                "activity": (
                    conversion.activity.model_dump(mode="json") if conversion.activity else None
                ),
                "issues": conversion.issues,
                "field_mappings": conversion.field_mappings,
                "confidence_score": conversion.confidence_score,
                "can_approve": conversion.can_approve,
                "suggestions": conversion.suggestions,
            },
        }

    async def ingest_engine_output(
        self,
        source_url: str,
        activities: Sequence[ActivityPayload],
        run_id: str,
    ) -> list[AdminEvent]:
        """Queue engine output as one pending admin event per activity.

        Approval publishes exactly one activity per event, so each activity
        gets its own single-item ``activities`` payload.
        """
        now = self._clock()
        created: list[AdminEvent] = []
        for activity in activities:
            event = self._engine_event(source_url, activity, run_id, now)
            self._preview(event)
            await self._events.create(event)
            created.append(event)
        logger.info(
            "engine_output_ingested",
            source_url=source_url,
            events=len(created),
            run_id=run_id,
        )
        return created

    def publish_key(self, source_url: str, activity: ActivityPayload) -> str:
        """Dedup key the activity will be published under if approved unedited.

        Conversion fills gaps (a missing location becomes the source domain)
        and normalises dates, so the engine's raw key can differ from the
        key approval writes.
        """
        event = self._engine_event(source_url, activity, "", self._clock())
        conversion = self._converter.convert(event)
        if conversion.activity is None:
            return dedup_key(activity)
        return dedup_key(conversion.activity)

    def _engine_event(
        self,
        source_url: str,
        activity: ActivityPayload,
        run_id: str,
        now: datetime,
    ) -> AdminEvent:
        schema = ActivitiesSchema()
        return self._new_event(
            source_url,
            "activities",
            schema.document(),
            {schema.list_key: [_raw_item(activity)]},
            ENGINE_SUBMITTER,
            submission_id=run_id or None,
            now=now,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_event(self, event_id: str | uuid.UUID) -> AdminEvent:
        try:
            key = event_id if isinstance(event_id, uuid.UUID) else uuid.UUID(str(event_id))
        except ValueError:
            raise NotFoundError("admin_event", str(event_id)) from None
        event = await self._events.get(key)
        if event is None:
            raise NotFoundError("admin_event", str(event_id))
        return event

    async def list_pending(self, limit: int = 100) -> list[AdminEvent]:
        return await self._events.list_by_status(REVIEWABLE_STATUSES, limit)

    def schemas(self) -> list[dict[str, Any]]:
        described = list(predefined_schemas().values())
        described.append(
            {
                "type": "custom",
                "name": "Custom Schema",
                "description": "Admin-supplied JSON schema; items are read from its largest list",
                "examples": [],
                "schema": None,
            }
        )
        return described

    async def list_published(
        self,
        category: Optional[str] = None,
        date_from: Optional[str] = None,
        updated_since: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Filtered page of published activities with paging metadata.

        Raises:
            ValidationError: For a malformed date, timestamp or paging value.
        """
        if not 1 <= limit <= MAX_PUBLISHED_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_PUBLISHED_LIMIT}", field="limit"
            )
        if offset < 0:
            raise ValidationError("offset must not be negative", field="offset")
        if date_from is not None:
            try:
                date.fromisoformat(date_from)
            except ValueError:
                raise ValidationError(
                    "date_from must be a YYYY-MM-DD date", field="date_from"
                ) from None
        since: Optional[datetime] = None
        if updated_since is not None:
            try:
                since = datetime.fromisoformat(updated_since.replace("Z", "+00:00"))
            except ValueError:
                raise ValidationError(
                    "updated_since must be an ISO 8601 timestamp", field="updated_since"
                ) from None
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)

        rows, total, last_updated = await self._activities.list_published(
            category=category,
            date_from=date_from,
            updated_since=since,
            limit=limit,
            offset=offset,
        )
        return {
            "activities": [ActivityRead.model_validate(row).model_dump(mode="json") for row in rows],
            "meta": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "last_updated": last_updated.isoformat() if last_updated else None,
                "cache_duration": PUBLISHED_CACHE_SECONDS,
                "filters": {
                    "category": category,
                    "date_from": date_from,
                    "updated_since": updated_since,
                },
            },
        }

    # ------------------------------------------------------------------
    # Review decisions
    # ------------------------------------------------------------------

    async def approve(
        self,
        event_id: str | uuid.UUID,
        reviewed_by: str = "admin",
        admin_notes: Optional[str] = None,
    ) -> dict[str, Any]:
        """Publish the event's activity and mark the event approved.

        Raises:
            NotFoundError: If the event does not exist.
            ConflictError: If the event is not reviewable, or an activity
                with the same dedup key is already published.
            ConversionError: If conversion yields no activity.
            PersistenceError: If the activity write fails; the event is
                left unapproved.
        """
        event = await self.get_event(event_id)
        if event.status not in REVIEWABLE_STATUSES:
            raise ConflictError(
                f"Event {event.id} cannot be approved (status: {event.status})",
                entity="admin_event",
                entity_id=str(event.id),
                current_status=event.status,
            )

        conversion = self._converter.convert(event)
        payload = conversion.activity
        if payload is None:
            raise ConversionError(
                "Event cannot be converted into an activity",
                issues=conversion.issues,
                details={
                    "field_mappings": conversion.field_mappings,
                    "suggestions": conversion.suggestions,
                },
            )

        key = dedup_key(payload)
        existing = await self._activities.get_by_dedup_key(key)
        if existing is not None:
            raise ConflictError(
                f"An activity with the same title, location and date is already published ({existing.id})",
                entity="activity",
                entity_id=existing.id,
            )

        now = self._clock()
        activity = await self._activities.put(self._activity_row(payload, key, event.id, now))

        event.status = "approved"
        event.status_key = keys.status_key("approved")
        event.reviewed_at = now
        event.reviewed_by = reviewed_by
        event.activity_id = activity.id
        event.converted_data = payload.model_dump(mode="json")
        event.conversion_issues = list(conversion.issues)
        if admin_notes is not None:
            event.admin_notes = admin_notes
        event.updated_at = now
        await self._events.update(event)
        logger.info(
            "admin_event_approved",
            event_id=str(event.id),
            activity_id=activity.id,
            reviewed_by=reviewed_by,
            warnings=len(conversion.issues),
        )

        data: dict[str, Any] = {
            "event_id": str(event.id),
            "activity_id": activity.id,
            "status": event.status,
            "conversion_summary": conversion.summary(),
        }
        if conversion.issues:
            data["warnings"] = list(conversion.issues)
        return data

    async def reject(
        self,
        event_id: str | uuid.UUID,
        reviewed_by: str = "admin",
        rejection_reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """Reject an event.  Allowed for any unapproved event.

        Raises:
            ConflictError: If the event is already approved.
        """
        event = await self.get_event(event_id)
        if event.status == "approved":
            raise ConflictError(
                f"Event {event.id} is already approved",
                entity="admin_event",
                entity_id=str(event.id),
                current_status=event.status,
            )
        conversion = self._converter.convert(event)
        if event.status != "rejected":
            now = self._clock()
            event.status = "rejected"
            event.status_key = keys.status_key("rejected")
            event.reviewed_at = now
            event.reviewed_by = reviewed_by
            if rejection_reason is not None:
                event.admin_notes = rejection_reason
            event.updated_at = now
            await self._events.update(event)
            logger.info("admin_event_rejected", event_id=str(event.id), reviewed_by=reviewed_by)

        return {
            "event_id": str(event.id),
            "status": event.status,
            "reviewed_by": event.reviewed_by,
            "rejection_reason": rejection_reason,
            "conversion_analysis": {
                **conversion.summary(),
                "can_approve": conversion.can_approve,
                "issues": conversion.issues,
            },
        }

    async def edit(
        self,
        event_id: str | uuid.UUID,
        raw_data: dict[str, Any],
        edited_by: str = "admin",
        admin_notes: Optional[str] = None,
    ) -> dict[str, Any]:
        """Replace the raw payload and refresh the conversion preview.

        Raises:
            ValidationError: If *raw_data* is empty.
            ConflictError: If the event is approved or rejected.
        """
        if not raw_data:
            raise ValidationError("raw_data must not be empty", field="raw_data")
        event = await self.get_event(event_id)
        if event.status not in REVIEWABLE_STATUSES:
            raise ConflictError(
                f"Event {event.id} cannot be edited (status: {event.status})",
                entity="admin_event",
                entity_id=str(event.id),
                current_status=event.status,
            )

        now = self._clock()
        # Reassign the JSONB list so the ORM sees the change.
        event.revisions = [
            *(event.revisions or []),
            {
                "raw_data": event.raw_data,
                "edited_by": edited_by,
                "edited_at": now.isoformat(),
            },
        ]
        event.raw_data = raw_data
        conversion = self._preview(event)
        event.status = "edited"
        event.status_key = keys.status_key("edited")
        if admin_notes is not None:
            event.admin_notes = admin_notes
        event.updated_at = now
        await self._events.update(event)
        logger.info(
            "admin_event_edited",
            event_id=str(event.id),
            edited_by=edited_by,
            revisions=len(event.revisions),
        )
        return {
            "event_id": str(event.id),
            "status": event.status,
            "revisions": len(event.revisions),
            "conversion_preview": {
                **conversion.summary(),
                "can_approve": conversion.can_approve,
                "issues": conversion.issues,
            },
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_client(self) -> ExtractionClient:
        if self._client is None:
            raise RuntimeError("AdminReviewPipeline has no extraction client")
        return self._client

    def _new_event(
        self,
        url: str,
        schema_type: str,
        schema_document: dict[str, Any],
        raw_data: dict[str, Any],
        submitter: str,
        *,
        now: datetime,
        submission_id: Optional[str] = None,
        admin_notes: Optional[str] = None,
    ) -> AdminEvent:
        event_id = uuid.uuid4()
        return AdminEvent(
            id=event_id,
            pk=keys.event_pk(str(event_id)),
            sort_key=keys.event_sort_key(now),
            status_key=keys.status_key("pending"),
            source_url=url,
            schema_type=schema_type,
            schema_used=schema_document,
            raw_data=raw_data or {},
            converted_data=None,
            conversion_issues=[],
            status="pending",
            extracted_at=now,
            extracted_by_user=submitter,
            submission_id=submission_id,
            admin_notes=admin_notes,
            revisions=[],
            created_at=now,
            updated_at=now,
        )

    def _preview(self, event: AdminEvent) -> ConversionResult:
        conversion = self._converter.convert(event)
        event.converted_data = (
            conversion.activity.model_dump(mode="json") if conversion.activity else None
        )
        event.conversion_issues = list(conversion.issues)
        return conversion

    @staticmethod
    def _activity_row(
        payload: ActivityPayload,
        key: str,
        event_id: uuid.UUID,
        now: datetime,
    ) -> Activity:
        data = payload.model_dump(mode="json")
        location = payload.location
        age_category = payload.age_groups[0].category if payload.age_groups else None
        activity_id = payload.id or uuid.uuid4().hex
        return Activity(
            id=activity_id,
            entity_type="activity",
            pk=keys.entity_pk("activity", activity_id),
            title=payload.title,
            description=payload.description,
            activity_type=payload.type,
            category=payload.category or "free-community",
            subcategory=payload.subcategory,
            status="active",
            age_groups=data["age_groups"],
            schedule=data["schedule"] or {},
            location=data["location"] or {},
            pricing=data["pricing"] or {"type": "free"},
            registration=data["registration"],
            provider=data["provider"] or {},
            source=data["source"] or {},
            images=data["images"],
            tags=data["tags"],
            detail_url=payload.detail_url,
            dedup_key=key,
            start_date=payload.start_date,
            location_date_key=keys.location_date_key(
                location.city if location else None, payload.start_date
            ),
            category_age_key=keys.category_age_key(payload.category, age_category),
            venue_key=keys.venue_key(payload.location_name),
            provider_key=keys.provider_key(payload.provider.name if payload.provider else None),
            approved_from_event_id=event_id,
            created_at=now,
            updated_at=now,
        )
