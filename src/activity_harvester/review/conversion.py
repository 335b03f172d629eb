"""Conversion of raw admin events into publishable activities.

``ConversionService.convert`` never raises for bad data: every problem is
reported in ``ConversionResult.issues`` and, when no activity can be built,
``ConversionResult.activity`` is ``None``.  The result is recomputed on
demand (preview at submission, after edits, at approval) and is never
treated as ground truth.

Locating the item list dispatches on the schema kind:

- known kinds read their ``list_key`` (``events``, ``activities``, ``venues``);
- ``custom`` takes the largest list of objects anywhere at the top level.

Only the first item is converted.  Each activity field falls back across a
list of alternative source keys; ``field_mappings`` records which key was
used.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

import structlog

from activity_harvester.core.deduplication import domain_of
from activity_harvester.core.exceptions import ConversionError, ValidationError
from activity_harvester.core.schemas.activity import (
    ActivityPayload,
    AgeGroup,
    Image,
    Location,
    Pricing,
    Provider,
    Registration,
    Schedule,
    SourceInfo,
)
from activity_harvester.review.schemas import (
    ActivitiesSchema,
    CustomSchema,
    EventsSchema,
    VenuesSchema,
    resolve_schema,
)

logger = structlog.get_logger(__name__)

UNTITLED = "Untitled Event"

_TITLE_KEYS = ("title", "name", "event_name", "activity_name", "subject", "heading")
_DESCRIPTION_KEYS = ("description", "summary", "details", "about")
_DATE_KEYS = ("date", "start_date", "event_date")
_TIME_KEYS = ("time", "start_time", "event_time")
_DURATION_KEYS = ("duration", "length")
_RECURRENCE_KEYS = ("schedule", "frequency", "recurring")
_LOCATION_KEYS = ("location", "venue", "venue_name", "place")
_ADDRESS_KEYS = ("address", "location_address", "venue_address")
_PRICE_KEYS = ("price", "cost", "fee", "admission_fee")
_AGE_KEYS = ("age_groups", "age_suitability", "ages", "age_range")
_REGISTRATION_KEYS = ("registration_url", "website", "url", "link")
_DETAIL_KEYS = ("detail_url", "event_url", "link", "url")
_IMAGE_KEYS = ("image", "image_url", "photo")
_PHONE_KEYS = ("phone", "contact_phone")
_EMAIL_KEYS = ("email", "contact_email")

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%d %H:%M:%S",
)

_RECURRING_WORDS = ("weekly", "every week", "monday", "tuesday", "wednesday", "thursday", "friday")

_NEIGHBORHOODS = {
    "ballard": "Ballard",
    "capitol hill": "Capitol Hill",
    "fremont": "Fremont",
    "wallingford": "Wallingford",
    "green lake": "Green Lake",
    "queen anne": "Queen Anne",
    "belltown": "Belltown",
    "university": "University District",
    "georgetown": "Georgetown",
    "beacon hill": "Beacon Hill",
}
_CITIES = ("bellevue", "redmond", "kirkland")

# (category, keywords), first match wins.
_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("arts-creativity", ("art", "paint", "craft", "music", "dance", "theater", "creative", "drawing")),
    ("active-sports", ("sport", "soccer", "basketball", "swim", "run", "bike", "active", "fitness", "martial arts")),
    ("educational-stem", ("science", "stem", "math", "engineering", "coding", "robot", "experiment", "tech")),
    ("entertainment-events", ("performance", "show", "concert", "festival", "movie", "entertainment")),
    ("camps-programs", ("camp", "program", "course", "academy", "school")),
)
DEFAULT_CATEGORY = "free-community"

# (keywords, category, min_age, max_age, description), first match wins.
_AGE_RULES: tuple[tuple[tuple[str, ...], str, int, int, str], ...] = (
    (("infant", "baby", "babies"), "infant", 0, 1, "Infants (0-12 months)"),
    (("toddler",), "toddler", 1, 2, "Toddlers (1-2 years)"),
    (("preschool", "pre-k"), "preschool", 3, 5, "Preschoolers (3-5 years)"),
    (("elementary", "school-age", "kids"), "elementary", 6, 10, "Elementary (6-10 years)"),
    (("tween",), "tween", 11, 12, "Tweens (11-12 years)"),
    (("teen", "teenager"), "teen", 13, 17, "Teens (13-17 years)"),
    (("adult",), "adult", 18, 99, "Adults (18+ years)"),
)

_COST_PATTERN = re.compile(r"\d+(?:\.\d+)?")


@dataclass
class ConversionResult:
    """Outcome of converting one admin event.

    Attributes:
        activity: The converted activity, or None when conversion failed.
        issues: Problems found; non-fatal when ``activity`` is set.
        confidence_score: 0-100 estimate of conversion quality.
        field_mappings: Activity field -> raw key it was taken from.
        suggestions: Hints for the reviewer when conversion failed.
    """

    activity: Optional[ActivityPayload] = None
    issues: list[str] = field(default_factory=list)
    confidence_score: float = 0.0
    field_mappings: dict[str, str] = field(default_factory=dict)
    suggestions: list[str] = field(default_factory=list)

    @property
    def can_approve(self) -> bool:
        return self.activity is not None

    def summary(self) -> dict[str, Any]:
        return {
            "confidence_score": self.confidence_score,
            "issues_count": len(self.issues),
            "field_mappings_count": len(self.field_mappings),
        }


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _first(data: dict[str, Any], keys: Sequence[str]) -> tuple[str, Optional[str]]:
    """First non-empty scalar value among *keys*, as ``(value, key)``."""
    for key in keys:
        value = data.get(key)
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text:
            return text, key
    return "", None


def _contains_any(text: str, words: Sequence[str]) -> bool:
    return any(word in text for word in words)


def parse_date(value: str) -> Optional[str]:
    """Return *value* as YYYY-MM-DD, or None if no known format matches."""
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    return None


def activity_id(title: str, start_date: Optional[str], location_name: str) -> str:
    digest = hashlib.sha256(
        f"{title.lower()}|{start_date or ''}|{location_name.lower()}".encode("utf-8")
    ).hexdigest()
    return f"act_{digest[:16]}"


def classify_category(title: str, description: str) -> str:
    content = f"{title} {description}".lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if _contains_any(content, keywords):
            return category
    return DEFAULT_CATEGORY


def parse_age_group(value: str) -> AgeGroup:
    text = value.strip().lower()
    for keywords, category, min_age, max_age, description in _AGE_RULES:
        if _contains_any(text, keywords):
            return AgeGroup(
                category=category, min_age=min_age, max_age=max_age, description=description
            )
    return AgeGroup(category="all-ages", min_age=0, max_age=99, description="All Ages")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ConversionService:
    """Maps raw extraction payloads onto :class:`ActivityPayload`."""

    def convert(self, event: Any) -> ConversionResult:
        """Convert an admin event.

        Args:
            event: Object with ``raw_data``, ``schema_type``, ``schema_used``,
                ``source_url`` and ``extracted_at`` attributes (an
                ``AdminEvent`` row or an unsaved equivalent).

        Returns:
            A :class:`ConversionResult`; never raises for bad payloads.
        """
        try:
            items = self._locate_items(event)
        except ConversionError as exc:
            logger.info(
                "conversion_failed",
                source_url=event.source_url,
                schema_type=event.schema_type,
                issues=exc.issues,
            )
            return ConversionResult(
                issues=exc.issues or [str(exc)],
                suggestions=list(exc.details.get("suggestions", [])),
            )

        if not items:
            return ConversionResult(
                issues=["No events found in extracted data"],
                suggestions=["Re-run the crawl or try a different schema type"],
            )

        return self._convert_item(items[0], event)

    # ------------------------------------------------------------------
    # Item list location
    # ------------------------------------------------------------------

    def _locate_items(self, event: Any) -> list[dict[str, Any]]:
        raw = event.raw_data
        if not raw:
            raise ConversionError(
                "Empty extraction payload",
                issues=["Extracted data is empty"],
                details={"suggestions": ["Re-run the crawl; the extractor returned nothing"]},
            )

        try:
            schema = resolve_schema(
                event.schema_type,
                event.schema_used if event.schema_type == "custom" else None,
            )
        except ValidationError as exc:
            raise ConversionError(str(exc), issues=[str(exc)]) from exc

        if isinstance(schema, CustomSchema):
            return self._largest_list(raw)

        if isinstance(schema, (EventsSchema, ActivitiesSchema, VenuesSchema)):
            items = raw.get(schema.list_key)
            if not isinstance(items, list):
                alternatives = [k for k, v in raw.items() if isinstance(v, list)]
                raise ConversionError(
                    f"No '{schema.list_key}' array found in extracted data",
                    issues=[f"No '{schema.list_key}' array found in extracted data"],
                    details={
                        "available_keys": sorted(raw),
                        "suggestions": [
                            f"Edit the payload to put items under '{schema.list_key}'"
                        ]
                        + [f"Found list under '{key}'" for key in alternatives],
                    },
                )
            return [item for item in items if isinstance(item, dict)]

        raise ConversionError(f"Unsupported schema kind {schema!r}")

    @staticmethod
    def _largest_list(raw: dict[str, Any]) -> list[dict[str, Any]]:
        best: list[dict[str, Any]] = []
        found = False
        for value in raw.values():
            if isinstance(value, list):
                found = True
                objects = [item for item in value if isinstance(item, dict)]
                if len(objects) > len(best):
                    best = objects
        if not found:
            raise ConversionError(
                "No item array found in custom extraction",
                issues=["No array of items found in extracted data"],
                details={
                    "available_keys": sorted(raw),
                    "suggestions": ["Custom schemas must return a list of items"],
                },
            )
        return best

    # ------------------------------------------------------------------
    # Item mapping
    # ------------------------------------------------------------------

    def _convert_item(self, item: dict[str, Any], event: Any) -> ConversionResult:
        issues: list[str] = []
        mappings: dict[str, str] = {}

        title, key = _first(item, _TITLE_KEYS)
        if key:
            mappings["title"] = key
        else:
            title = UNTITLED
            issues.append("Missing title; using 'Untitled Event'")

        description, key = _first(item, _DESCRIPTION_KEYS)
        if key:
            mappings["description"] = key

        schedule = self._schedule(item, issues, mappings)
        location = self._location(item, event.source_url, issues, mappings)
        pricing = self._pricing(item, issues, mappings)
        age_groups = self._age_groups(item, issues, mappings)
        registration = self._registration(item, mappings)

        activity_type = self._activity_type(event.schema_type, title, description)
        category = classify_category(title, description)

        images = []
        image_url, key = _first(item, _IMAGE_KEYS)
        if key:
            images.append(Image(url=image_url, alt_text=title))
            mappings["images"] = key

        detail_url, key = _first(item, _DETAIL_KEYS)
        if key:
            mappings["detail_url"] = key

        domain = domain_of(event.source_url)
        provider_phone, _ = _first(item, _PHONE_KEYS)
        provider_email, _ = _first(item, _EMAIL_KEYS)
        extracted_at = getattr(event, "extracted_at", None)

        activity = ActivityPayload(
            id=activity_id(title, schedule.start_date, location.name),
            type=activity_type,
            title=title,
            description=description or None,
            category=category,
            age_groups=age_groups,
            schedule=schedule,
            location=location,
            pricing=pricing,
            registration=registration,
            images=images,
            provider=Provider(
                name=domain,
                website=f"https://{domain}" if domain else None,
                phone=provider_phone or None,
                email=provider_email or None,
            ),
            detail_url=detail_url or None,
            source=SourceInfo(
                url=event.source_url,
                domain=domain,
                scraped_at=extracted_at.isoformat() if extracted_at else None,
                extracted_by=getattr(event, "extracted_by_user", None),
            ),
            tags=[category, activity_type],
        )

        confidence = self._confidence(activity, issues)
        logger.debug(
            "conversion_complete",
            source_url=event.source_url,
            activity_id=activity.id,
            confidence=confidence,
            issues=len(issues),
        )
        return ConversionResult(
            activity=activity,
            issues=issues,
            confidence_score=confidence,
            field_mappings=mappings,
        )

    def _schedule(
        self, item: dict[str, Any], issues: list[str], mappings: dict[str, str]
    ) -> Schedule:
        schedule = Schedule()
        raw_date, key = _first(item, _DATE_KEYS)
        if key:
            mappings["schedule.start_date"] = key
            parsed = parse_date(raw_date)
            if parsed is None:
                schedule.start_date = raw_date
                issues.append(f"Could not parse date '{raw_date}'")
            else:
                schedule.start_date = parsed
        else:
            issues.append("Missing date information")

        start_time, key = _first(item, _TIME_KEYS)
        if key:
            schedule.start_time = start_time
            mappings["schedule.start_time"] = key

        duration, key = _first(item, _DURATION_KEYS)
        if key:
            schedule.duration = duration
            mappings["schedule.duration"] = key

        recurrence, key = _first(item, _RECURRENCE_KEYS)
        if key and _contains_any(recurrence.lower(), _RECURRING_WORDS):
            schedule.recurring = True
            schedule.frequency = "weekly"
            mappings["schedule.recurring"] = key
        return schedule

    def _location(
        self,
        item: dict[str, Any],
        source_url: str,
        issues: list[str],
        mappings: dict[str, str],
    ) -> Location:
        location = Location(city="Seattle", state="WA")
        name, key = _first(item, _LOCATION_KEYS)
        if key:
            mappings["location.name"] = key
        else:
            issues.append("Missing location/venue name")
            name = domain_of(source_url)
        location.name = name

        address, key = _first(item, _ADDRESS_KEYS)
        if key:
            location.address = address
            mappings["location.address"] = key
            lowered = address.lower()
            for needle, neighborhood in _NEIGHBORHOODS.items():
                if needle in lowered:
                    location.neighborhood = neighborhood
                    break
            else:
                for city in _CITIES:
                    if city in lowered:
                        location.city = city.title()
                        break
        else:
            issues.append("Missing address information")
        return location

    def _pricing(
        self, item: dict[str, Any], issues: list[str], mappings: dict[str, str]
    ) -> Pricing:
        raw_price, key = _first(item, _PRICE_KEYS)
        if not key:
            issues.append("Missing pricing information")
            return Pricing(type="variable", description="Contact for pricing")

        mappings["pricing"] = key
        price = raw_price.lower()
        if _contains_any(price, ("free", "$0", "no cost", "complimentary")):
            return Pricing(type="free", cost=0.0, description="Free")
        if _contains_any(price, ("donation", "suggested", "pay what you can")):
            return Pricing(type="donation", description=price)

        match = _COST_PATTERN.search(price.replace(",", ""))
        if match is None:
            issues.append(f"Could not parse cost from '{price}'")
            return Pricing(type="variable", description=price)
        return Pricing(type="paid", cost=float(match.group()), description=price)

    def _age_groups(
        self, item: dict[str, Any], issues: list[str], mappings: dict[str, str]
    ) -> list[AgeGroup]:
        groups: list[AgeGroup] = []
        raw = item.get("age_groups")
        if isinstance(raw, list):
            groups = [parse_age_group(str(value)) for value in raw if str(value).strip()]
            if groups:
                mappings["age_groups"] = "age_groups"
        else:
            value, key = _first(item, _AGE_KEYS)
            if key:
                groups = [parse_age_group(value)]
                mappings["age_groups"] = key

        if not groups:
            issues.append("No age group information found, defaulting to 'all ages'")
            groups = [AgeGroup(category="all-ages", min_age=0, max_age=99, description="All Ages")]
        return groups

    def _registration(self, item: dict[str, Any], mappings: dict[str, str]) -> Registration:
        registration = Registration()
        url, key = _first(item, _REGISTRATION_KEYS)
        if key:
            registration.url = url
            registration.required = True
            mappings["registration.url"] = key
        required = item.get("registration_required")
        if isinstance(required, bool):
            registration.required = required
        return registration

    @staticmethod
    def _activity_type(schema_type: str, title: str, description: str) -> str:
        content = f"{title} {description}".lower()
        if schema_type == "events":
            return "event"
        if schema_type == "activities":
            if _contains_any(content, ("class", "lesson", "course", "weekly", "monthly")):
                return "class"
            if _contains_any(content, ("camp", "summer", "week")):
                return "camp"
            return "free-activity"
        if schema_type == "venues":
            return "free-activity"
        if _contains_any(content, ("performance", "show", "concert", "play", "theater")):
            return "performance"
        if _contains_any(content, ("class", "lesson", "course", "workshop")):
            return "class"
        if "camp" in content:
            return "camp"
        return "event"

    @staticmethod
    def _confidence(activity: ActivityPayload, issues: list[str]) -> float:
        score = 100.0
        if activity.title == UNTITLED:
            score -= 30
        if not activity.description:
            score -= 10
        if not activity.location_name:
            score -= 20
        if not activity.start_date:
            score -= 15
        score -= 5 * len(issues)
        return max(score, 0.0)
