"""Deterministic primary and secondary-index key builders.

Every write to the store computes its primary key and zero or more index keys
from record attributes using the helpers below.  The ORM models persist these
strings in indexed columns so that each query pattern (sources by status,
tasks by next run, activities by location and date, ...) is a keyed lookup
rather than a scan.

Key shapes::

    Source Management   SOURCE#{source_id}            stage SUBMISSION | ANALYSIS | CONFIG
                        STATUS#{status}               PRIORITY#{priority}#{source_id}
    Scraping Operations TASK#{task_id}                TASK#{priority}#{source_id}#{task_id}
                        NEXT_RUN#{iso8601}            PRIORITY#{priority}#{source_id}
                        EXECUTION#{execution_id}
    Admin review        EVENT#{event_id}              SUBMISSION#{iso8601}
                        STATUS#{status}
    Business Entities   {ENTITY_TYPE}#{entity_id}     LOCATION#{city}#DATE#{start_date}
                        CATEGORY#{category}#AGE#{age} VENUE#{venue}  PROVIDER#{provider}
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

#: Lifecycle stages of the Source Management partition.
STAGE_SUBMISSION = "SUBMISSION"
STAGE_ANALYSIS = "ANALYSIS"
STAGE_CONFIG = "CONFIG"

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def _slug(value: str | None) -> str:
    """Lower-case *value* and collapse runs of non-alphanumerics into ``-``."""
    if not value:
        return "unknown"
    slug = _SLUG_STRIP.sub("-", value.strip().lower()).strip("-")
    return slug or "unknown"


def _iso(moment: datetime) -> str:
    """Render *moment* as a sortable UTC ISO-8601 string (second precision)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Source Management
# ---------------------------------------------------------------------------


def source_pk(source_id: str) -> str:
    return f"SOURCE#{source_id}"


def status_key(status: str) -> str:
    return f"STATUS#{status}"


def source_priority_key(priority: str, source_id: str) -> str:
    return f"PRIORITY#{priority}#{source_id}"


# ---------------------------------------------------------------------------
# Scraping Operations
# ---------------------------------------------------------------------------


def task_pk(task_id: str) -> str:
    return f"TASK#{task_id}"


def task_sort_key(priority: str, source_id: str, task_id: str) -> str:
    return f"TASK#{priority}#{source_id}#{task_id}"


def next_run_key(scheduled_time: datetime) -> str:
    return f"NEXT_RUN#{_iso(scheduled_time)}"


def task_priority_source_key(priority: str, source_id: str) -> str:
    return f"PRIORITY#{priority}#{source_id}"


def execution_pk(execution_id: str) -> str:
    return f"EXECUTION#{execution_id}"


def expiry(created_at: datetime, retention_days: int) -> datetime:
    """Return the TTL horizon for an operational record."""
    return created_at + timedelta(days=retention_days)


# ---------------------------------------------------------------------------
# Admin review
# ---------------------------------------------------------------------------


def event_pk(event_id: str) -> str:
    return f"EVENT#{event_id}"


def event_sort_key(extracted_at: datetime) -> str:
    return f"SUBMISSION#{_iso(extracted_at)}"


# ---------------------------------------------------------------------------
# Business Entities
# ---------------------------------------------------------------------------


def entity_pk(entity_type: str, entity_id: str) -> str:
    return f"{entity_type.upper()}#{entity_id}"


def location_date_key(city: str | None, start_date: str | None) -> str:
    return f"LOCATION#{_slug(city)}#DATE#{start_date or 'undated'}"


def category_age_key(category: str | None, age_category: str | None) -> str:
    return f"CATEGORY#{_slug(category)}#AGE#{_slug(age_category)}"


def venue_key(venue_name: str | None) -> str:
    return f"VENUE#{_slug(venue_name)}"


def provider_key(provider_name: str | None) -> str:
    return f"PROVIDER#{_slug(provider_name)}"
