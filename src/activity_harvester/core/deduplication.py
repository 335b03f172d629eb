"""URL normalisation and activity deduplication.

Two kinds of identity are handled here:

- URL identity: ``normalise_url`` and ``domain_of`` give the canonical form
  used to detect that a crawl URL already belongs to a source or an open
  admin event.
- Activity identity: ``dedup_key`` maps an activity to
  ``lowercase(title)|lowercase(location name)|start date``.  ``deduplicate``
  keeps the first activity per key and reports how many were dropped.

No third-party dependencies: normalisation uses ``urllib.parse``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from activity_harvester.core.schemas.activity import ActivityPayload

# Query parameters that never change which page is served.
_STRIP_PARAMS: frozenset[str] = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "fbclid",
        "gclid",
        "ref",
        "_ga",
    }
)


# ---------------------------------------------------------------------------
# URL identity
# ---------------------------------------------------------------------------


def normalise_url(url: str) -> str:
    """Return a canonical form of *url* for duplicate detection.

    Transformations applied (in order):

    1. Lowercase the entire URL.
    2. Strip the ``www.`` prefix from the host component.
    3. Strip tracking query parameters and sort the remainder.
    4. Strip any trailing slash from the path, including a bare ``/``.

    URLs that ``urlparse`` cannot split into a ``netloc`` are returned
    lowercased only.
    """
    lowered = url.strip().lower()

    parsed = urlparse(lowered)
    if not parsed.netloc:
        return lowered

    host = parsed.netloc
    if host.startswith("www."):
        host = host[4:]

    qs_pairs = [(k, v) for k, v in parse_qsl(parsed.query) if k not in _STRIP_PARAMS]
    qs_pairs.sort()

    return urlunparse(
        (parsed.scheme, host, parsed.path.rstrip("/"), parsed.params, urlencode(qs_pairs), "")
    )


def domain_of(url: str) -> str:
    """Host of *url*, lowercased, without port and ``www.`` prefix."""
    host = urlparse(url.strip().lower()).hostname or ""
    if host.startswith("www."):
        host = host[4:]
    return host


# ---------------------------------------------------------------------------
# Activity identity
# ---------------------------------------------------------------------------


def dedup_key(activity: ActivityPayload) -> str:
    """Normalised ``title|location name|start date`` key of *activity*."""
    title = activity.title.strip().lower()
    location = activity.location_name.strip().lower()
    return f"{title}|{location}|{activity.start_date or ''}"


def content_hash(activities: Iterable[ActivityPayload]) -> str:
    """Order-independent SHA-256 over the dedup keys of *activities*.

    Two runs that extracted the same set of activities produce the same hash,
    which is what the adaptive scheduler uses to judge content stability.
    """
    keys = sorted({dedup_key(a) for a in activities})
    return hashlib.sha256(json.dumps(keys).encode("utf-8")).hexdigest()


@dataclass
class DeduplicationResult:
    """Outcome of one deduplication pass.

    Attributes:
        unique: First occurrence of each dedup key, in input order.
        duplicates_removed: Number of activities dropped as repeats.
        new: Members of ``unique`` whose key was not in ``known_keys``.
    """

    unique: list[ActivityPayload] = field(default_factory=list)
    duplicates_removed: int = 0
    new: list[ActivityPayload] = field(default_factory=list)


def deduplicate(
    activities: Iterable[ActivityPayload],
    known_keys: Optional[set[str]] = None,
) -> DeduplicationResult:
    """Keep the first activity per dedup key.

    Args:
        activities: Candidates in the order they were produced.
        known_keys: Dedup keys of already-published activities.  Matching
            candidates stay in ``unique`` but are excluded from ``new``.

    Returns:
        A :class:`DeduplicationResult`.
    """
    known = known_keys or set()
    seen: set[str] = set()
    result = DeduplicationResult()
    for activity in activities:
        key = dedup_key(activity)
        if key in seen:
            result.duplicates_removed += 1
            continue
        seen.add(key)
        result.unique.append(activity)
        if key not in known:
            result.new.append(activity)
    return result
