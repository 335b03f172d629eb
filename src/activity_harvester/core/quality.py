"""Weighted quality scoring of extracted activities.

An activity scores ``100 * sum(weights of present indicators) / sum(weights)``.
The indicators are:

- ``images``: at least one image
- ``coordinates``: ``location.coordinates`` set
- ``specific_times``: ``schedule.start_time`` set
- ``registration_url``: ``registration.url`` set
- ``detail_url``: a direct link to the activity page
- ``contact_info``: a phone number or email on the provider or registration

Weights come from ``Settings.quality_weights``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable

from activity_harvester.config.settings import QualityWeights
from activity_harvester.core.schemas.activity import ActivityPayload


def _has_contact(activity: ActivityPayload) -> bool:
    for part in (activity.provider, activity.registration):
        if part is not None and (part.phone or part.email):
            return True
    return False


INDICATORS: dict[str, Callable[[ActivityPayload], bool]] = {
    "images": lambda a: bool(a.images),
    "coordinates": lambda a: a.location is not None and a.location.coordinates is not None,
    "specific_times": lambda a: a.schedule is not None and bool(a.schedule.start_time),
    "registration_url": lambda a: a.registration is not None and bool(a.registration.url),
    "detail_url": lambda a: bool(a.detail_url),
    "contact_info": _has_contact,
}


@dataclass
class QualityReport:
    """Quality of a set of activities.

    Attributes:
        score: Mean per-activity score in [0, 100]; 0 for an empty set.
        breakdown: Number of activities exhibiting each indicator.
    """

    score: float = 0.0
    breakdown: dict[str, int] = field(default_factory=lambda: {name: 0 for name in INDICATORS})


class QualityScorer:
    """Scores activities against a set of indicator weights."""

    def __init__(self, weights: QualityWeights) -> None:
        self._weights = weights.model_dump()
        self._total = sum(self._weights.values())

    def score(self, activity: ActivityPayload) -> float:
        if self._total <= 0:
            return 0.0
        earned = sum(
            self._weights.get(name, 0.0)
            for name, present in INDICATORS.items()
            if present(activity)
        )
        return round(100.0 * earned / self._total, 2)

    def report(self, activities: Iterable[ActivityPayload]) -> QualityReport:
        report = QualityReport()
        scores: list[float] = []
        for activity in activities:
            scores.append(self.score(activity))
            for name, present in INDICATORS.items():
                if present(activity):
                    report.breakdown[name] += 1
        if scores:
            report.score = round(sum(scores) / len(scores), 2)
        return report
