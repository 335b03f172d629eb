"""Adaptive scraping frequency.

The interval between scheduled scrapes of a source starts at the base
interval of its configured frequency and is then adjusted after every run:

- widened (x2) when the source is reliable and its content is stable;
- narrowed (x0.5) when recent runs fail or the content keeps changing.

The result is clamped to ``[min_frequency_hours, max_frequency_hours]``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

#: Base interval in hours for each named scraping frequency.
FREQUENCY_HOURS: dict[str, float] = {
    "hourly": 1.0,
    "daily": 24.0,
    "weekly": 168.0,
    "monthly": 720.0,
}

WIDEN_FACTOR = 2.0
NARROW_FACTOR = 0.5
RELIABLE_THRESHOLD = 0.8
STABLE_THRESHOLD = 0.8
FAILURE_THRESHOLD = 0.3
CHURN_THRESHOLD = 0.5


@dataclass(frozen=True)
class FrequencyDecision:
    """Result of one adaptive-frequency computation.

    Attributes:
        interval_hours: The new interval, already clamped.
        reliability: Share of completed runs among finished runs.
        stability: Share of consecutive completed runs with unchanged content.
        failure_rate: Share of failed runs among finished runs.
        adjustment: ``"widen"``, ``"narrow"`` or ``"hold"``.
    """

    interval_hours: float
    reliability: float
    stability: float
    failure_rate: float
    adjustment: str


def base_interval_hours(frequency: Optional[str]) -> float:
    return FREQUENCY_HOURS.get(frequency or "daily", FREQUENCY_HOURS["daily"])


def content_stability(executions: Sequence[Any]) -> float:
    """Share of consecutive completed executions whose content hash is unchanged.

    Args:
        executions: Executions newest first, as returned by
            ``ExecutionRepository.recent_for_source``.

    Returns:
        A value in [0, 1]; 1.0 when there are fewer than two completed samples.
    """
    hashes = [
        e.content_hash
        for e in executions
        if e.status == "completed" and e.content_hash is not None
    ]
    if len(hashes) < 2:
        return 1.0
    unchanged = sum(1 for newer, older in zip(hashes, hashes[1:]) if newer == older)
    return unchanged / (len(hashes) - 1)


def reliability_of(executions: Sequence[Any]) -> tuple[float, float]:
    """``(reliability, failure_rate)`` over the finished executions.

    A source with no finished executions is treated as fully reliable.
    """
    finished = [e for e in executions if e.status in ("completed", "failed")]
    if not finished:
        return 1.0, 0.0
    completed = sum(1 for e in finished if e.status == "completed")
    reliability = completed / len(finished)
    return reliability, 1.0 - reliability


def compute_interval(
    adaptive: dict[str, Any],
    frequency: Optional[str],
    executions: Sequence[Any],
    min_hours: float,
    max_hours: float,
) -> FrequencyDecision:
    """Compute the next scraping interval for a source.

    Args:
        adaptive: The config's ``adaptive_frequency`` document; its
            ``current_interval_hours`` is the starting point when present.
        frequency: The config's named scraping frequency.
        executions: Recent executions, newest first.
        min_hours: Lower clamp.
        max_hours: Upper clamp.

    Returns:
        A :class:`FrequencyDecision`.
    """
    current = adaptive.get("current_interval_hours") or base_interval_hours(
        adaptive.get("base_frequency") or frequency
    )
    reliability, failure_rate = reliability_of(executions)
    stability = content_stability(executions)

    if failure_rate >= FAILURE_THRESHOLD or stability < CHURN_THRESHOLD:
        interval, adjustment = current * NARROW_FACTOR, "narrow"
    elif reliability >= RELIABLE_THRESHOLD and stability >= STABLE_THRESHOLD:
        interval, adjustment = current * WIDEN_FACTOR, "widen"
    else:
        interval, adjustment = current, "hold"

    return FrequencyDecision(
        interval_hours=min(max(interval, min_hours), max_hours),
        reliability=round(reliability, 4),
        stability=round(stability, 4),
        failure_rate=round(failure_rate, 4),
        adjustment=adjustment,
    )
