"""Unit tests for core/quality.py - weighted quality scoring."""

from __future__ import annotations

import pytest

from activity_harvester.config.settings import QualityWeights
from activity_harvester.core.quality import INDICATORS, QualityScorer
from activity_harvester.core.schemas.activity import ActivityPayload
from tests.factories import ActivityCandidateFactory


def _payload(**overrides) -> ActivityPayload:
    return ActivityPayload.model_validate(ActivityCandidateFactory.build(**overrides))


class TestQualityScorer:
    def test_activity_with_every_indicator_scores_100(self) -> None:
        assert QualityScorer(QualityWeights()).score(_payload()) == 100.0

    def test_missing_images_costs_their_weight(self) -> None:
        assert QualityScorer(QualityWeights()).score(_payload(images=[])) == 75.0

    def test_bare_activity_scores_zero(self) -> None:
        assert QualityScorer(QualityWeights()).score(ActivityPayload(title="Open Gym")) == 0.0

    def test_contact_info_from_provider(self) -> None:
        activity = ActivityPayload(title="Open Gym", provider={"name": "YMCA", "email": "a@b.org"})
        scorer = QualityScorer(
            QualityWeights(
                images=0, coordinates=0, specific_times=0, registration_url=0, detail_url=0,
                contact_info=1,
            )
        )
        assert scorer.score(activity) == 100.0

    def test_weights_are_normalised_by_their_total(self) -> None:
        weights = QualityWeights(
            images=2.0, coordinates=0, specific_times=0, registration_url=0, detail_url=2.0,
            contact_info=0,
        )
        assert QualityScorer(weights).score(_payload(images=[])) == 50.0

    def test_all_zero_weights_score_zero(self) -> None:
        weights = QualityWeights(
            images=0, coordinates=0, specific_times=0, registration_url=0, detail_url=0,
            contact_info=0,
        )
        assert QualityScorer(weights).score(_payload()) == 0.0


class TestQualityReport:
    def test_report_averages_scores_and_counts_indicators(self) -> None:
        activities = [_payload(), _payload(images=[])]

        report = QualityScorer(QualityWeights()).report(activities)

        assert report.score == pytest.approx(87.5)
        assert report.breakdown["images"] == 1
        assert report.breakdown["coordinates"] == 2
        assert set(report.breakdown) == set(INDICATORS)

    def test_empty_report(self) -> None:
        report = QualityScorer(QualityWeights()).report([])
        assert report.score == 0.0
        assert all(count == 0 for count in report.breakdown.values())
