"""Unit tests for engine/runner.py - the bounded-concurrency execution engine.

Tests cover:
- Retries with linear backoff for transient failures; terminal failures stop
- Domain error policies: DNS failures are terminal, anti-scraping rotates
  the user agent between attempts
- Guards: short content, per-source timeout, batch deadline
- Concurrency never exceeds max_concurrent_extractions
- Source filter and disabled sources
- Batch aggregation: dedup across sources, known keys, quality averages,
  invalid candidates
"""

from __future__ import annotations

import pytest

from activity_harvester.core.exceptions import ExtractionError
from activity_harvester.engine.extraction_client import ActivityExtraction
from activity_harvester.engine.policies import USER_AGENT_POOL
from activity_harvester.engine.runner import ExecutionEngine, SourceSpec
from tests.factories import ActivityCandidateFactory, activity_extraction


def _spec(source_id: str = "spl", domain: str = "spl.example.org", **overrides) -> SourceSpec:
    fields = {
        "source_id": source_id,
        "name": source_id.upper(),
        "url": f"https://{domain}/events",
        "domain": domain,
    }
    fields.update(overrides)
    return SourceSpec(**fields)


def _extraction(*candidates: dict, content_length: int = 2000) -> ActivityExtraction:
    return ActivityExtraction(activities=list(candidates), content_length=content_length)


@pytest.fixture
def make_engine(fake_client, settings, recording_sleep):
    def _make(**setting_overrides) -> ExecutionEngine:
        return ExecutionEngine(
            fake_client,
            settings.model_copy(update=setting_overrides),
            sleep=recording_sleep,
        )

    return _make


# ---------------------------------------------------------------------------
# Retries and error policies
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestRetries:
    async def test_transient_failure_then_success(self, make_engine, fake_client, sleeps) -> None:
        spec = _spec()
        fake_client.on(spec.url, ExtractionError("HTTP 503", status_code=503), activity_extraction(2))

        summary = await make_engine().run_batch([spec])

        result = summary.source_results[0]
        assert result.success is True
        assert result.attempts == 2
        assert result.activities_found == 2
        assert result.quality_score == 100.0
        assert result.tokens_used == 150
        assert result.content_hash is not None
        assert sleeps == [2.0]

    async def test_backoff_grows_linearly(self, make_engine, fake_client, sleeps) -> None:
        spec = _spec(retry_count=3)
        fake_client.on(spec.url, ExtractionError("HTTP 503", status_code=503))

        summary = await make_engine().run_batch([spec])

        result = summary.source_results[0]
        assert result.success is False
        assert result.retryable is True
        assert result.attempts == 3
        assert result.error == "HTTP 503"
        assert sleeps == [2.0, 4.0]

    async def test_client_error_is_terminal(self, make_engine, fake_client, sleeps) -> None:
        spec = _spec()
        fake_client.on(spec.url, ExtractionError("HTTP 404", status_code=404), activity_extraction())

        summary = await make_engine().run_batch([spec])

        result = summary.source_results[0]
        assert result.success is False
        assert result.retryable is False
        assert result.attempts == 1
        assert len(fake_client.calls) == 1
        assert sleeps == []

    async def test_dns_failure_is_terminal_and_batch_continues(
        self, make_engine, fake_client, sleeps
    ) -> None:
        broken = _spec("sffk", "seattlefunforkids.com")
        healthy = _spec("spl")
        fake_client.on(broken.url, ExtractionError("getaddrinfo ENOTFOUND seattlefunforkids.com"))
        fake_client.on(healthy.url, activity_extraction(3))

        summary = await make_engine().run_batch([broken, healthy])

        failed, succeeded = summary.source_results
        assert failed.success is False
        assert failed.retryable is False
        assert len(fake_client.calls_for(broken.url)) == 1
        assert succeeded.success is True
        assert summary.successful_sources == 1
        assert summary.failed_sources == 1
        assert summary.total_activities == 3
        assert sleeps == []

    async def test_anti_scraping_rotates_user_agent(self, make_engine, fake_client, settings) -> None:
        spec = _spec("sc", "www.seattleschild.com", retry_count=3)
        fake_client.on(
            spec.url,
            ExtractionError("HTTP 403", status_code=403),
            ExtractionError("Forbidden", status_code=403),
            activity_extraction(1),
        )

        summary = await make_engine().run_batch([spec])

        configs = fake_client.calls_for(spec.url)
        assert summary.source_results[0].success is True
        assert [c.attempt for c in configs] == [0, 1, 2]
        assert configs[0].user_agent == settings.default_user_agent
        assert configs[1].user_agent == USER_AGENT_POOL[0]
        assert configs[2].user_agent == USER_AGENT_POOL[1]

    async def test_forbidden_is_terminal_for_ordinary_domains(self, make_engine, fake_client) -> None:
        spec = _spec()
        fake_client.on(spec.url, ExtractionError("HTTP 403", status_code=403))

        summary = await make_engine().run_batch([spec])

        assert summary.source_results[0].attempts == 1
        assert summary.source_results[0].retryable is False

    async def test_unexpected_exception_is_contained(self, make_engine, fake_client) -> None:
        spec = _spec()
        other = _spec("other", "other.example.org")
        fake_client.on(spec.url, RuntimeError("kaboom"))
        fake_client.on(other.url, activity_extraction(1))

        summary = await make_engine().run_batch([spec, other])

        assert summary.source_results[0].error == "Unexpected error: kaboom"
        assert summary.source_results[0].retryable is False
        assert summary.source_results[1].success is True


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestGuards:
    async def test_short_content_is_terminal(self, make_engine, fake_client) -> None:
        spec = _spec()
        fake_client.on(spec.url, activity_extraction(2, content_length=120))

        summary = await make_engine().run_batch([spec])

        result = summary.source_results[0]
        assert result.success is False
        assert result.error == "Content too short (120 chars)"
        assert result.retryable is False
        assert result.attempts == 1

    async def test_per_source_timeout(self, make_engine, fake_client) -> None:
        slow = _spec(timeout_seconds=0.05)
        fake_client.on(slow.url, activity_extraction(1)).delay(slow.url, 1.0)

        summary = await make_engine().run_batch([slow])

        result = summary.source_results[0]
        assert result.success is False
        assert result.error == "Timed out after 0.05s"
        assert result.retryable is True
        assert result.attempts == 1

    async def test_batch_deadline_keeps_finished_results(self, make_engine, fake_client) -> None:
        fast = _spec("fast", "fast.example.org")
        slow = _spec("slow", "slow.example.org", timeout_seconds=30.0)
        fake_client.on(fast.url, activity_extraction(2))
        fake_client.on(slow.url, activity_extraction(2)).delay(slow.url, 5.0)

        summary = await make_engine(batch_deadline_seconds=0.1).run_batch([fast, slow])

        done, cut = summary.source_results
        assert done.success is True
        assert cut.success is False
        assert cut.error == "Batch deadline exceeded before the source finished"
        assert cut.retryable is True
        assert summary.total_activities == 2

    async def test_concurrency_is_bounded(self, make_engine, fake_client) -> None:
        specs = [_spec(f"src{n}", f"src{n}.example.org") for n in range(6)]
        for spec in specs:
            fake_client.on(spec.url, activity_extraction(1)).delay(spec.url, 0.02)

        summary = await make_engine(max_concurrent_extractions=2).run_batch(specs)

        assert summary.successful_sources == 6
        assert len(fake_client.calls) == 6
        assert fake_client.max_in_flight <= 2


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestSelection:
    async def test_filter_matches_domain_name_or_id(self, make_engine, fake_client) -> None:
        specs = [_spec("spl"), _spec("kcls", "kcls.example.org"), _spec("peps", "peps.org")]
        for spec in specs:
            fake_client.on(spec.url, activity_extraction(1))

        by_domain = await make_engine().run_batch(specs, source_filter="KCLS.example.org")
        by_id = await make_engine().run_batch(specs, source_filter="peps")

        assert [r.source_id for r in by_domain.source_results] == ["kcls"]
        assert [r.source_id for r in by_id.source_results] == ["peps"]

    async def test_disabled_sources_are_skipped(self, make_engine, fake_client) -> None:
        enabled = _spec("on", "on.example.org")
        disabled = _spec("off", "off.example.org", enabled=False)
        fake_client.on(enabled.url, activity_extraction(1))

        summary = await make_engine().run_batch([enabled, disabled])

        assert summary.total_sources == 1
        assert fake_client.calls_for(disabled.url) == []

    async def test_empty_batch(self, make_engine) -> None:
        summary = await make_engine().run_batch([], run_id="empty")

        assert summary.run_id == "empty"
        assert summary.total_sources == 0
        assert summary.source_results == []
        assert summary.average_quality_score == 0.0


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAggregation:
    async def test_duplicates_across_sources_and_known_keys(self, make_engine, fake_client) -> None:
        first = _spec("a", "a.example.org")
        second = _spec("b", "b.example.org")
        fake_client.on(
            first.url,
            _extraction(
                ActivityCandidateFactory.build(title="Story Hour"),
                ActivityCandidateFactory.build(title="Toddler Art"),
            ),
        )
        fake_client.on(second.url, _extraction(ActivityCandidateFactory.build(title="story hour ")))

        summary = await make_engine().run_batch(
            [first, second], known_keys={"toddler art|green lake library|2025-07-12"}
        )

        assert summary.total_activities == 3
        assert summary.duplicates_removed == 1
        assert [a.title for a in summary.unique_activities] == ["Story Hour", "Toddler Art"]
        assert summary.new_activities == 1

    async def test_average_quality_over_sources_with_activities(
        self, make_engine, fake_client
    ) -> None:
        full = _spec("full", "full.example.org")
        no_images = _spec("plain", "plain.example.org")
        empty = _spec("empty", "empty.example.org")
        fake_client.on(full.url, activity_extraction(2))
        fake_client.on(no_images.url, activity_extraction(2, images=[]))
        fake_client.on(empty.url, _extraction())

        summary = await make_engine().run_batch([full, no_images, empty])

        assert summary.successful_sources == 3
        assert summary.source_results[1].quality_score == 75.0
        assert summary.average_quality_score == 87.5
        assert summary.quality_breakdown["images"] == 2
        assert summary.quality_breakdown["detail_url"] == 4

    async def test_invalid_candidates_are_dropped(self, make_engine, fake_client) -> None:
        spec = _spec()
        fake_client.on(
            spec.url,
            _extraction(ActivityCandidateFactory.build(), {"title": ""}, {"description": "no title"}),
        )

        summary = await make_engine().run_batch([spec])

        result = summary.source_results[0]
        assert result.success is True
        assert result.activities_found == 1
        assert result.invalid_candidates == 2

    async def test_summary_dict_omits_payloads(self, make_engine, fake_client) -> None:
        spec = _spec()
        fake_client.on(spec.url, activity_extraction(2))

        summary = await make_engine().run_batch([spec], run_id="r1")
        data = summary.as_dict()

        assert data["run_id"] == "r1"
        assert data["total_activities"] == 2
        assert data["total_cost"] == 0.002
        assert "unique_activities" not in data
        assert "activities" not in data["source_results"][0]
