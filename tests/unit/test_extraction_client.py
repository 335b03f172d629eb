"""Unit tests for engine/extraction_client.py.

Tests cover:
- count_items() over list-bearing, flat, and empty payloads
- extract(): request body, auth header, metadata parsing
- extract(): HTTP error statuses, timeouts, transport failures, success=false
- extract_activities(): activities list extraction, non-dict items dropped
- A shared httpx.AsyncClient is reused when provided

HTTP is mocked with respx; no extraction service is contacted.
"""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from activity_harvester.core.exceptions import ExtractionError
from activity_harvester.engine.extraction_client import ExtractionClient, count_items
from activity_harvester.engine.policies import ClientConfig

_BASE = "http://extractor.test"
_PAGE = "https://www.seattleschild.com/things-to-do"


def _client(**kwargs) -> ExtractionClient:
    return ExtractionClient(base_url=f"{_BASE}/", api_key=kwargs.pop("api_key", "sk-test"), **kwargs)


def _ok(data: dict, **metadata) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "data": data, "metadata": metadata})


# ---------------------------------------------------------------------------
# count_items
# ---------------------------------------------------------------------------


class TestCountItems:
    @pytest.mark.parametrize(
        "data,expected",
        [
            ({"events": [{}, {}, {}]}, 3),
            ({"activities": []}, 0),
            ({"venues": [{"name": "Pool"}]}, 1),
            ({"title": "Single page"}, 1),
            ({}, 0),
            (None, 0),
        ],
    )
    def test_count_items(self, data, expected) -> None:
        assert count_items(data) == expected


# ---------------------------------------------------------------------------
# extract(): success
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestExtractSuccess:
    async def test_posts_url_schema_and_identity(self) -> None:
        config = ClientConfig(
            user_agent="Mozilla/5.0 (Test)",
            timeout_seconds=12.0,
            headers=(("Accept-Language", "en-US"),),
        )
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/v1/extract").mock(return_value=_ok({"events": []}))
            await _client().extract(_PAGE, {"type": "object"}, config)

        request = route.calls.last.request
        body = json.loads(request.content)
        assert body == {
            "url": _PAGE,
            "schema": {"type": "object"},
            "user_agent": "Mozilla/5.0 (Test)",
            "headers": {"Accept-Language": "en-US"},
        }
        assert request.headers["Authorization"] == "Bearer sk-test"

    async def test_omits_auth_header_without_key(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/v1/extract").mock(return_value=_ok({}))
            await _client(api_key="").extract(_PAGE, {})

        assert "Authorization" not in route.calls.last.request.headers

    async def test_parses_data_and_metadata(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/v1/extract").mock(
                return_value=_ok(
                    {"events": [{"title": "A"}, {"title": "B"}]},
                    content_length=5120,
                    credits_used=2,
                    tokens_used=900,
                    cost=0.0042,
                    processing_time_ms=830,
                )
            )
            result = await _client().extract(_PAGE, {})

        assert result.events_count == 2
        assert result.content_length == 5120
        assert result.credits_used == 2
        assert result.tokens_used == 900
        assert result.cost == pytest.approx(0.0042)
        assert result.processing_time_ms == 830

    async def test_missing_metadata_defaults_to_zero(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/v1/extract").mock(
                return_value=httpx.Response(200, json={"success": True, "data": None})
            )
            result = await _client().extract(_PAGE, {})

        assert result.data == {}
        assert result.events_count == 0
        assert result.content_length == 0
        assert result.cost == 0.0

    async def test_uses_shared_client_when_provided(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/v1/extract").mock(return_value=_ok({}))
            async with httpx.AsyncClient() as http_client:
                client = _client(client=http_client)
                await client.extract(_PAGE, {})
                await client.extract(_PAGE, {})

        assert route.call_count == 2


# ---------------------------------------------------------------------------
# extract(): failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestExtractFailures:
    async def test_http_error_status_carries_status_and_detail(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/v1/extract").mock(
                return_value=httpx.Response(403, json={"error": "Blocked by site"})
            )
            with pytest.raises(ExtractionError) as exc_info:
                await _client().extract(_PAGE, {})

        error = exc_info.value
        assert str(error) == "Extraction failed with HTTP 403: Blocked by site"
        assert error.status_code == 403
        assert error.url == _PAGE
        assert error.domain == "seattleschild.com"

    async def test_http_error_with_text_body(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/v1/extract").mock(return_value=httpx.Response(502, text="Bad gateway"))
            with pytest.raises(ExtractionError, match="HTTP 502: Bad gateway"):
                await _client().extract(_PAGE, {})

    async def test_timeout(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/v1/extract").mock(side_effect=httpx.ReadTimeout("read timed out"))
            with pytest.raises(ExtractionError, match="^Extraction timed out") as exc_info:
                await _client().extract(_PAGE, {})

        assert exc_info.value.status_code is None

    async def test_transport_failure(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/v1/extract").mock(side_effect=httpx.ConnectError("connection refused"))
            with pytest.raises(ExtractionError, match="^Extraction request failed"):
                await _client().extract(_PAGE, {})

    async def test_reported_failure_uses_body_error(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/v1/extract").mock(
                return_value=httpx.Response(
                    200, json={"success": False, "error": "getaddrinfo ENOTFOUND"}
                )
            )
            with pytest.raises(ExtractionError, match="getaddrinfo ENOTFOUND"):
                await _client().extract(_PAGE, {})

    async def test_reported_failure_without_message(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/v1/extract").mock(
                return_value=httpx.Response(200, json={"success": False})
            )
            with pytest.raises(ExtractionError, match="Extraction reported failure"):
                await _client().extract(_PAGE, {})

    async def test_non_json_body(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/v1/extract").mock(return_value=httpx.Response(200, text="<html>"))
            with pytest.raises(ExtractionError, match="non-JSON"):
                await _client().extract(_PAGE, {})


# ---------------------------------------------------------------------------
# extract_activities()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestExtractActivities:
    async def test_returns_dict_items_and_usage(self) -> None:
        config = ClientConfig(user_agent="ActivityHarvester/1.0", timeout_seconds=30.0)
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/v1/extract").mock(
                return_value=_ok(
                    {"activities": [{"title": "Toddler Swim"}, "stray text", {"title": "Art"}]},
                    content_length=2400,
                    tokens_used=300,
                    cost=0.001,
                )
            )
            extraction = await _client().extract_activities(_PAGE, config)

        assert [a["title"] for a in extraction.activities] == ["Toddler Swim", "Art"]
        assert extraction.content_length == 2400
        assert extraction.tokens_used == 300
        schema = json.loads(route.calls.last.request.content)["schema"]
        assert "activities" in schema["properties"]

    async def test_missing_list_yields_no_activities(self) -> None:
        config = ClientConfig(user_agent="ActivityHarvester/1.0", timeout_seconds=30.0)
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/v1/extract").mock(return_value=_ok({"title": "About us"}))
            extraction = await _client().extract_activities(_PAGE, config)

        assert extraction.activities == []
