"""HTTP client for the external content-extraction collaborator.

The collaborator turns a page into structured data according to a JSON
schema.  Contract::

    POST {extraction_api_url}/v1/extract
    Authorization: Bearer {extraction_api_key}
    {"url": ..., "schema": {...}, "user_agent": ..., "headers": {...}}

    200 {"success": true,
         "data": {...},
         "metadata": {"content_length": int, "credits_used": int,
                      "tokens_used": int, "cost": float,
                      "processing_time_ms": int}}

Every failure (network error, timeout, HTTP error status, ``success:
false``) is raised as an unclassified :class:`ExtractionError`; the engine
decides whether it is transient or terminal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from activity_harvester.core.deduplication import domain_of
from activity_harvester.core.exceptions import ExtractionError
from activity_harvester.engine.policies import ClientConfig

logger = logging.getLogger(__name__)

_LIST_KEYS = ("events", "activities", "venues")


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ExtractionResult:
    """Structured output of one extraction call.

    Attributes:
        data: Raw structured payload as returned by the collaborator.
        events_count: Number of items found (see :func:`count_items`).
        content_length: Characters of page content the collaborator read.
        credits_used: Vendor credits consumed.
        tokens_used: Model tokens consumed.
        cost: Monetary cost of the call.
        processing_time_ms: Collaborator-side processing time.
    """

    data: dict[str, Any]
    events_count: int = 0
    content_length: int = 0
    credits_used: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    processing_time_ms: int = 0


@dataclass
class ActivityExtraction:
    """Candidate activities extracted for the engine."""

    activities: list[dict[str, Any]] = field(default_factory=list)
    content_length: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    processing_time_ms: int = 0


def count_items(data: Optional[dict[str, Any]]) -> int:
    """Length of the first item list in *data*, else 1 for non-empty data, else 0."""
    if not data:
        return 0
    for key in _LIST_KEYS:
        items = data.get(key)
        if isinstance(items, list):
            return len(items)
    return 1


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ExtractionClient:
    """Async client for the extraction collaborator.

    Args:
        base_url: Collaborator base URL, e.g. ``"http://extractor:8081"``.
        api_key: Bearer key; omitted from requests when empty.
        timeout: Default request timeout in seconds.
        default_user_agent: Identity used when the caller passes no config.
        client: Optional pre-built :class:`httpx.AsyncClient`.  When omitted,
            a client is created per call and closed afterwards.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 60.0,
        default_user_agent: str = "ActivityHarvester/1.0",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._default_user_agent = default_user_agent
        self._client = client

    @classmethod
    def from_settings(cls, settings: Any) -> ExtractionClient:
        return cls(
            base_url=settings.extraction_api_url,
            api_key=settings.extraction_api_key,
            timeout=settings.extraction_timeout_seconds,
            default_user_agent=settings.default_user_agent,
        )

    async def extract(
        self,
        url: str,
        schema: dict[str, Any],
        config: Optional[ClientConfig] = None,
    ) -> ExtractionResult:
        """Extract structured data from *url* according to *schema*.

        Args:
            url: Page to extract.
            schema: JSON schema the result must follow.
            config: Presentation parameters for this attempt.

        Returns:
            An :class:`ExtractionResult`.

        Raises:
            ExtractionError: On any failure.  ``status_code`` is set when the
                collaborator answered with an HTTP error status.
        """
        config = config or ClientConfig(
            user_agent=self._default_user_agent,
            timeout_seconds=self._timeout,
        )
        payload = {
            "url": url,
            "schema": schema,
            "user_agent": config.user_agent,
            "headers": config.header_dict(),
        }
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        domain = domain_of(url)

        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self._base_url}/v1/extract",
                    json=payload,
                    headers=headers,
                    timeout=config.timeout_seconds,
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        f"{self._base_url}/v1/extract",
                        json=payload,
                        headers=headers,
                        timeout=config.timeout_seconds,
                    )
        except httpx.TimeoutException as exc:
            logger.warning("extraction: timeout for %s", url)
            raise ExtractionError(f"Extraction timed out: {exc}", url=url, domain=domain) from exc
        except httpx.RequestError as exc:
            logger.warning("extraction: request error for %s: %s", url, exc)
            raise ExtractionError(
                f"Extraction request failed: {exc}", url=url, domain=domain
            ) from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.warning(
                "extraction: HTTP %d for %s: %s", response.status_code, url, detail
            )
            raise ExtractionError(
                f"Extraction failed with HTTP {response.status_code}: {detail}",
                url=url,
                domain=domain,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ExtractionError(
                "Extraction returned a non-JSON body", url=url, domain=domain
            ) from exc

        if not body.get("success", False):
            raise ExtractionError(
                body.get("error") or "Extraction reported failure",
                url=url,
                domain=domain,
            )

        data = body.get("data") or {}
        metadata = body.get("metadata") or {}
        result = ExtractionResult(
            data=data,
            events_count=count_items(data),
            content_length=int(metadata.get("content_length", 0) or 0),
            credits_used=int(metadata.get("credits_used", 0) or 0),
            tokens_used=int(metadata.get("tokens_used", 0) or 0),
            cost=float(metadata.get("cost", 0.0) or 0.0),
            processing_time_ms=int(metadata.get("processing_time_ms", 0) or 0),
        )
        logger.debug(
            "extraction: %s returned %d items (%d chars)",
            url,
            result.events_count,
            result.content_length,
        )
        return result

    async def extract_activities(self, url: str, config: ClientConfig) -> ActivityExtraction:
        """Extract candidate activities from *url* with the activities schema."""
        from activity_harvester.review.schemas import ActivitiesSchema  # noqa: PLC0415

        schema = ActivitiesSchema()
        result = await self.extract(url, schema.document(), config)
        items = result.data.get(schema.list_key) or []
        return ActivityExtraction(
            activities=[item for item in items if isinstance(item, dict)],
            content_length=result.content_length,
            tokens_used=result.tokens_used,
            cost=result.cost,
            processing_time_ms=result.processing_time_ms,
        )


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)[:200]
    return str(body)[:200]
