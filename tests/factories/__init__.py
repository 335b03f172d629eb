"""Factory Boy factories and in-memory collaborators for test data generation.

Available factories
-------------------
SourceFactory               - Source submission row (``pending_analysis``)
SourceAnalysisFactory       - completed analysis with a weekly recommendation
SourceConfigFactory         - active scraping config (daily frequency)
ScrapingTaskFactory         - scheduled incremental task
ScrapingExecutionFactory    - completed execution record
AdminEventFactory           - pending admin event holding one raw events item
ActivityFactory             - published activity row
ActivityCandidateFactory    - extraction candidate dict (every quality field set)
RawEventItemFactory         - raw ``events`` item as returned by extraction

In-memory collaborators
-----------------------
InMemorySourceRepository, InMemoryTaskRepository, InMemoryExecutionRepository,
InMemoryActivityRepository, InMemoryAdminEventRepository, FakeExtractionClient
"""

from __future__ import annotations

from tests.factories.extraction import FakeExtractionClient, activity_extraction, extraction_result
from tests.factories.models import (
    FIXED_NOW,
    ActivityFactory,
    AdminEventFactory,
    FrozenClock,
    ScrapingExecutionFactory,
    ScrapingTaskFactory,
    SourceAnalysisFactory,
    SourceConfigFactory,
    SourceFactory,
)
from tests.factories.payloads import ActivityCandidateFactory, RawEventItemFactory
from tests.factories.repositories import (
    InMemoryActivityRepository,
    InMemoryAdminEventRepository,
    InMemoryExecutionRepository,
    InMemorySourceRepository,
    InMemoryTaskRepository,
)

__all__ = [
    "FIXED_NOW",
    "ActivityCandidateFactory",
    "ActivityFactory",
    "AdminEventFactory",
    "FakeExtractionClient",
    "FrozenClock",
    "InMemoryActivityRepository",
    "InMemoryAdminEventRepository",
    "InMemoryExecutionRepository",
    "InMemorySourceRepository",
    "InMemoryTaskRepository",
    "RawEventItemFactory",
    "ScrapingExecutionFactory",
    "ScrapingTaskFactory",
    "SourceAnalysisFactory",
    "SourceConfigFactory",
    "SourceFactory",
    "activity_extraction",
    "extraction_result",
]
