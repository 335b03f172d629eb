"""ORM models package.

All models are imported here so that ``Base.metadata`` is fully populated
whenever this package is imported (table creation and the retention service
rely on it).
"""

from activity_harvester.core.models.activities import Activity
from activity_harvester.core.models.admin_events import AdminEvent
from activity_harvester.core.models.base import Base, TimestampMixin
from activity_harvester.core.models.operations import ScrapingExecution, ScrapingTask
from activity_harvester.core.models.sources import Source, SourceAnalysis, SourceConfig

__all__ = [
    "Base",
    "TimestampMixin",
    # Source Management
    "Source",
    "SourceAnalysis",
    "SourceConfig",
    # Scraping Operations
    "ScrapingTask",
    "ScrapingExecution",
    # Business Entities
    "Activity",
    # Review queue
    "AdminEvent",
]
