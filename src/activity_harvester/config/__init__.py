"""Configuration package for Activity Harvester.

Re-exports the settings entry points so that callers can write::

    from activity_harvester.config import get_settings
"""

from __future__ import annotations

from activity_harvester.config.settings import QualityWeights, Settings, get_settings

__all__ = [
    "QualityWeights",
    "Settings",
    "get_settings",
]
