"""Activity Harvester.

Turns submitted website URLs into scheduled, executed, deduplicated and
quality-scored extraction tasks, and routes the extracted records through a
human review gate before they are published as activities.
"""

__version__ = "0.1.0"
