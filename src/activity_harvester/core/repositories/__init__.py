"""Repository interfaces and their SQLAlchemy implementations."""

from activity_harvester.core.repositories.base import (
    ActivityRepository,
    AdminEventRepository,
    ExecutionRepository,
    SourceRepository,
    TaskRepository,
)
from activity_harvester.core.repositories.sql import (
    SqlActivityRepository,
    SqlAdminEventRepository,
    SqlExecutionRepository,
    SqlSourceRepository,
    SqlTaskRepository,
)

__all__ = [
    "ActivityRepository",
    "AdminEventRepository",
    "ExecutionRepository",
    "SourceRepository",
    "TaskRepository",
    "SqlActivityRepository",
    "SqlAdminEventRepository",
    "SqlExecutionRepository",
    "SqlSourceRepository",
    "SqlTaskRepository",
]
