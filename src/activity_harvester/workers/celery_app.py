"""Celery application for the activity harvester.

Configures the broker, result backend, serialization and the Beat schedule.
All configuration values are sourced from ``Settings``.

Usage (starting a worker)::

    celery -A activity_harvester.workers.celery_app worker --loglevel=info

Usage (starting the Beat scheduler)::

    celery -A activity_harvester.workers.celery_app beat --loglevel=info
"""

from __future__ import annotations

from celery import Celery
from celery.signals import task_postrun, worker_process_init
from dotenv import load_dotenv
import structlog

load_dotenv()

from activity_harvester.config.settings import get_settings  # noqa: E402
from activity_harvester.core.logging_config import configure_logging  # noqa: E402

logger = structlog.get_logger(__name__)
settings = get_settings()
configure_logging(settings.log_level)

#: The global Celery application instance.
celery_app = Celery(
    "activity_harvester",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["activity_harvester.workers.tasks"],
)

# ---------------------------------------------------------------------------
# Core configuration
# ---------------------------------------------------------------------------

celery_app.conf.update(
    # JSON only; task arguments and return values must be JSON-serializable.
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Acknowledge after completion so a crashed worker's task is redelivered.
    task_acks_late=True,
    # A due-task batch can run for minutes; do not let them pile up.
    worker_prefetch_multiplier=1,
    result_expires=86_400,
    task_soft_time_limit=1_800,
    task_time_limit=3_600,
    beat_schedule_filename="celerybeat-schedule",
)

from activity_harvester.workers.beat_schedule import beat_schedule  # noqa: E402

celery_app.conf.beat_schedule = beat_schedule


# ---------------------------------------------------------------------------
# Connection pool disposal
# ---------------------------------------------------------------------------
@worker_process_init.connect
def _dispose_engine_on_fork(**kwargs: object) -> None:  # noqa: ARG001
    """Pooled asyncpg connections belong to the parent process."""
    from activity_harvester.core.database import dispose_engine  # noqa: PLC0415

    dispose_engine()


@task_postrun.connect
def _dispose_engine_after_task(**kwargs: object) -> None:
    """Release connections bound to the finished task's event loop."""
    from activity_harvester.core.database import dispose_engine  # noqa: PLC0415

    try:
        dispose_engine()
    except Exception:  # noqa: BLE001
        logger.warning(
            "engine_dispose_failed", task=getattr(kwargs.get("sender"), "name", None), exc_info=True
        )
