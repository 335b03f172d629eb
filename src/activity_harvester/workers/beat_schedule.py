"""Celery Beat periodic task schedule.

Applied to ``celery_app.conf.beat_schedule`` in ``celery_app.py``.  Times are
UTC.

+-------------------------+------------------+--------------------------------+
| Entry                   | Schedule         | Purpose                        |
+=========================+==================+================================+
| run_due_tasks           | Every 15 minutes | Run every due scraping task    |
|                         |                  | through the execution engine.  |
+-------------------------+------------------+--------------------------------+
| schedule_active_sources | Hourly           | Make sure each active source   |
|                         |                  | has a pending incremental task.|
+-------------------------+------------------+--------------------------------+
| purge_expired_records   | 04:00 UTC        | Delete tasks and executions    |
|                         |                  | past their retention horizon.  |
+-------------------------+------------------+--------------------------------+
"""

from __future__ import annotations

from celery.schedules import crontab

beat_schedule: dict[str, dict] = {  # type: ignore[type-arg]
    "run_due_tasks": {
        "task": "activity_harvester.workers.tasks.run_due_tasks",
        "schedule": crontab(minute="*/15"),
        "options": {
            "queue": "celery",
            # A tick that has not started by the next one is redundant.
            "expires": 840,
        },
    },
    "schedule_active_sources": {
        "task": "activity_harvester.workers.tasks.schedule_active_sources",
        "schedule": crontab(minute=5),
        "options": {
            "queue": "celery",
            "expires": 3_000,
        },
    },
    "purge_expired_records": {
        "task": "activity_harvester.workers.tasks.purge_expired_records",
        "schedule": crontab(hour=4, minute=0),
        "options": {
            "queue": "celery",
            "expires": 3_600,
        },
    },
}
