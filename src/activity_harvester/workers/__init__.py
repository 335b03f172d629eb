"""Celery workers: app, beat schedule and the periodic orchestration tasks."""
