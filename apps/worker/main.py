"""Celery worker entrypoint.

Run with:
    celery -A apps.worker.main:celery_app worker --loglevel=info
    celery -A apps.worker.main:celery_app beat --loglevel=info

This module imports the Celery app and explicitly registers all tasks.
Task definitions are in scholar.tasks package - no autodiscovery.

Logging Convention:
- All task log entries include request_id, task_name, task_id when available
- Use configure_task_logging() at the start of each task to set up context
"""

from celery.signals import worker_process_init

from scholar.celery import celery_app
from scholar.logging import configure_logging, get_logger

# Import tasks to register them with Celery
from scholar.tasks import reconcile_conversations  # noqa: F401


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    """Configure structlog when the worker process starts."""
    configure_logging()
    logger = get_logger(__name__)
    logger.info("celery_worker_started", queue="default")


# Command: celery -A apps.worker.main:celery_app worker ...
__all__ = ["celery_app"]
