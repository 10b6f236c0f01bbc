"""Celery application configuration.

Central configuration for Celery used by the worker and the beat scheduler.

Usage:
    from scholar.celery import celery_app

    # Run the reconciler once by hand:
    celery_app.send_task("reconcile_conversations")
"""

from celery import Celery

from scholar.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery("scholar")

# Configure from settings
celery_app.conf.broker_url = settings.effective_celery_broker_url
celery_app.conf.result_backend = settings.effective_celery_result_backend

# Task configuration
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

# Default queue
celery_app.conf.task_default_queue = "default"

# Periodic jobs (celery beat)
celery_app.conf.beat_schedule = {
    "reconcile-conversations": {
        "task": "reconcile_conversations",
        "schedule": float(settings.reconcile_interval_s),
    },
}

# For testing: allow eager mode (synchronous execution)
celery_app.conf.task_always_eager = False

