"""Celery tasks for Scholar.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery - all tasks must be imported in this module.

Usage in worker:
    from scholar.tasks import reconcile_conversations
"""

from scholar.tasks.reconcile_conversations import reconcile_conversations

__all__ = ["reconcile_conversations"]
