"""Periodic scan for turns whose reply never reached the database.

A turn persists its user message and assistant reply together, after the
stream ends. A write that fails there (or a stream that was cut off) leaves
a conversation with more user messages than assistant replies. Nothing is
rewritten here: the gap is reported, and the client's retry of the same
message id regenerates the reply through the normal chat path.

Conversations touched within the grace window are skipped so turns still
streaming are not reported.
"""

from datetime import datetime, timedelta

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from scholar.celery import celery_app
from scholar.config import get_settings
from scholar.db.models import Conversation, Message, MessageRole, utcnow
from scholar.db.session import get_session_factory
from scholar.logging import clear_task_context, configure_task_logging, get_logger

logger = get_logger(__name__)


def find_unpaired_conversations(
    db: Session,
    *,
    grace_minutes: int,
    now: datetime | None = None,
) -> list[tuple[str, int, int]]:
    """Return (conversation_id, user_count, assistant_count) for every gap.

    Only conversations whose updated_at is older than the grace window are
    considered. Rows are ordered by conversation id.
    """
    threshold = (now or utcnow()) - timedelta(minutes=grace_minutes)

    user_count = func.sum(case((Message.role == MessageRole.user.value, 1), else_=0))
    assistant_count = func.sum(case((Message.role == MessageRole.assistant.value, 1), else_=0))

    stmt = (
        select(Conversation.id, user_count, assistant_count)
        .join(Message, Message.conversation_id == Conversation.id)
        .where(Conversation.updated_at < threshold)
        .group_by(Conversation.id)
        .having(user_count != assistant_count)
        .order_by(Conversation.id)
    )
    return [(row[0], int(row[1]), int(row[2])) for row in db.execute(stmt).all()]


def run_reconciliation(grace_minutes: int | None = None) -> list[str]:
    """Scan once and log each gap. Returns the affected conversation ids."""
    if grace_minutes is None:
        grace_minutes = get_settings().reconcile_grace_minutes

    session_factory = get_session_factory()
    db = session_factory()
    try:
        gaps = find_unpaired_conversations(db, grace_minutes=grace_minutes)
    finally:
        db.close()

    for conversation_id, users, assistants in gaps:
        logger.warning(
            "reconcile_gap_detected",
            conversation_id=conversation_id,
            user_messages=users,
            assistant_messages=assistants,
        )

    logger.info("reconcile_completed", gaps=len(gaps), grace_minutes=grace_minutes)
    return [conversation_id for conversation_id, _, _ in gaps]


@celery_app.task(bind=True, max_retries=0, name="reconcile_conversations")
def reconcile_conversations(self, request_id: str | None = None) -> list[str]:
    """Beat entrypoint for run_reconciliation."""
    configure_task_logging(
        request_id=request_id,
        task_name="reconcile_conversations",
        task_id=self.request.id,
    )
    try:
        return run_reconciliation()
    finally:
        clear_task_context()
