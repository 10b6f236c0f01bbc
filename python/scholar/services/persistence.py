"""Writes the outcome of a chat turn after the response has been sent.

Only messages absent from the pre-turn history are written (set difference
by message id), so replaying a turn, or a client resending its full
history, never duplicates rows. A failure here cannot reach the client any
more; it is logged as a durability warning and picked up by the
reconciliation task.
"""

import dataclasses
from collections.abc import Sequence
from datetime import timedelta

from starlette.concurrency import run_in_threadpool

from scholar.db.models import MessageRole, utcnow
from scholar.logging import get_logger
from scholar.services.conversation_store import ConversationStore
from scholar.services.llm import LLMUsage
from scholar.services.message_codec import ChatMessage

logger = get_logger(__name__)


def new_messages(
    prior: Sequence[ChatMessage],
    all_messages: Sequence[ChatMessage],
    usage: LLMUsage | None,
) -> list[ChatMessage]:
    """Messages of all_messages not in prior, ready to insert.

    Order of all_messages is kept and made explicit through strictly
    increasing created_at values. Assistant messages carry the turn's total
    token count when the provider reported one.
    """
    known = {m.id for m in prior}
    tokens = usage.total_tokens if usage is not None else None
    base = utcnow()

    result = []
    seen = set()
    for message in all_messages:
        if message.id in known or message.id in seen:
            continue
        seen.add(message.id)
        changes = {}
        if message.created_at is None:
            changes["created_at"] = base + timedelta(microseconds=len(result))
        if message.role == MessageRole.assistant and tokens is not None:
            changes["tokens_used"] = tokens
        result.append(dataclasses.replace(message, **changes) if changes else message)
    return result


class PersistenceFinalizer:
    def __init__(self, store: ConversationStore):
        self._store = store

    async def commit(
        self,
        conversation_id: str,
        prior: Sequence[ChatMessage],
        all_messages: Sequence[ChatMessage],
        usage: LLMUsage | None,
    ) -> bool:
        """Append the new messages and bump updated_at.

        Returns:
            True on success, False if the write failed (already logged).
        """
        pending = new_messages(prior, all_messages, usage)
        try:
            inserted = await run_in_threadpool(
                self._store.append_messages, conversation_id, pending
            )
            await run_in_threadpool(self._store.touch_updated_at, conversation_id)
        except Exception as e:
            logger.error(
                "durability_warning",
                conversation_id=conversation_id,
                message_ids=[m.id for m in pending],
                error_type=type(e).__name__,
                exc_info=True,
            )
            return False

        logger.info(
            "turn_persisted",
            conversation_id=conversation_id,
            inserted_count=len(inserted),
            skipped_count=len(pending) - len(inserted),
            tokens_used=usage.total_tokens if usage else None,
        )
        return True
