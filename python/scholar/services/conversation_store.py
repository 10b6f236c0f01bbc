"""Conversation and message persistence.

Race-safe, idempotent access to the conversations and messages tables:
- A conversation id is client supplied and is the idempotency key for
  creation. Concurrent creates converge on one row: the loser of the
  primary-key race rolls back and re-reads the winner's row.
- Messages are append-only. Appending ids that already exist is a no-op,
  so retried or duplicated submissions never produce duplicate rows.

All methods are synchronous and open their own short-lived session; async
callers run them through run_in_threadpool.
"""

import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass, field

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from scholar.db.models import Conversation, Message, utcnow
from scholar.errors import ApiErrorCode, ForbiddenError, InvalidRequestError, NotFoundError
from scholar.logging import get_logger
from scholar.services.message_codec import ChatMessage, decode_message, encode_message

logger = get_logger(__name__)

DEFAULT_LIST_LIMIT = 5
MAX_LIST_LIMIT = 100


@dataclass(frozen=True)
class ConversationDefaults:
    """Values a conversation is created with. Ignored when it already exists."""

    title: str
    model: str
    temperature: float
    note_id: str | None = None
    course_id: str | None = None
    system_prompt: str | None = None


@dataclass
class ResolvedConversation:
    conversation: Conversation
    is_new: bool
    messages: list[ChatMessage] = field(default_factory=list)


class ConversationStore:
    """Reads and writes conversations through a session factory."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    def find(self, conversation_id: str, user_id: str) -> ResolvedConversation | None:
        """Look up a conversation without creating it.

        Raises:
            ForbiddenError: E_CONVERSATION_FORBIDDEN if another user owns it.
        """
        with self._session_factory() as db:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                return None
            _check_owner(conversation, user_id)
            return ResolvedConversation(
                conversation=conversation,
                is_new=False,
                messages=_load_messages(db, conversation_id),
            )

    def resolve_or_create(
        self,
        conversation_id: str,
        user_id: str,
        defaults: ConversationDefaults,
    ) -> ResolvedConversation:
        """Return the conversation with its ordered history, creating it if absent.

        Raises:
            ForbiddenError: E_CONVERSATION_FORBIDDEN if another user owns it.
            InvalidRequestError: If the row can neither be inserted nor found.

        A note or course reference that no longer exists is dropped and the
        insert retried, so a vanished attachment never blocks the chat.
        """
        with self._session_factory() as db:
            existing = db.get(Conversation, conversation_id)
            if existing is not None:
                _check_owner(existing, user_id)
                return ResolvedConversation(
                    conversation=existing,
                    is_new=False,
                    messages=_load_messages(db, conversation_id),
                )

            now = utcnow()
            conversation = Conversation(
                id=conversation_id,
                user_id=user_id,
                title=defaults.title,
                model=defaults.model,
                temperature=defaults.temperature,
                note_id=defaults.note_id,
                course_id=defaults.course_id,
                system_prompt=defaults.system_prompt,
                created_at=now,
                updated_at=now,
            )
            db.add(conversation)
            try:
                db.commit()
            except IntegrityError:
                # Lost race: another request created it; fetch the existing one
                db.rollback()
                existing = db.get(Conversation, conversation_id)
                if existing is not None:
                    _check_owner(existing, user_id)
                    logger.info("conversation_create_race_lost")
                    return ResolvedConversation(
                        conversation=existing,
                        is_new=False,
                        messages=_load_messages(db, conversation_id),
                    )
                if not (defaults.note_id or defaults.course_id):
                    logger.error("conversation_create_failed")
                    raise InvalidRequestError(
                        ApiErrorCode.E_INVALID_REQUEST, "Conversation could not be created"
                    ) from None
            else:
                logger.info("conversation_created", model=defaults.model)
                return ResolvedConversation(conversation=conversation, is_new=True)

        # The note or course went away after the context lookup
        logger.warning(
            "conversation_context_dropped",
            note_id=defaults.note_id,
            course_id=defaults.course_id,
        )
        return self.resolve_or_create(
            conversation_id,
            user_id,
            dataclasses.replace(defaults, note_id=None, course_id=None),
        )

    def touch_updated_at(self, conversation_id: str) -> None:
        with self._session_factory() as db:
            db.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(updated_at=utcnow())
            )
            db.commit()

    def list_conversations(
        self,
        user_id: str,
        *,
        course_id: str | None = None,
        note_id: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> tuple[list[Conversation], int]:
        """List the viewer's conversations, most recently updated first.

        Returns:
            (conversations, total) where total ignores the limit.
        """
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        filters = [Conversation.user_id == user_id]
        if course_id is not None:
            filters.append(Conversation.course_id == course_id)
        if note_id is not None:
            filters.append(Conversation.note_id == note_id)

        with self._session_factory() as db:
            total = db.scalar(select(func.count()).select_from(Conversation).where(*filters))
            rows = db.scalars(
                select(Conversation)
                .where(*filters)
                .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
                .limit(limit)
            ).all()
            return list(rows), int(total or 0)

    def get_conversation(self, conversation_id: str, user_id: str) -> ResolvedConversation:
        """Read path: a missing or foreign conversation is masked as not found."""
        with self._session_factory() as db:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None or conversation.user_id != user_id:
                raise NotFoundError(
                    ApiErrorCode.E_CONVERSATION_NOT_FOUND, "Conversation not found"
                )
            return ResolvedConversation(
                conversation=conversation,
                is_new=False,
                messages=_load_messages(db, conversation_id),
            )

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def append_messages(self, conversation_id: str, messages: Sequence[ChatMessage]) -> list[str]:
        """Insert the messages whose ids are not stored yet.

        The batch is written in one transaction. If a concurrent writer
        inserts one of the ids in between, the batch is retried row by row
        and the duplicate is skipped.

        Returns:
            Ids actually inserted, in input order.
        """
        if not messages:
            return []

        with self._session_factory() as db:
            ids = [m.id for m in messages]
            stored = dict(
                db.execute(
                    select(Message.id, Message.conversation_id).where(Message.id.in_(ids))
                ).all()
            )
            for message_id, owner in stored.items():
                if owner != conversation_id:
                    logger.warning(
                        "message_id_conflict",
                        message_id=message_id,
                        stored_conversation_id=owner,
                    )

            pending = [m for m in messages if m.id not in stored]
            if not pending:
                return []

            db.add_all([_to_row(conversation_id, m) for m in pending])
            try:
                db.commit()
                return [m.id for m in pending]
            except IntegrityError:
                db.rollback()
                logger.info("append_messages_batch_conflict", batch_size=len(pending))

            inserted = []
            for message in pending:
                db.add(_to_row(conversation_id, message))
                try:
                    db.commit()
                    inserted.append(message.id)
                except IntegrityError:
                    db.rollback()
                    logger.info("append_messages_duplicate_skipped", message_id=message.id)
            return inserted


def _check_owner(conversation: Conversation, user_id: str) -> None:
    if conversation.user_id != user_id:
        logger.warning("conversation_owner_mismatch")
        raise ForbiddenError(
            ApiErrorCode.E_CONVERSATION_FORBIDDEN,
            "Conversation belongs to another user",
        )


def _load_messages(db: Session, conversation_id: str) -> list[ChatMessage]:
    rows = db.scalars(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
    ).all()
    return [decode_message(row) for row in rows]


def _to_row(conversation_id: str, message: ChatMessage) -> Message:
    return Message(conversation_id=conversation_id, **encode_message(message))
