"""Tests for ConversationStore: race-safe creation, ownership, append-only messages."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from scholar.db.models import Conversation, Message, MessageRole
from scholar.errors import ApiErrorCode, ForbiddenError, NotFoundError
from scholar.services.conversation_store import ConversationDefaults, ConversationStore
from scholar.services.message_codec import text_message

DEFAULTS = ConversationDefaults(title="Cells", model="qwen2.5:1.5b", temperature=0.7)


@pytest.fixture
def store(session_factory) -> ConversationStore:
    return ConversationStore(session_factory)


def _count_messages(db: Session, conversation_id: str) -> int:
    return db.scalar(
        select(func.count()).select_from(Message).where(Message.conversation_id == conversation_id)
    )


class TestResolveOrCreate:
    def test_creates_when_absent(self, store):
        resolved = store.resolve_or_create("c1", "user-a", DEFAULTS)

        assert resolved.is_new is True
        assert resolved.messages == []
        assert resolved.conversation.title == "Cells"
        assert resolved.conversation.user_id == "user-a"

    def test_second_call_returns_existing_and_ignores_defaults(self, store):
        store.resolve_or_create("c1", "user-a", DEFAULTS)

        other = ConversationDefaults(title="Other", model="llama3", temperature=1.5)
        resolved = store.resolve_or_create("c1", "user-a", other)

        assert resolved.is_new is False
        assert resolved.conversation.title == "Cells"
        assert resolved.conversation.model == "qwen2.5:1.5b"

    def test_other_owner_forbidden(self, store):
        store.resolve_or_create("c1", "user-a", DEFAULTS)

        with pytest.raises(ForbiddenError) as exc_info:
            store.resolve_or_create("c1", "user-b", DEFAULTS)

        assert exc_info.value.code == ApiErrorCode.E_CONVERSATION_FORBIDDEN

    def test_lost_insert_race_returns_winner(self, engine, store, db_session):
        """A create that collides with a concurrent insert re-reads the winner's row."""
        store.resolve_or_create("c1", "user-a", DEFAULTS)

        class RaceLosingSession(Session):
            hidden = False

            def get(self, entity, ident, **kwargs):
                # The first lookup misses, as if the winner had not committed yet
                if entity is Conversation and not RaceLosingSession.hidden:
                    RaceLosingSession.hidden = True
                    return None
                return super().get(entity, ident, **kwargs)

        racing_store = ConversationStore(
            sessionmaker(bind=engine, class_=RaceLosingSession, expire_on_commit=False)
        )
        loser_defaults = ConversationDefaults(title="Loser", model="m", temperature=0.1)

        resolved = racing_store.resolve_or_create("c1", "user-a", loser_defaults)

        assert resolved.is_new is False
        assert resolved.conversation.title == "Cells"
        assert db_session.scalar(select(func.count()).select_from(Conversation)) == 1

    def test_dangling_note_reference_dropped(self, store, db_session):
        defaults = ConversationDefaults(
            title="Cells", model="qwen2.5:1.5b", temperature=0.7, note_id="note-gone"
        )

        resolved = store.resolve_or_create("c1", "user-a", defaults)

        assert resolved.is_new is True
        assert resolved.conversation.note_id is None
        stored = db_session.get(Conversation, "c1")
        assert stored is not None
        assert stored.note_id is None
        assert stored.title == "Cells"

    def test_find_missing_returns_none(self, store):
        assert store.find("nope", "user-a") is None


class TestAppendMessages:
    def test_appends_in_order(self, store, db_session):
        store.resolve_or_create("c1", "user-a", DEFAULTS)
        base = datetime(2026, 1, 1, tzinfo=UTC)
        messages = [
            text_message("m1", MessageRole.user, "q", created_at=base),
            text_message("a1", MessageRole.assistant, "a", created_at=base + timedelta(seconds=1)),
        ]

        inserted = store.append_messages("c1", messages)

        assert inserted == ["m1", "a1"]
        resolved = store.find("c1", "user-a")
        assert [m.id for m in resolved.messages] == ["m1", "a1"]

    def test_existing_ids_skipped(self, store, db_session):
        store.resolve_or_create("c1", "user-a", DEFAULTS)
        store.append_messages(
            "c1",
            [
                text_message("m1", MessageRole.user, "q"),
                text_message("a1", MessageRole.assistant, "a"),
            ],
        )

        inserted = store.append_messages(
            "c1",
            [
                text_message("m1", MessageRole.user, "q"),
                text_message("a1", MessageRole.assistant, "a"),
                text_message("m2", MessageRole.user, "again"),
            ],
        )

        assert inserted == ["m2"]
        assert _count_messages(db_session, "c1") == 3

    def test_empty_batch(self, store):
        assert store.append_messages("c1", []) == []

    def test_touch_updated_at(self, store, db_session):
        store.resolve_or_create("c1", "user-a", DEFAULTS)
        db_session.execute(
            Conversation.__table__.update()
            .where(Conversation.id == "c1")
            .values(updated_at=datetime(2020, 1, 1, tzinfo=UTC))
        )
        db_session.commit()

        store.touch_updated_at("c1")

        db_session.expire_all()
        updated = db_session.get(Conversation, "c1").updated_at
        assert updated.year > 2020


class TestReadPath:
    def _add(self, db: Session, cid: str, user_id: str, minutes_ago: int, **kwargs) -> None:
        when = datetime.now(UTC) - timedelta(minutes=minutes_ago)
        db.add(
            Conversation(
                id=cid,
                user_id=user_id,
                title=cid,
                model="m",
                temperature=0.7,
                created_at=when,
                updated_at=when,
                **kwargs,
            )
        )
        db.commit()

    def test_list_most_recent_first_with_total(self, store, db_session):
        self._add(db_session, "old", "user-a", 30)
        self._add(db_session, "new", "user-a", 1)
        self._add(db_session, "mid", "user-a", 10)
        self._add(db_session, "foreign", "user-b", 0)

        rows, total = store.list_conversations("user-a", limit=2)

        assert [c.id for c in rows] == ["new", "mid"]
        assert total == 3

    def test_list_filters_by_course(self, store, db_session):
        from tests.helpers import create_course

        course = create_course(db_session)
        self._add(db_session, "in-course", "user-a", 5, course_id=course.id)
        self._add(db_session, "loose", "user-a", 1)

        rows, total = store.list_conversations("user-a", course_id=course.id)

        assert [c.id for c in rows] == ["in-course"]
        assert total == 1

    def test_get_foreign_conversation_masked_as_not_found(self, store, db_session):
        self._add(db_session, "c1", "user-b", 1)

        with pytest.raises(NotFoundError) as exc_info:
            store.get_conversation("c1", "user-a")

        assert exc_info.value.code == ApiErrorCode.E_CONVERSATION_NOT_FOUND
