"""Database smoke tests.

Verifies the engine setup and the table constraints the chat subsystem
relies on.
"""

import json

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scholar.db.engine import create_db_engine
from scholar.db.models import Conversation, Message


def _conversation(**overrides) -> Conversation:
    fields = {
        "id": "conv-db",
        "user_id": "user-db",
        "title": "Untitled",
        "model": "qwen2.5:1.5b",
        "temperature": 0.7,
    }
    fields.update(overrides)
    return Conversation(**fields)


class TestDatabaseConnectivity:
    """Tests for basic database operations."""

    def test_session_opens_and_executes_query(self, db_session: Session):
        """Database session can execute a simple query."""
        result = db_session.execute(text("SELECT 1 AS value"))
        row = result.fetchone()

        assert row is not None
        assert row[0] == 1

    def test_sqlite_engine_enforces_foreign_keys(self):
        engine = create_db_engine("sqlite+pysqlite://")
        try:
            with engine.connect() as conn:
                assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
        finally:
            engine.dispose()


class TestConstraints:
    def test_temperature_out_of_range_rejected(self, db_session: Session):
        db_session.add(_conversation(temperature=2.5))

        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_unknown_role_rejected(self, db_session: Session):
        db_session.add(_conversation())
        db_session.commit()
        db_session.add(
            Message(
                id="msg-bad-role",
                conversation_id="conv-db",
                role="tool",
                content=json.dumps([]),
            )
        )

        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_duplicate_message_id_rejected(self, db_session: Session):
        db_session.add(_conversation())
        db_session.add(Message(id="msg-1", conversation_id="conv-db", role="user", content="[]"))
        db_session.commit()

        db_session.expunge_all()
        db_session.add(Message(id="msg-1", conversation_id="conv-db", role="user", content="[]"))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_deleting_conversation_removes_messages(self, db_session: Session):
        conversation = _conversation()
        db_session.add(conversation)
        db_session.add(Message(id="msg-1", conversation_id="conv-db", role="user", content="[]"))
        db_session.commit()

        db_session.delete(conversation)
        db_session.commit()

        assert db_session.get(Message, "msg-1") is None

    def test_dangling_note_reference_rejected(self, db_session: Session):
        db_session.add(_conversation(note_id="note-missing"))

        with pytest.raises(IntegrityError):
            db_session.commit()
