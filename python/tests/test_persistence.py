"""Tests for post-stream persistence (set difference by message id)."""

import pytest

from scholar.db.models import MessageRole
from scholar.services.conversation_store import ConversationDefaults, ConversationStore
from scholar.services.llm import LLMUsage
from scholar.services.message_codec import text_message
from scholar.services.persistence import PersistenceFinalizer, new_messages

USAGE = LLMUsage(prompt_tokens=20, completion_tokens=7, total_tokens=27)


def _history(count: int):
    roles = [MessageRole.user, MessageRole.assistant]
    return [text_message(f"h{i}", roles[i % 2], f"turn {i}") for i in range(count)]


class TestNewMessages:
    def test_only_unknown_ids_returned(self):
        prior = _history(4)
        turn = [
            text_message("m5", MessageRole.user, "question"),
            text_message("a5", MessageRole.assistant, "answer"),
        ]

        result = new_messages(prior, [*prior, *turn], USAGE)

        assert [m.id for m in result] == ["m5", "a5"]

    def test_prior_order_does_not_matter(self):
        prior = _history(4)
        turn = [
            text_message("m5", MessageRole.user, "question"),
            text_message("a5", MessageRole.assistant, "answer"),
        ]

        result = new_messages(list(reversed(prior)), [*prior, *turn], USAGE)

        assert [m.id for m in result] == ["m5", "a5"]

    def test_created_at_strictly_increasing(self):
        turn = [
            text_message("m1", MessageRole.user, "q"),
            text_message("a1", MessageRole.assistant, "a"),
        ]

        result = new_messages([], turn, None)

        assert result[0].created_at < result[1].created_at

    def test_tokens_only_on_assistant(self):
        turn = [
            text_message("m1", MessageRole.user, "q"),
            text_message("a1", MessageRole.assistant, "a"),
        ]

        user, assistant = new_messages([], turn, USAGE)

        assert user.tokens_used is None
        assert assistant.tokens_used == 27

    def test_duplicates_in_input_collapsed(self):
        message = text_message("m1", MessageRole.user, "q")

        assert [m.id for m in new_messages([], [message, message], None)] == ["m1"]


class TestPersistenceFinalizer:
    @pytest.mark.asyncio
    async def test_commit_writes_only_new_messages(self, session_factory):
        store = ConversationStore(session_factory)
        store.resolve_or_create(
            "c1", "user-a", ConversationDefaults(title="t", model="m", temperature=0.7)
        )
        prior = _history(4)
        store.append_messages("c1", prior)
        turn = [
            text_message("m5", MessageRole.user, "question"),
            text_message("a5", MessageRole.assistant, "answer"),
        ]

        ok = await PersistenceFinalizer(store).commit("c1", prior, [*prior, *turn], USAGE)

        assert ok is True
        stored = store.find("c1", "user-a").messages
        assert [m.id for m in stored] == ["h0", "h1", "h2", "h3", "m5", "a5"]
        assert stored[-1].tokens_used == 27

    @pytest.mark.asyncio
    async def test_refetched_reversed_prior_writes_only_the_turn(self, session_factory):
        store = ConversationStore(session_factory)
        store.resolve_or_create(
            "c1", "user-a", ConversationDefaults(title="t", model="m", temperature=0.7)
        )
        store.append_messages("c1", _history(4))
        # Fresh copies read back from the database, handed over newest first
        prior = store.find("c1", "user-a").messages
        turn = [
            text_message("m5", MessageRole.user, "question"),
            text_message("a5", MessageRole.assistant, "answer"),
        ]

        ok = await PersistenceFinalizer(store).commit(
            "c1", list(reversed(prior)), [*prior, *turn], USAGE
        )

        assert ok is True
        stored = store.find("c1", "user-a").messages
        assert [m.id for m in stored] == ["h0", "h1", "h2", "h3", "m5", "a5"]

    @pytest.mark.asyncio
    async def test_write_failure_is_reported_not_raised(self):
        class BrokenStore:
            def append_messages(self, conversation_id, messages):
                raise RuntimeError("disk full")

            def touch_updated_at(self, conversation_id):
                raise AssertionError("not reached")

        turn = [text_message("m1", MessageRole.user, "q")]

        ok = await PersistenceFinalizer(BrokenStore()).commit("c1", [], turn, None)

        assert ok is False
