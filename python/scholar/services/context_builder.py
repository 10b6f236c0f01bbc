"""System prompt construction for new conversations.

A conversation may be attached to a note or a course. The prompt names the
attachment and, for notes, carries a plain-text snapshot of the note so the
model can ground its answers in it. The prompt is built once, when the
conversation is created, and stored on the conversation row.

Lookups never fail the turn: a missing row or a database error falls back
to the generic prompt, and a missing row is left off the conversation.
"""

import json
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from scholar.db.models import Course, Note
from scholar.logging import get_logger

logger = get_logger(__name__)

MAX_NOTE_CONTEXT_CHARS = 20_000

GENERIC_SYSTEM_PROMPT = (
    "You are a helpful teaching assistant for university students. "
    "Provide clear, educational responses. "
    "Format your responses using markdown with proper headings, bullet points, "
    "and code blocks where appropriate."
)

NOTE_SYSTEM_PROMPT = (
    'You are helping with a note titled "{title}". '
    "Provide helpful, educational responses related to this note."
)

NOTE_SNAPSHOT_SUFFIX = (
    "The current note content is included below between <note> tags. "
    "Ground your answers in it.\n\n<note>\n{snapshot}\n</note>"
)

COURSE_SYSTEM_PROMPT = (
    'You are helping with a course titled "{title}". '
    "Provide helpful, educational responses related to this course."
)


def extract_note_text(content: str | None, limit: int = MAX_NOTE_CONTEXT_CHARS) -> str:
    """Flatten an editor JSON snapshot to plain text.

    Every string found under a "text" key is collected in document order,
    one block per line. Content that is not JSON is treated as plain text.
    A document nested too deeply to walk yields no text.
    """
    if not content:
        return ""

    pieces: list[str] = []

    def walk(node: Any) -> None:
        if isinstance(node, dict):
            text = node.get("text")
            if isinstance(text, str):
                pieces.append(text)
            for key, value in node.items():
                if key != "text":
                    walk(value)
        elif isinstance(node, list):
            for item in node:
                walk(item)

    try:
        document = json.loads(content)
        if isinstance(document, str):
            return document[:limit]
        walk(document)
    except RecursionError:
        logger.warning("note_snapshot_unreadable", content_chars=len(content))
        return ""
    except ValueError:
        return content[:limit]

    return "\n".join(p for p in pieces if p.strip())[:limit]


@dataclass(frozen=True)
class ConversationContext:
    """System prompt plus the attachments that were found.

    note_id / course_id are None when the caller named a row that does not
    exist, so the conversation is never linked to a dangling reference.
    """

    system_prompt: str
    note_id: str | None = None
    course_id: str | None = None


class ContextBuilder:
    """Builds the system prompt for a conversation from its attachments."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def resolve(
        self, *, note_id: str | None = None, course_id: str | None = None
    ) -> ConversationContext:
        """Look up the attachments and build the prompt.

        A note takes precedence over a course; a missing note falls back to
        the course, and a missing course to the generic prompt.
        """
        try:
            with self._session_factory() as db:
                note = db.get(Note, note_id) if note_id else None
                course = db.get(Course, course_id) if course_id else None
                note_fields = (note.title, note.content) if note is not None else None
                course_title = course.title if course is not None else None
        except SQLAlchemyError as e:
            logger.warning(
                "context_lookup_failed",
                note_id=note_id,
                course_id=course_id,
                error_type=type(e).__name__,
            )
            return ConversationContext(system_prompt=GENERIC_SYSTEM_PROMPT)

        missing = {}
        if note_id and note_fields is None:
            missing["note_id"] = note_id
        if course_id and course_title is None:
            missing["course_id"] = course_id
        if missing:
            logger.info("context_lookup_missing", **missing)

        if note_fields is not None:
            prompt = _note_prompt(*note_fields)
        elif course_title is not None:
            prompt = COURSE_SYSTEM_PROMPT.format(title=course_title)
        else:
            prompt = GENERIC_SYSTEM_PROMPT

        return ConversationContext(
            system_prompt=prompt,
            note_id=note_id if note_fields is not None else None,
            course_id=course_id if course_title is not None else None,
        )

    def build(self, *, note_id: str | None = None, course_id: str | None = None) -> str:
        """Return the system prompt only."""
        return self.resolve(note_id=note_id, course_id=course_id).system_prompt


def _note_prompt(title: str, content: str | None) -> str:
    prompt = NOTE_SYSTEM_PROMPT.format(title=title)
    snapshot = extract_note_text(content)
    if snapshot:
        prompt = f"{prompt} {NOTE_SNAPSHOT_SUFFIX.format(snapshot=snapshot)}"
    return prompt
