"""Test helpers for authentication and common test operations.

Provides:
- Token minting for test authentication
- Header generation for test requests
- SSE body parsing
- Row factories for read-only collaborators (courses, notes)
"""

import json
import time
from uuid import uuid4

import jwt
from sqlalchemy.orm import Session

from scholar.db.models import Course, Note
from tests.support.test_verifier import MockJwtVerifier

# Default test token settings
DEFAULT_ISSUER = "test-issuer"
DEFAULT_AUDIENCE = "test-audience"
DEFAULT_EXPIRES_IN = 3600  # 1 hour


def mint_test_token(
    user_id: str,
    expires_in: int = DEFAULT_EXPIRES_IN,
    issuer: str = DEFAULT_ISSUER,
    audience: str = DEFAULT_AUDIENCE,
    **extra_claims,
) -> str:
    """Mint a valid test JWT token with user_id as the `sub` claim."""
    private_key = MockJwtVerifier.get_private_key()

    now = int(time.time())
    payload = {
        "sub": user_id,
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        **extra_claims,
    }

    return jwt.encode(payload, private_key, algorithm="RS256")


def mint_expired_token(user_id: str) -> str:
    """Mint a token that expired 1 hour ago."""
    return mint_test_token(user_id=user_id, expires_in=-3600)


def auth_headers(user_id: str, **token_kwargs) -> dict[str, str]:
    """Return headers dict with valid Authorization for the given user."""
    token = mint_test_token(user_id, **token_kwargs)
    return {"Authorization": f"Bearer {token}"}


def create_test_user_id() -> str:
    return f"user-{uuid4().hex[:12]}"


def parse_sse(body: str) -> list[tuple[str, dict]]:
    """Split an SSE body into (event, data) pairs. Comment lines are dropped."""
    events = []
    for block in body.split("\n\n"):
        event, data = None, None
        for line in block.split("\n"):
            if line.startswith("event: "):
                event = line[len("event: ") :]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: ") :])
        if event is not None:
            events.append((event, data))
    return events


def chat_body(
    conversation_id: str | None,
    message_id: str,
    text: str,
    **extra,
) -> dict:
    """POST /chat body with a single text part, in the web client's camelCase."""
    body = {
        "message": {"id": message_id, "role": "user", "parts": [{"type": "text", "text": text}]},
        **extra,
    }
    if conversation_id is not None:
        body["conversationId"] = conversation_id
    return body


def create_course(db: Session, title: str = "Biology 101") -> Course:
    course = Course(id=f"course-{uuid4().hex[:8]}", title=title)
    db.add(course)
    db.commit()
    return course


def create_note(
    db: Session,
    title: str = "Cell structure",
    content: str | None = None,
    course_id: str | None = None,
) -> Note:
    note = Note(id=f"note-{uuid4().hex[:8]}", title=title, content=content, course_id=course_id)
    db.add(note)
    db.commit()
    return note


def mint_token_with_bad_signature(user_id: str) -> str:
    """Mint a token signed with a different key (bad signature)."""
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_key_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )

    now = int(time.time())
    payload = {
        "sub": user_id,
        "iss": DEFAULT_ISSUER,
        "aud": DEFAULT_AUDIENCE,
        "iat": now,
        "exp": now + DEFAULT_EXPIRES_IN,
    }

    return jwt.encode(payload, private_key_bytes, algorithm="RS256")
