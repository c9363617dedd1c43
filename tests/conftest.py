"""Shared fixtures for all tests."""

import json
from datetime import datetime, timezone

import pytest

from backend.api.events import Source
from backend.core.chat_sessions import append_spending, create_chat_session, delete_session
from backend.core.database import UserRow, get_session, init_db
from backend.core.ledger import create_embedding_spending, create_llm_spending


@pytest.fixture
def db():
    """Fresh in-memory database for each test."""
    init_db("sqlite:///:memory:")
    yield


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc)


@pytest.fixture
def add_user(db):
    """Insert a CMS user row; inventory dicts are stored as JSON."""
    def _add(user_id: str, account_class: str = "free", daily_token_limit=None, inventory=None):
        with get_session() as session:
            session.add(UserRow(
                id=user_id,
                account_class=account_class,
                daily_token_limit=daily_token_limit,
                customer_inventory=json.dumps(inventory) if inventory is not None else None,
            ))
            session.commit()
    return _add


@pytest.fixture
def spend(db):
    """Record an LLM call of `tokens` total tokens for a user at a given time.

    Creates a fresh conversation per call; `deleted=True` soft-deletes it.
    """
    def _spend(user_id: str, tokens: int, when: datetime | None = None, deleted: bool = False) -> str:
        chat = create_chat_session(user_id, title="ledger")
        output_tokens = tokens // 2
        append_spending(
            chat.conversation_id,
            create_llm_spending("gpt-oss-120b", tokens - output_tokens, output_tokens, timestamp=when),
        )
        if deleted:
            delete_session(chat.conversation_id, user_id)
        return chat.conversation_id
    return _spend


@pytest.fixture
def embedding_entry():
    return create_embedding_spending("gemini-embedding-001", 12)


@pytest.fixture
def sample_sources() -> list[Source]:
    return [
        Source(
            id="chunk-1", title="On Liberty", slug="on-liberty", type="book",
            chunk_index=2, relevance_score=0.91, content="The only freedom which deserves the name...",
        ),
        Source(
            id="chunk-2", title="Two Concepts of Liberty", slug="two-concepts", type="article",
            chunk_index=0, relevance_score=0.84, content="Positive and negative liberty.",
        ),
    ]
