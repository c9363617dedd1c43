"""Conversation persistence: sessions, their messages and their spending ledger.

Sessions are scoped to a user; every lookup takes the owner's id and treats
another user's conversation as missing. Deletion is soft so that spending
already incurred keeps counting toward the daily quota.
"""

import json
import uuid

import structlog

from backend.api.events import Source
from backend.api.schemas import MessageRecord, SourceRecord
from backend.core.database import ChatSessionRow, MessageRow, SpendingRow, as_utc, get_session, utcnow
from backend.core.ledger import SpendingEntry, TokenCounts

logger = structlog.get_logger(__name__)

TITLE_MAX_CHARS = 60


def derive_title(first_message: str) -> str:
    """Session title from the opening user message."""
    text = " ".join(first_message.split())
    if len(text) <= TITLE_MAX_CHARS:
        return text
    return text[: TITLE_MAX_CHARS - 1].rstrip() + "…"


def create_chat_session(user_id: str, agent_slug: str | None = None, title: str | None = None) -> ChatSessionRow:
    """Open a new active conversation for a user.

    Args:
        user_id: Owner of the conversation.
        agent_slug: Persona answering in this conversation.
        title: Optional display title.

    Returns:
        The persisted session row.
    """
    now = utcnow()
    row = ChatSessionRow(
        conversation_id=str(uuid.uuid4()),
        user_id=user_id,
        agent_slug=agent_slug,
        title=title,
        status="active",
        created_at=now,
        last_activity=now,
    )
    with get_session() as session:
        session.add(row)
        session.commit()
    logger.info("session.created", conversation_id=row.conversation_id, user_id=user_id)
    return row


def get_chat_session(conversation_id: str, user_id: str) -> ChatSessionRow | None:
    """Fetch a conversation owned by user_id, ignoring deleted ones."""
    with get_session() as session:
        return (
            session.query(ChatSessionRow)
            .filter(
                ChatSessionRow.conversation_id == conversation_id,
                ChatSessionRow.user_id == user_id,
                ChatSessionRow.deleted_at.is_(None),
            )
            .first()
        )


def get_active_session(user_id: str) -> ChatSessionRow | None:
    """Most recently active conversation that has not been closed."""
    with get_session() as session:
        return (
            session.query(ChatSessionRow)
            .filter(
                ChatSessionRow.user_id == user_id,
                ChatSessionRow.status == "active",
                ChatSessionRow.deleted_at.is_(None),
            )
            .order_by(ChatSessionRow.last_activity.desc(), ChatSessionRow.created_at.desc())
            .first()
        )


def list_sessions(user_id: str) -> list[ChatSessionRow]:
    """All visible conversations of a user, newest activity first."""
    with get_session() as session:
        return (
            session.query(ChatSessionRow)
            .filter(ChatSessionRow.user_id == user_id, ChatSessionRow.deleted_at.is_(None))
            .order_by(ChatSessionRow.last_activity.desc())
            .all()
        )


def update_session(
    conversation_id: str,
    user_id: str,
    title: str | None = None,
    status: str | None = None,
) -> bool:
    """Rename and/or close a conversation.

    Returns:
        False if the conversation does not exist for this user.
    """
    with get_session() as session:
        row = (
            session.query(ChatSessionRow)
            .filter(
                ChatSessionRow.conversation_id == conversation_id,
                ChatSessionRow.user_id == user_id,
                ChatSessionRow.deleted_at.is_(None),
            )
            .first()
        )
        if row is None:
            return False
        if title is not None:
            row.title = title
        if status is not None:
            row.status = status
        session.commit()
    logger.info("session.updated", conversation_id=conversation_id, title=title, status=status)
    return True


def delete_session(conversation_id: str, user_id: str) -> bool:
    """Soft-delete a conversation. Its ledger is kept for quota accounting."""
    with get_session() as session:
        row = (
            session.query(ChatSessionRow)
            .filter(
                ChatSessionRow.conversation_id == conversation_id,
                ChatSessionRow.user_id == user_id,
                ChatSessionRow.deleted_at.is_(None),
            )
            .first()
        )
        if row is None:
            return False
        row.status = "closed"
        row.deleted_at = utcnow()
        session.commit()
    logger.info("session.deleted", conversation_id=conversation_id)
    return True


def append_message(
    conversation_id: str,
    role: str,
    content: str,
    sources: list[Source] | None = None,
) -> None:
    """Persist one message and bump the session's last activity.

    Sources are stored in their history shape: no content, no score.
    """
    now = utcnow()
    stored_sources = None
    if sources is not None:
        stored_sources = json.dumps([
            SourceRecord(
                id=s.id, title=s.title, slug=s.slug, type=s.type, chunk_index=s.chunk_index
            ).model_dump()
            for s in sources
        ])

    with get_session() as session:
        session.add(MessageRow(
            conversation_id=conversation_id,
            role=role,
            content=content,
            sources=stored_sources,
            timestamp=now,
        ))
        session.query(ChatSessionRow).filter(
            ChatSessionRow.conversation_id == conversation_id
        ).update({ChatSessionRow.last_activity: now})
        session.commit()
    logger.debug("db.message_saved", conversation_id=conversation_id, role=role)


def get_session_history(conversation_id: str) -> list[MessageRecord]:
    """Full message history of a conversation, oldest first."""
    with get_session() as session:
        rows = (
            session.query(MessageRow)
            .filter(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.id.asc())
            .all()
        )
        return [_row_to_record(r) for r in rows]


def get_recent_messages(conversation_id: str, limit: int = 4) -> list[MessageRecord]:
    """The last `limit` messages of a conversation, oldest first."""
    with get_session() as session:
        rows = (
            session.query(MessageRow)
            .filter(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.id.desc())
            .limit(limit)
            .all()
        )
        rows.reverse()
        return [_row_to_record(r) for r in rows]


def append_spending(conversation_id: str, entry: SpendingEntry) -> None:
    """Append one entry to a conversation's ledger."""
    with get_session() as session:
        session.add(SpendingRow(
            conversation_id=conversation_id,
            service=entry.service,
            model=entry.model,
            input_tokens=entry.tokens.input,
            output_tokens=entry.tokens.output,
            total_tokens=entry.tokens.total,
            cost_usd=entry.cost_usd,
            timestamp=entry.timestamp,
        ))
        session.commit()
    logger.debug("ledger.appended", conversation_id=conversation_id, service=entry.service,
                 tokens=entry.tokens.total)


def get_session_spending(conversation_id: str) -> list[SpendingEntry]:
    with get_session() as session:
        rows = (
            session.query(SpendingRow)
            .filter(SpendingRow.conversation_id == conversation_id)
            .order_by(SpendingRow.id.asc())
            .all()
        )
        return [_row_to_entry(r) for r in rows]


def get_user_spending(user_id: str) -> list[SpendingEntry]:
    """Every ledger entry across all of a user's sessions, deleted ones included."""
    with get_session() as session:
        rows = (
            session.query(SpendingRow)
            .join(ChatSessionRow, ChatSessionRow.conversation_id == SpendingRow.conversation_id)
            .filter(ChatSessionRow.user_id == user_id)
            .order_by(SpendingRow.id.asc())
            .all()
        )
        return [_row_to_entry(r) for r in rows]


def _row_to_record(row: MessageRow) -> MessageRecord:
    """Convert a SQLAlchemy row to a Pydantic MessageRecord."""
    sources = None
    if row.sources:
        sources = [SourceRecord(**s) for s in json.loads(row.sources)]
    return MessageRecord(
        role=row.role,
        content=row.content,
        timestamp=as_utc(row.timestamp),
        sources=sources,
    )


def _row_to_entry(row: SpendingRow) -> SpendingEntry:
    return SpendingEntry(
        service=row.service,
        model=row.model,
        tokens=TokenCounts(input=row.input_tokens, output=row.output_tokens, total=row.total_tokens),
        cost_usd=row.cost_usd,
        timestamp=as_utc(row.timestamp),
    )
