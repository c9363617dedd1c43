"""Context assembly for a chat turn.

Fetches retrieved chunks from the document store and recent messages from
SQLite in parallel, then trims the bundle to a token budget.

Uses a module-level thread pool (bounded at 20 workers) to prevent
thread exhaustion under concurrent request load.
"""

import atexit
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import structlog

from backend.api.events import Source
from backend.api.schemas import MessageRecord
from backend.core.chat_sessions import get_recent_messages
from backend.core.documents import DocumentStore
from backend.core.ledger import estimate_tokens_from_text

logger = structlog.get_logger(__name__)

_MAX_CONTEXT_WORKERS = int(os.environ.get("CONTEXT_POOL_MAX_WORKERS", "20"))
_pool = ThreadPoolExecutor(max_workers=_MAX_CONTEXT_WORKERS)
atexit.register(_pool.shutdown, wait=False)


@dataclass
class ContextBundle:
    """Assembled context for the LLM prompt.

    Attributes:
        sources: Retrieved chunks, most relevant first.
        recent_messages: Last K messages of the conversation (chronological).
    """
    sources: list[Source] = field(default_factory=list)
    recent_messages: list[MessageRecord] = field(default_factory=list)


def build_context(
    conversation_id: str,
    embedding: list[float] | None,
    documents: DocumentStore,
    k_results: int = 5,
    document_ids: list[str] | None = None,
) -> ContextBundle:
    """Assemble retrieved sources and recent history for one turn.

    Args:
        conversation_id: Conversation the turn belongs to.
        embedding: Query vector, or None when embedding failed (no retrieval).
        documents: Chunk store to search.
        k_results: Number of chunks to retrieve.
        document_ids: Optional restriction to the user's selected documents.

    Returns:
        ContextBundle trimmed to CONTEXT_TOKEN_BUDGET.
    """
    recent_k = int(os.environ.get("HISTORY_RECENT_K", "4"))
    budget = int(os.environ.get("CONTEXT_TOKEN_BUDGET", "3000"))

    futures = {_pool.submit(_fetch_recent_messages, conversation_id, recent_k): "recent"}
    if embedding is not None:
        futures[_pool.submit(_fetch_sources, documents, embedding, k_results, document_ids)] = "sources"

    results = {}
    for future in as_completed(futures):
        key = futures[future]
        try:
            results[key] = future.result()
        except Exception as e:
            logger.error("context.lookup_failed", key=key, error=str(e))
            results[key] = None

    bundle = ContextBundle(
        sources=results.get("sources") or [],
        recent_messages=results.get("recent") or [],
    )

    total_tokens = _estimate_context_tokens(bundle)
    if total_tokens > budget and len(bundle.sources) > 1:
        while len(bundle.sources) > 1 and _estimate_context_tokens(bundle) > budget:
            bundle.sources.pop()
        logger.warning("context.token_budget_exceeded", original=total_tokens,
                       reduced_sources_to=len(bundle.sources))

    return bundle


def _estimate_context_tokens(bundle: ContextBundle) -> int:
    total = sum(estimate_tokens_from_text(s.content) for s in bundle.sources)
    total += sum(estimate_tokens_from_text(m.content) for m in bundle.recent_messages)
    return total


def _fetch_sources(documents, embedding, limit, document_ids):
    try:
        return documents.search_chunks(embedding, limit=limit, document_ids=document_ids)
    except Exception as e:
        logger.error("context.sources_failed", error=str(e))
        return []


def _fetch_recent_messages(conversation_id, limit):
    try:
        return get_recent_messages(conversation_id, limit=limit)
    except Exception as e:
        logger.error("context.recent_messages_failed", error=str(e))
        return []
