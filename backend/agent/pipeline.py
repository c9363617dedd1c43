"""Server side of a chat turn: retrieve, generate, meter, persist, stream.

Produces the event stream consumed by the chat widget:
conversation_id → sources → token* → usage → done → [DONE], or an error
event in place of the tail when anything fails after the stream opened.
"""

import time
from typing import Callable, Iterator

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from backend.agent.prompts import build_system_prompt
from backend.api.events import (
    ConversationIdEvent,
    DoneEvent,
    ErrorEvent,
    ErrorPayload,
    Source,
    SourcesEvent,
    TokenEvent,
    UsageEvent,
    UsagePayload,
    encode_done,
    encode_event,
)
from backend.api.schemas import ChatRequest
from backend.core.chat_sessions import append_message, append_spending
from backend.core.context_builder import ContextBundle, build_context
from backend.core.database import AgentRow
from backend.core.documents import DocumentStore
from backend.core.embeddings import EmbeddingError, EmbeddingResult, embed_text
from backend.core.ledger import (
    SpendingEntry,
    calculate_total_cost,
    calculate_total_tokens,
    create_embedding_spending,
    create_llm_spending,
    estimate_tokens_from_text,
)
from backend.core.llm_adapter import LLMAdapter, StreamUsage
from backend.core.usage_limits import get_user_usage_stats

logger = structlog.get_logger(__name__)

STREAM_FAILURE_MESSAGE = "Service temporarily unavailable. Please try again in a moment."
DEFAULT_K_RESULTS = 5


class ChatPipeline:
    """Runs one chat turn and yields its SSE frames."""

    def __init__(
        self,
        documents: DocumentStore,
        llm_adapter: LLMAdapter,
        embedder: Callable[[str], EmbeddingResult] = embed_text,
    ):
        self.documents = documents
        self.llm_adapter = llm_adapter
        self.embedder = embedder

    def stream(
        self,
        user_id: str,
        conversation_id: str,
        request: ChatRequest,
        agent: AgentRow | None,
    ) -> Iterator[str]:
        """Generate the SSE frames for one turn.

        Args:
            user_id: Caller, for the usage snapshot.
            conversation_id: Session the turn is appended to (already created).
            request: Validated chat request.
            agent: Persona answering, or None for the built-in default.

        Yields:
            Encoded `data: ...` frames, always ending with the [DONE] sentinel.
        """
        start = time.monotonic()
        spending: list[SpendingEntry] = []

        yield encode_event(ConversationIdEvent(data=conversation_id))

        try:
            embedding = self._embed(conversation_id, request.message, spending)

            context = build_context(
                conversation_id,
                embedding,
                self.documents,
                k_results=agent.k_results if agent else DEFAULT_K_RESULTS,
                document_ids=request.selected_documents,
            )
            yield encode_event(SourcesEvent(data=context.sources))

            append_message(conversation_id, "user", request.message)

            messages = _build_messages(agent, context, request.message)
            fragments, usage = self.llm_adapter.stream_with_failover(messages)

            reply: list[str] = []
            completed = False
            try:
                for fragment in fragments:
                    reply.append(fragment)
                    yield encode_event(TokenEvent(data=fragment))
                completed = True
            finally:
                # runs on provider failure and on client disconnect too
                if reply or completed:
                    spending.append(self._record_reply(
                        conversation_id, messages, usage, "".join(reply), context.sources, completed,
                    ))

            stats = get_user_usage_stats(user_id)
            yield encode_event(UsageEvent(data=UsagePayload(
                tokens_used=calculate_total_tokens(spending),
                cost_usd=calculate_total_cost(spending),
                daily_limit=stats.limit,
                daily_used=stats.used,
                daily_remaining=stats.remaining,
                reset_at=stats.reset_at,
            )))
            yield encode_event(DoneEvent())

            latency_ms = int((time.monotonic() - start) * 1000)
            logger.info("chat.response", conversation_id=conversation_id, latency_ms=latency_ms,
                        sources=len(context.sources), tokens=calculate_total_tokens(spending))

        except Exception as e:
            logger.error("chat.stream_failed", conversation_id=conversation_id, error=str(e))
            yield encode_event(ErrorEvent(data=ErrorPayload(error=STREAM_FAILURE_MESSAGE)))

        yield encode_done()

    def _embed(self, conversation_id: str, text: str, spending: list[SpendingEntry]) -> list[float] | None:
        """Embed the question and meter the call. Retrieval is skipped on failure."""
        try:
            result = self.embedder(text)
        except EmbeddingError as e:
            logger.error("chat.embedding_failed", error=str(e))
            return None

        entry = create_embedding_spending(result.model, result.tokens)
        append_spending(conversation_id, entry)
        spending.append(entry)
        return result.vector

    def _record_reply(
        self,
        conversation_id: str,
        messages: list[BaseMessage],
        usage: StreamUsage,
        answer: str,
        sources: list[Source],
        completed: bool,
    ) -> SpendingEntry:
        """Meter the LLM call and store the (possibly partial) assistant reply."""
        input_tokens = usage.input_tokens
        if input_tokens is None:
            input_tokens = sum(estimate_tokens_from_text(str(m.content)) for m in messages)
        output_tokens = usage.output_tokens
        if output_tokens is None:
            output_tokens = estimate_tokens_from_text(answer)

        entry = create_llm_spending(usage.model, input_tokens, output_tokens)
        append_spending(conversation_id, entry)
        append_message(conversation_id, "assistant", answer, sources=sources)
        if not completed:
            logger.warning("chat.partial_reply_saved", conversation_id=conversation_id,
                           output_tokens=output_tokens)
        return entry


def _build_messages(agent: AgentRow | None, context: ContextBundle, question: str) -> list[BaseMessage]:
    """System prompt, recent turns for multi-turn memory, then the question."""
    messages: list[BaseMessage] = [
        SystemMessage(content=build_system_prompt(agent.system_prompt if agent else None, context.sources))
    ]
    for msg in context.recent_messages:
        if msg.role == "user":
            messages.append(HumanMessage(content=msg.content))
        elif msg.role == "assistant":
            messages.append(AIMessage(content=msg.content))
    messages.append(HumanMessage(content=question))
    return messages
