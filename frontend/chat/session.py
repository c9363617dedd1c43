"""Client-side chat state machine.

One ChatSession drives one conversation: it sends the user's message,
decodes the event stream, and applies each event to an explicit
current-turn handle. The turn is committed to the message log only when
the stream ends; on failure the placeholder is dropped and a banner set.

States: IDLE → SENDING → STREAMING → IDLE. A submit while not IDLE is
rejected, not queued.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import structlog
from pydantic import ValidationError

from backend.api.events import (
    ConversationIdEvent,
    DoneEvent,
    ErrorEvent,
    Source,
    SourcesEvent,
    StreamDecoder,
    TokenEvent,
    UsageEvent,
)
from frontend.chat.api_client import ChatApiClient, ChatApiError
from frontend.chat.models import ChatStatus, Message, TurnOutcome, UsageSnapshot, utcnow

logger = structlog.get_logger(__name__)

SEND_FAILURE_MESSAGE = "Failed to send message. Please try again."
LIMIT_MESSAGE = "You have reached your daily token limit."


@dataclass
class TurnHandle:
    """The in-progress assistant reply of the current turn."""
    timestamp: datetime = field(default_factory=utcnow)
    content: str = ""
    sources: list[Source] | None = None
    finalized: bool = False

    def apply_token(self, text: str) -> None:
        if not self.finalized:
            self.content += text

    def apply_sources(self, sources: list[Source]) -> None:
        if not self.finalized:
            self.sources = list(sources)

    def finalize(self) -> bool:
        """Mark the reply complete. Returns False if it already was."""
        if self.finalized:
            return False
        self.finalized = True
        return True

    def to_message(self) -> Message:
        return Message(role="assistant", content=self.content, timestamp=self.timestamp, sources=self.sources)


@dataclass
class ChatState:
    """Everything the chat UI renders, shared by session, store and runtime."""
    conversation_id: str | None = None
    messages: list[Message] = field(default_factory=list)
    current_turn: TurnHandle | None = None
    status: ChatStatus = ChatStatus.IDLE
    usage: UsageSnapshot | None = None
    error: str | None = None
    limit_error: str | None = None
    selected_documents: list[str] = field(default_factory=list)
    selected_agent: str | None = None
    agents: list[dict] = field(default_factory=list)
    is_loading_session: bool = False

    @property
    def is_running(self) -> bool:
        return self.status != ChatStatus.IDLE

    def visible_messages(self) -> list[Message]:
        """Finalized log plus the reply being streamed, if any."""
        if self.current_turn is None:
            return list(self.messages)
        return [*self.messages, self.current_turn.to_message()]

    def set_error(self, message: str) -> None:
        self.error = message
        self.limit_error = None

    def set_limit_error(self, message: str) -> None:
        self.limit_error = message
        self.error = None

    def clear_banners(self) -> None:
        self.error = None
        self.limit_error = None

    def update_usage(self, **changes) -> None:
        """Merge a partial update into the current snapshot, if there is one."""
        if self.usage is None:
            logger.debug("usage.partial_update_ignored", keys=sorted(changes))
            return
        self.usage = self.usage.merged(**changes)

    def reset_conversation(self) -> None:
        self.conversation_id = None
        self.messages = []
        self.current_turn = None
        self.clear_banners()


class _TurnAborted(Exception):
    """The server sent an error event."""


class ChatSession:
    """Sends messages and applies the streamed reply to a ChatState."""

    def __init__(self, api: ChatApiClient, state: ChatState | None = None):
        self.api = api
        self.state = state or ChatState()

    def submit(self, text: str, on_update: Callable[[ChatState], None] | None = None) -> TurnOutcome:
        """Send one user message and consume the streamed reply.

        Args:
            text: The user's message.
            on_update: Called after every state change, for live rendering.

        Returns:
            TurnOutcome describing how the turn ended.
        """
        state = self.state
        if not text or not text.strip() or state.is_running:
            return TurnOutcome.REJECTED

        notify = on_update or (lambda _state: None)

        state.clear_banners()
        state.messages.append(Message(role="user", content=text))
        state.current_turn = TurnHandle()
        state.status = ChatStatus.SENDING
        notify(state)

        try:
            chunks = self.api.stream_chat(self._build_request(text))
            state.status = ChatStatus.STREAMING
            self._consume(chunks, notify)

        except ChatApiError as e:
            if e.limit_info is not None:
                logger.info("chat.limit_reached", used=e.limit_info.get("used"), limit=e.limit_info.get("limit"))
                try:
                    state.usage = UsageSnapshot.from_limit_info(e.limit_info)
                except ValidationError as invalid:
                    logger.warning("usage.limit_info_invalid", error=str(invalid))
                state.set_limit_error(e.payload.get("error") or LIMIT_MESSAGE)
                return self._end_turn(TurnOutcome.LIMITED, notify)
            logger.error("chat.send_failed", status=e.status_code, error=str(e))
            state.set_error(str(e) or SEND_FAILURE_MESSAGE)
            return self._end_turn(TurnOutcome.FAILED, notify)

        except _TurnAborted as e:
            logger.error("chat.stream_error_event", error=str(e))
            state.set_error(str(e) or SEND_FAILURE_MESSAGE)
            return self._end_turn(TurnOutcome.FAILED, notify)

        except Exception as e:
            logger.error("chat.stream_failed", error=str(e))
            state.set_error(SEND_FAILURE_MESSAGE)
            return self._end_turn(TurnOutcome.FAILED, notify)

        # [DONE], done event or channel close: keep whatever was applied.
        turn = state.current_turn
        if turn is not None:
            turn.finalize()
            state.messages.append(turn.to_message())
        return self._end_turn(TurnOutcome.COMPLETED, notify)

    def _build_request(self, text: str) -> dict:
        payload = {"message": text}
        if self.state.selected_documents:
            payload["selectedDocuments"] = list(self.state.selected_documents)
        if self.state.conversation_id:
            payload["chatId"] = self.state.conversation_id
        if self.state.selected_agent:
            payload["agentSlug"] = self.state.selected_agent
        return payload

    def _consume(self, chunks, notify: Callable[[ChatState], None]) -> None:
        decoder = StreamDecoder()
        for chunk in chunks:
            for event in decoder.feed(chunk):
                self._apply(event)
                notify(self.state)
            if decoder.finished:
                break
        decoder.close()

    def _apply(self, event) -> None:
        """Apply one decoded event to the current turn."""
        state = self.state
        turn = state.current_turn

        if isinstance(event, ConversationIdEvent):
            state.conversation_id = event.data
        elif isinstance(event, TokenEvent):
            turn.apply_token(event.data)
        elif isinstance(event, SourcesEvent):
            turn.apply_sources(event.data)
        elif isinstance(event, UsageEvent):
            state.usage = UsageSnapshot.from_usage_payload(event.data)
        elif isinstance(event, DoneEvent):
            turn.finalize()
        elif isinstance(event, ErrorEvent):
            raise _TurnAborted(event.data.error)

    def _end_turn(self, outcome: TurnOutcome, notify: Callable[[ChatState], None]) -> TurnOutcome:
        self.state.current_turn = None
        self.state.status = ChatStatus.IDLE
        notify(self.state)
        return outcome
