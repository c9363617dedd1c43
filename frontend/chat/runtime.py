"""Bridge between the chat state and a generic thread-rendering UI.

The UI sees a list of ThreadMessage and sends back AppendMessage intents;
it never deals with the stream, quotas or the session store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from frontend.chat.models import Message, TurnOutcome
from frontend.chat.session import ChatSession, ChatState


@dataclass
class ThreadMessage:
    id: str
    role: str
    content: list[dict]
    created_at: datetime
    status: dict | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class AppendMessage:
    """A message composed in the UI."""
    content: list[dict]
    role: str = "user"

    @property
    def text(self) -> str:
        return "".join(part.get("text", "") for part in self.content if part.get("type") == "text")


def to_thread_messages(messages: list[Message], running: bool = False) -> list[ThreadMessage]:
    """Convert chat messages to thread messages with per-index ids.

    Args:
        messages: Messages in display order.
        running: The last message is a reply still being streamed.
    """
    thread = []
    last = len(messages) - 1
    for i, msg in enumerate(messages):
        status = None
        if msg.role == "assistant":
            if running and i == last:
                status = {"type": "running"}
            else:
                status = {"type": "complete", "reason": "stop"}

        sources = [s.model_dump(by_alias=True) for s in msg.sources] if msg.sources else None
        thread.append(ThreadMessage(
            id=f"msg-{i}",
            role=msg.role,
            content=[{"type": "text", "text": msg.content}],
            created_at=msg.timestamp,
            status=status,
            metadata={"custom": {"sources": sources} if sources else {}},
        ))
    return thread


class ChatRuntime:
    """Thread view and append handler over one ChatSession."""

    def __init__(self, session: ChatSession):
        self.session = session

    @property
    def state(self) -> ChatState:
        return self.session.state

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    @property
    def messages(self) -> list[ThreadMessage]:
        return to_thread_messages(self.state.visible_messages(), running=self.state.current_turn is not None)

    def on_new(
        self,
        message: AppendMessage,
        on_update: Callable[[ChatState], None] | None = None,
    ) -> TurnOutcome:
        """Forward a composed message to the session. Blank text is ignored."""
        text = message.text
        if not text.strip():
            return TurnOutcome.REJECTED
        return self.session.submit(text, on_update=on_update)
