"""Loads, restores and manages conversations stored by the chat service.

Every operation returns a plain result (bool, list or None) and never raises
past this class: the server is the source of truth, the local state only a
cache that a failed call leaves untouched.
"""

import structlog
from pydantic import ValidationError

from backend.api.events import Source
from backend.api.schemas import AgentInfo, MessageRecord, SessionSummary, UsageStatsResponse
from frontend.chat.api_client import ChatApiClient, ChatApiError
from frontend.chat.models import Message, UsageSnapshot
from frontend.chat.session import ChatState

logger = structlog.get_logger(__name__)


class SessionStore:
    """Session history operations bound to one ChatState."""

    def __init__(self, api: ChatApiClient, state: ChatState):
        self.api = api
        self.state = state
        self._chunk_cache: dict[str, str] = {}

    def load_active_session(self) -> bool:
        """Restore the user's most recent open conversation.

        Returns:
            True if a session was restored. No active session is a normal
            outcome and leaves the state empty.
        """
        return self._load(self.api.get_active_session)

    def load_session(self, conversation_id: str) -> bool:
        return self._load(lambda: self.api.get_session(conversation_id))

    def load_history(self) -> list[SessionSummary]:
        """Past conversations, newest first. Empty on failure."""
        try:
            return [SessionSummary.model_validate(s) for s in self.api.list_sessions()]
        except (ChatApiError, ValidationError) as e:
            logger.warning("sessions.history_failed", error=str(e))
            return []

    def rename_session(self, conversation_id: str, title: str) -> bool:
        title = (title or "").strip()
        if not title:
            return False
        try:
            self.api.update_session(conversation_id, title=title)
        except ChatApiError as e:
            logger.warning("sessions.rename_failed", conversation_id=conversation_id, error=str(e))
            return False
        return True

    def delete_session(self, conversation_id: str) -> bool:
        """Delete a conversation; clears local state if it is the open one."""
        try:
            self.api.delete_session(conversation_id)
        except ChatApiError as e:
            logger.warning("sessions.delete_failed", conversation_id=conversation_id, error=str(e))
            return False
        if conversation_id == self.state.conversation_id:
            self.state.reset_conversation()
        return True

    def start_new_conversation(self, close_remote: bool = True) -> None:
        """Clear the local conversation; optionally close it on the server.

        The local reset always happens. Closing the server session is best
        effort and only stops it being restored as the active one.
        """
        previous = self.state.conversation_id
        self.state.reset_conversation()
        if not (close_remote and previous):
            return
        try:
            self.api.update_session(previous, status="closed")
        except ChatApiError as e:
            logger.warning("sessions.close_failed", conversation_id=previous, error=str(e))

    def load_agents(self) -> list[AgentInfo]:
        """Fetch selectable agents and pick the first when none is selected."""
        try:
            agents = [AgentInfo.model_validate(a) for a in self.api.list_agents()]
        except (ChatApiError, ValidationError) as e:
            logger.warning("agents.load_failed", error=str(e))
            return []
        self.state.agents = [a.model_dump() for a in agents]
        if agents and not self.state.selected_agent:
            self.state.selected_agent = agents[0].slug
        return agents

    def load_usage(self) -> UsageSnapshot | None:
        try:
            stats = UsageStatsResponse.model_validate(self.api.get_usage())
        except (ChatApiError, ValidationError) as e:
            logger.warning("usage.load_failed", error=str(e))
            return None
        self.state.usage = UsageSnapshot.from_limit_info(stats.model_dump())
        return self.state.usage

    def load_source_content(self, source: Source) -> Source:
        """Return the source with its chunk text, fetching it if missing.

        History restores sources without content; this fills it in when the
        user expands one. On failure the source is returned unchanged.
        """
        if source.content:
            return source
        content = self._chunk_cache.get(source.id)
        if content is None:
            try:
                content = self.api.get_chunk(source.id)
            except ChatApiError as e:
                logger.warning("sources.hydrate_failed", chunk_id=source.id, error=str(e))
                return source
            if content is None:
                return source
            self._chunk_cache[source.id] = content
        return source.model_copy(update={"content": content})

    def _load(self, fetch) -> bool:
        state = self.state
        state.is_loading_session = True
        try:
            data = fetch()
            if data is None:
                return False
            conversation_id = data["conversation_id"]
            messages = [_to_message(MessageRecord.model_validate(m)) for m in data.get("messages") or []]
        except (ChatApiError, ValidationError, KeyError, TypeError) as e:
            logger.warning("sessions.load_failed", error=str(e))
            return False
        finally:
            state.is_loading_session = False

        state.conversation_id = conversation_id
        state.messages = messages
        state.current_turn = None
        state.clear_banners()
        if data.get("agent_slug"):
            state.selected_agent = data["agent_slug"]
        logger.info("sessions.restored", conversation_id=state.conversation_id, messages=len(messages))
        return True


def _to_message(record: MessageRecord) -> Message:
    sources = None
    if record.sources:
        sources = [Source.model_validate(s.model_dump()) for s in record.sources]
    return Message(role=record.role, content=record.content, timestamp=record.timestamp, sources=sources)
