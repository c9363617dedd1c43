"""Unit tests for the session store adapter (mocked API client)."""

import pytest

from backend.api.events import Source
from frontend.chat.api_client import ChatApiClient, ChatApiError
from frontend.chat.models import Message
from frontend.chat.session import ChatState
from frontend.chat.session_store import SessionStore


@pytest.fixture
def api(mocker):
    return mocker.Mock(spec=ChatApiClient)


@pytest.fixture
def state():
    return ChatState()


@pytest.fixture
def store(api, state):
    return SessionStore(api, state)


@pytest.fixture
def stored_session():
    return {
        "conversation_id": "conv-1",
        "title": "What is freedom?",
        "status": "active",
        "agent_slug": "library",
        "messages": [
            {"role": "user", "content": "What is freedom?", "timestamp": "2026-03-10T09:00:00Z"},
            {
                "role": "assistant",
                "content": "Freedom is...",
                "timestamp": "2026-03-10T09:00:05Z",
                "sources": [
                    {"id": "chunk-1", "title": "On Liberty", "slug": "on-liberty", "type": "book", "chunk_index": 2},
                    {"id": "chunk-2", "title": "Untyped", "slug": "untyped"},
                ],
            },
        ],
    }


def _with_conversation(state):
    state.conversation_id = "conv-1"
    state.messages = [Message(role="user", content="hi"), Message(role="assistant", content="hello")]


class TestLoadActiveSession:

    def test_restores_messages(self, store, api, state, stored_session):
        api.get_active_session.return_value = stored_session

        assert store.load_active_session() is True
        assert state.conversation_id == "conv-1"
        assert [m.role for m in state.messages] == ["user", "assistant"]
        assert state.selected_agent == "library"
        assert state.is_loading_session is False

    def test_history_sources_get_defaults(self, store, api, state, stored_session):
        api.get_active_session.return_value = stored_session
        store.load_active_session()

        book, untyped = state.messages[1].sources
        assert book.chunk_index == 2
        assert book.type == "book"
        assert book.relevance_score == 0
        assert book.content == ""
        assert untyped.type == "article"
        assert untyped.chunk_index == 0
        assert state.messages[0].sources is None

    def test_no_active_session_is_silent(self, store, api, state):
        api.get_active_session.return_value = None
        assert store.load_active_session() is False
        assert state.conversation_id is None
        assert state.messages == []
        assert state.error is None

    def test_failure_leaves_state_untouched(self, store, api, state):
        _with_conversation(state)
        api.get_active_session.side_effect = ChatApiError("offline")
        assert store.load_active_session() is False
        assert state.conversation_id == "conv-1"
        assert len(state.messages) == 2
        assert state.is_loading_session is False

    def test_malformed_payload_rejected(self, store, api, state):
        api.get_active_session.return_value = {"conversation_id": "c", "messages": [{"role": "system"}]}
        assert store.load_active_session() is False
        assert state.conversation_id is None

    def test_null_messages_restore_empty_conversation(self, store, api, state):
        api.get_active_session.return_value = {"conversation_id": "c1", "messages": None}
        assert store.load_active_session() is True
        assert state.conversation_id == "c1"
        assert state.messages == []

    def test_non_object_payload_rejected(self, store, api, state):
        api.get_active_session.return_value = ["not", "a", "session"]
        assert store.load_active_session() is False
        assert state.is_loading_session is False


class TestLoadSession:

    def test_by_id(self, store, api, state, stored_session):
        api.get_session.return_value = stored_session
        assert store.load_session("conv-1") is True
        api.get_session.assert_called_once_with("conv-1")
        assert state.conversation_id == "conv-1"

    def test_missing(self, store, api):
        api.get_session.return_value = None
        assert store.load_session("gone") is False


class TestHistory:

    def test_load_history(self, store, api):
        api.list_sessions.return_value = [
            {"conversation_id": "b", "title": "Newer", "last_activity": "2026-03-10T10:00:00Z", "status": "active"},
            {"conversation_id": "a", "title": None, "last_activity": "2026-03-09T10:00:00Z", "status": "closed"},
        ]
        history = store.load_history()
        assert [s.conversation_id for s in history] == ["b", "a"]
        assert history[0].title == "Newer"

    def test_load_history_failure_is_empty(self, store, api):
        api.list_sessions.side_effect = ChatApiError("offline")
        assert store.load_history() == []


class TestRename:

    def test_success(self, store, api):
        assert store.rename_session("conv-1", "  Foo ") is True
        api.update_session.assert_called_once_with("conv-1", title="Foo")

    def test_blank_title_refused(self, store, api):
        assert store.rename_session("conv-1", "   ") is False
        api.update_session.assert_not_called()

    def test_failure_reports_false(self, store, api, state):
        _with_conversation(state)
        api.update_session.side_effect = ChatApiError("Conversation not found", 404)
        assert store.rename_session("conv-1", "Foo") is False
        assert state.conversation_id == "conv-1"


class TestDelete:

    def test_deleting_current_conversation_clears_state(self, store, api, state):
        _with_conversation(state)
        assert store.delete_session("conv-1") is True
        assert state.conversation_id is None
        assert state.messages == []

    def test_deleting_other_conversation_keeps_state(self, store, api, state):
        _with_conversation(state)
        assert store.delete_session("conv-2") is True
        assert state.conversation_id == "conv-1"
        assert len(state.messages) == 2

    def test_failure_keeps_state(self, store, api, state):
        _with_conversation(state)
        api.delete_session.side_effect = ChatApiError("offline")
        assert store.delete_session("conv-1") is False
        assert state.conversation_id == "conv-1"


class TestStartNewConversation:

    def test_clears_state_and_closes_remote(self, store, api, state):
        _with_conversation(state)
        state.set_error("old error")
        store.start_new_conversation()
        assert state.conversation_id is None
        assert state.messages == []
        assert state.error is None
        api.update_session.assert_called_once_with("conv-1", status="closed")

    def test_clears_state_even_if_close_fails(self, store, api, state):
        _with_conversation(state)
        api.update_session.side_effect = ChatApiError("offline")
        store.start_new_conversation()
        assert state.conversation_id is None
        assert state.messages == []

    def test_local_only(self, store, api, state):
        _with_conversation(state)
        store.start_new_conversation(close_remote=False)
        assert state.conversation_id is None
        api.update_session.assert_not_called()

    def test_without_conversation(self, store, api, state):
        store.start_new_conversation()
        api.update_session.assert_not_called()


class TestAgents:

    def test_first_agent_selected(self, store, api, state):
        api.list_agents.return_value = [{"slug": "library", "name": "Library"}, {"slug": "poet", "name": "Poet"}]
        agents = store.load_agents()
        assert [a.slug for a in agents] == ["library", "poet"]
        assert state.selected_agent == "library"

    def test_existing_selection_kept(self, store, api, state):
        state.selected_agent = "poet"
        api.list_agents.return_value = [{"slug": "library", "name": "Library"}, {"slug": "poet", "name": "Poet"}]
        store.load_agents()
        assert state.selected_agent == "poet"

    def test_failure(self, store, api, state):
        api.list_agents.side_effect = ChatApiError("offline")
        assert store.load_agents() == []
        assert state.selected_agent is None


class TestUsage:

    def test_load_usage(self, store, api, state):
        api.get_usage.return_value = {
            "limit": 1000, "used": 250, "remaining": 750, "percentage": 25.0, "reset_at": "2026-03-11T00:00:00Z",
        }
        usage = store.load_usage()
        assert usage is state.usage
        assert usage.percentage == pytest.approx(25.0)

    def test_failure(self, store, api, state):
        api.get_usage.side_effect = ChatApiError("offline")
        assert store.load_usage() is None
        assert state.usage is None

    def test_non_numeric_payload(self, store, api, state):
        api.get_usage.return_value = {"limit": "n/a", "used": 0, "remaining": 0, "percentage": 0, "reset_at": ""}
        assert store.load_usage() is None
        assert state.usage is None

    def test_incomplete_payload(self, store, api, state):
        api.get_usage.return_value = {"limit": 1000}
        assert store.load_usage() is None


class TestSourceContent:

    def test_fetches_missing_content_once(self, store, api):
        api.get_chunk.return_value = "Full passage."
        source = Source(id="chunk-1", title="On Liberty")

        hydrated = store.load_source_content(source)
        again = store.load_source_content(source)

        assert hydrated.content == "Full passage."
        assert again.content == "Full passage."
        assert source.content == ""
        api.get_chunk.assert_called_once_with("chunk-1")

    def test_source_with_content_untouched(self, store, api, sample_sources):
        assert store.load_source_content(sample_sources[0]) is sample_sources[0]
        api.get_chunk.assert_not_called()

    def test_failure_returns_source_unchanged(self, store, api):
        api.get_chunk.side_effect = ChatApiError("Document store unavailable", 503)
        source = Source(id="chunk-1", title="On Liberty")
        assert store.load_source_content(source) is source
