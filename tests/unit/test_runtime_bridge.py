"""Unit tests for the thread-rendering bridge."""

from datetime import datetime, timezone

import pytest

from frontend.chat.models import Message, TurnOutcome
from frontend.chat.runtime import AppendMessage, ChatRuntime, to_thread_messages
from frontend.chat.session import ChatSession, ChatState, TurnHandle


@pytest.fixture
def messages(sample_sources):
    ts = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
    return [
        Message(role="user", content="What is freedom?", timestamp=ts),
        Message(role="assistant", content="Freedom is...", timestamp=ts, sources=sample_sources),
        Message(role="user", content="Thanks", timestamp=ts),
        Message(role="assistant", content="You're welcome.", timestamp=ts),
    ]


class TestToThreadMessages:

    def test_ids_follow_position(self, messages):
        assert [m.id for m in to_thread_messages(messages)] == ["msg-0", "msg-1", "msg-2", "msg-3"]

    def test_content_parts(self, messages):
        thread = to_thread_messages(messages)
        assert thread[0].content == [{"type": "text", "text": "What is freedom?"}]
        assert thread[0].role == "user"
        assert thread[0].created_at == messages[0].timestamp

    def test_statuses(self, messages):
        thread = to_thread_messages(messages)
        assert thread[0].status is None
        assert thread[1].status == {"type": "complete", "reason": "stop"}

    def test_running_marks_last_reply(self, messages):
        thread = to_thread_messages(messages, running=True)
        assert thread[1].status == {"type": "complete", "reason": "stop"}
        assert thread[3].status == {"type": "running"}

    def test_sources_in_custom_metadata(self, messages):
        thread = to_thread_messages(messages)
        sources = thread[1].metadata["custom"]["sources"]
        assert [s["id"] for s in sources] == ["chunk-1", "chunk-2"]
        assert sources[0]["chunkIndex"] == 2
        assert thread[3].metadata == {"custom": {}}

    def test_ids_stable_as_thread_grows(self, messages):
        before = [m.id for m in to_thread_messages(messages[:2])]
        after = [m.id for m in to_thread_messages(messages)]
        assert after[:2] == before


class TestChatRuntime:

    @pytest.fixture
    def session(self, mocker):
        session = mocker.Mock(spec=ChatSession)
        session.state = ChatState()
        session.submit.return_value = TurnOutcome.COMPLETED
        return session

    def test_on_new_joins_text_parts(self, session):
        runtime = ChatRuntime(session)
        message = AppendMessage(content=[
            {"type": "text", "text": "What is "},
            {"type": "image", "image": "ignored"},
            {"type": "text", "text": "freedom?"},
        ])
        assert runtime.on_new(message) == TurnOutcome.COMPLETED
        session.submit.assert_called_once_with("What is freedom?", on_update=None)

    def test_blank_message_ignored(self, session):
        runtime = ChatRuntime(session)
        assert runtime.on_new(AppendMessage(content=[{"type": "text", "text": "  "}])) == TurnOutcome.REJECTED
        session.submit.assert_not_called()

    def test_messages_include_live_placeholder(self, session):
        session.state.messages = [Message(role="user", content="hi")]
        session.state.current_turn = TurnHandle(content="Hel")
        runtime = ChatRuntime(session)

        thread = runtime.messages
        assert [m.id for m in thread] == ["msg-0", "msg-1"]
        assert thread[1].content[0]["text"] == "Hel"
        assert thread[1].status == {"type": "running"}

    def test_is_running_follows_state(self, session):
        from frontend.chat.models import ChatStatus

        runtime = ChatRuntime(session)
        assert runtime.is_running is False
        session.state.status = ChatStatus.STREAMING
        assert runtime.is_running is True
