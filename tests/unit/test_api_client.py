"""Unit tests for the HTTP client (mocked requests session)."""

import pytest
import requests

from frontend.chat.api_client import ChatApiClient, ChatApiError


def _response(mocker, status_code=200, body=None, chunks=()):
    resp = mocker.Mock()
    resp.status_code = status_code
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    resp.iter_content.return_value = iter(chunks)
    return resp


@pytest.fixture
def http(mocker):
    session = mocker.Mock()
    session.headers = {}
    return session


@pytest.fixture
def client(http):
    return ChatApiClient(base_url="http://api.test/", user_id="user-7", timeout=5, http=http)


class TestConfig:

    def test_identity_header(self, client, http):
        assert http.headers["X-User-Id"] == "user-7"
        assert client.base_url == "http://api.test"

    def test_env_defaults(self, monkeypatch, http):
        monkeypatch.setenv("API_URL", "http://from-env:9000")
        monkeypatch.setenv("CHAT_USER_ID", "env-user")
        monkeypatch.setenv("CHAT_TIMEOUT", "12")
        client = ChatApiClient(http=http)
        assert client.base_url == "http://from-env:9000"
        assert client.timeout == 12.0
        assert http.headers["X-User-Id"] == "env-user"


class TestStreamChat:

    def test_yields_body_chunks(self, mocker, client, http):
        resp = _response(mocker, chunks=[b"data: a", b"", b"bc\n"])
        http.request.return_value = resp

        chunks = list(client.stream_chat({"message": "hi"}))

        assert chunks == [b"data: a", b"bc\n"]
        http.request.assert_called_once_with(
            "POST", "http://api.test/chat", json={"message": "hi"}, stream=True, timeout=5
        )
        resp.close.assert_called()

    def test_quota_error_carries_limit_info(self, mocker, client, http):
        limit_info = {"limit": 1000, "used": 950, "remaining": 50, "reset_at": "T"}
        http.request.return_value = _response(
            mocker, 429, {"error": "Daily token limit exceeded. Resets at T", "limit_info": limit_info}
        )
        with pytest.raises(ChatApiError) as exc:
            client.stream_chat({"message": "hi"})
        assert exc.value.status_code == 429
        assert exc.value.limit_info == limit_info
        assert str(exc.value) == "Daily token limit exceeded. Resets at T"

    def test_validation_error_uses_detail(self, mocker, client, http):
        http.request.return_value = _response(mocker, 401, {"detail": "Missing X-User-Id header"})
        with pytest.raises(ChatApiError, match="Missing X-User-Id header") as exc:
            client.stream_chat({"message": "hi"})
        assert exc.value.limit_info is None

    def test_non_json_error_body(self, mocker, client, http):
        http.request.return_value = _response(mocker, 502)
        with pytest.raises(ChatApiError, match="status 502"):
            client.stream_chat({"message": "hi"})

    def test_transport_failure(self, client, http):
        http.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(ChatApiError, match="Cannot reach"):
            client.stream_chat({"message": "hi"})

    def test_broken_stream(self, mocker, client, http):
        def chunks():
            yield b"data: "
            raise requests.exceptions.ChunkedEncodingError("reset")

        resp = _response(mocker)
        resp.iter_content.return_value = chunks()
        http.request.return_value = resp

        iterator = client.stream_chat({"message": "hi"})
        assert next(iterator) == b"data: "
        with pytest.raises(ChatApiError, match="Stream interrupted"):
            next(iterator)


class TestSessionCalls:

    def test_active_session_not_found(self, mocker, client, http):
        http.request.return_value = _response(mocker, 404, {"error": "No active session"})
        assert client.get_active_session() is None
        http.request.assert_called_once_with(
            "GET", "http://api.test/chat/session", params={"active": "true"}, timeout=5
        )

    def test_update_sends_only_given_fields(self, mocker, client, http):
        http.request.return_value = _response(mocker, 200, {"success": True})
        client.update_session("conv-1", title="Foo")
        http.request.assert_called_once_with(
            "PATCH", "http://api.test/chat/session",
            params={"conversationId": "conv-1"}, json={"title": "Foo"}, timeout=5,
        )

    def test_delete_failure_raises(self, mocker, client, http):
        http.request.return_value = _response(mocker, 404, {"error": "Conversation not found"})
        with pytest.raises(ChatApiError, match="Conversation not found"):
            client.delete_session("conv-1")

    def test_list_sessions(self, mocker, client, http):
        http.request.return_value = _response(mocker, 200, {"sessions": [{"conversation_id": "a"}]})
        assert client.list_sessions() == [{"conversation_id": "a"}]

    def test_missing_chunk(self, mocker, client, http):
        http.request.return_value = _response(mocker, 404, {"error": "Chunk not found"})
        assert client.get_chunk("chunk-9") is None
