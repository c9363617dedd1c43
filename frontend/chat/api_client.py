"""HTTP client for the chat service.

Thin wrapper over `requests`. Every call sends the caller's identity in the
X-User-Id header; non-2xx responses and transport failures surface as
ChatApiError carrying the status code and decoded JSON body, if any.
"""

import os
from typing import Iterator

import requests
import structlog

logger = structlog.get_logger(__name__)


class ChatApiError(Exception):
    """Request to the chat service failed."""

    def __init__(self, message: str, status_code: int | None = None, payload: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}

    @property
    def limit_info(self) -> dict | None:
        """Quota snapshot of a 429, if the server sent one."""
        if self.status_code == 429 and isinstance(self.payload.get("limit_info"), dict):
            return self.payload["limit_info"]
        return None


class ChatApiClient:
    """Client for the chat endpoints of the backend."""

    def __init__(
        self,
        base_url: str | None = None,
        user_id: str | None = None,
        timeout: float | None = None,
        http: requests.Session | None = None,
    ):
        self.base_url = (base_url or os.environ.get("API_URL", "http://localhost:8000")).rstrip("/")
        self.user_id = user_id or os.environ.get("CHAT_USER_ID", "anonymous")
        self.timeout = timeout or float(os.environ.get("CHAT_TIMEOUT", "60"))
        self._http = http or requests.Session()
        self._http.headers["X-User-Id"] = self.user_id

    # Streaming

    def stream_chat(self, payload: dict) -> Iterator[bytes]:
        """POST /chat and return an iterator over raw body chunks.

        The status is checked before any body is read, so quota and
        validation errors raise here rather than mid-iteration.

        Raises:
            ChatApiError: On a non-200 status or transport failure. Reading
                the returned iterator raises it on a broken stream.
        """
        resp = self._send("POST", "/chat", json=payload, stream=True)
        if resp.status_code != 200:
            body = _json_or_none(resp)
            resp.close()
            raise ChatApiError(_error_message(body, resp.status_code), resp.status_code, body)
        return _iter_body(resp)

    # Sessions

    def get_active_session(self) -> dict | None:
        """Most recent open session, or None when the user has none."""
        resp = self._send("GET", "/chat/session", params={"active": "true"})
        if resp.status_code == 404:
            return None
        return _checked_json(resp)

    def get_session(self, conversation_id: str) -> dict | None:
        resp = self._send("GET", "/chat/session", params={"conversationId": conversation_id})
        if resp.status_code == 404:
            return None
        return _checked_json(resp)

    def list_sessions(self) -> list[dict]:
        return _checked_json(self._send("GET", "/chat/sessions")).get("sessions", [])

    def update_session(self, conversation_id: str, title: str | None = None, status: str | None = None) -> None:
        body = {k: v for k, v in (("title", title), ("status", status)) if v is not None}
        resp = self._send("PATCH", "/chat/session", params={"conversationId": conversation_id}, json=body)
        _checked_json(resp)

    def delete_session(self, conversation_id: str) -> None:
        resp = self._send("DELETE", "/chat/session", params={"conversationId": conversation_id})
        _checked_json(resp)

    # Lookups

    def list_agents(self) -> list[dict]:
        return _checked_json(self._send("GET", "/chat/agents")).get("agents", [])

    def get_usage(self) -> dict:
        return _checked_json(self._send("GET", "/chat/usage"))

    def get_chunk(self, chunk_id: str) -> str | None:
        """Full text of one document chunk, or None if it no longer exists."""
        resp = self._send("GET", f"/chat/chunks/{chunk_id}")
        if resp.status_code == 404:
            return None
        return _checked_json(resp).get("content")

    def health(self) -> dict:
        return _checked_json(self._send("GET", "/health", timeout=3))

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self._http.request(method, f"{self.base_url}{path}", **kwargs)
        except requests.RequestException as e:
            logger.warning("api.request_failed", method=method, path=path, error=str(e))
            raise ChatApiError(f"Cannot reach the chat service: {e}") from e


def _iter_body(resp: requests.Response) -> Iterator[bytes]:
    try:
        for chunk in resp.iter_content(chunk_size=None):
            if chunk:
                yield chunk
    except requests.RequestException as e:
        raise ChatApiError(f"Stream interrupted: {e}") from e
    finally:
        resp.close()


def _json_or_none(resp: requests.Response) -> dict | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _error_message(body: dict | None, status_code: int) -> str:
    if body:
        for key in ("error", "detail"):
            if isinstance(body.get(key), str):
                return body[key]
    return f"Request failed with status {status_code}"


def _checked_json(resp: requests.Response) -> dict:
    body = _json_or_none(resp)
    if not 200 <= resp.status_code < 300:
        raise ChatApiError(_error_message(body, resp.status_code), resp.status_code, body)
    return body or {}
