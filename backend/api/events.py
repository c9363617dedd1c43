"""Server-sent event protocol for the chat stream.

Every event is one line, `data: <json>`, where the JSON object carries a
`type` tag and a `data` payload. The stream ends with `data: [DONE]` or when
the channel closes. Used by the chat pipeline to encode and by the client
state machine to decode.
"""

import codecs
from typing import Annotated, Any, Iterable, Iterator, Literal, Union

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = structlog.get_logger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class Source(BaseModel):
    """Retrieved document chunk cited by an assistant reply.

    Accepts both the stream shape (`chunkIndex`, `relevanceScore`) and the
    history shape (`chunk_index`, no score or content).
    """
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    title: str
    slug: str = ""
    type: Literal["article", "book"] = "article"
    chunk_index: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("chunkIndex", "chunk_index"),
        serialization_alias="chunkIndex",
    )
    relevance_score: float = Field(
        default=0.0,
        validation_alias=AliasChoices("relevanceScore", "relevance_score"),
        serialization_alias="relevanceScore",
    )
    content: str = ""
    excerpt: str | None = None


class UsagePayload(BaseModel):
    """Usage snapshot sent after the reply: this turn plus today's totals."""
    tokens_used: int = 0
    cost_usd: float = 0.0
    daily_limit: int
    daily_used: int
    daily_remaining: int
    reset_at: str


class ErrorPayload(BaseModel):
    error: str = "Streaming error"


class ConversationIdEvent(BaseModel):
    type: Literal["conversation_id"] = "conversation_id"
    data: str


class TokenEvent(BaseModel):
    type: Literal["token"] = "token"
    data: str


class SourcesEvent(BaseModel):
    type: Literal["sources"] = "sources"
    data: list[Source]


class UsageEvent(BaseModel):
    type: Literal["usage"] = "usage"
    data: UsagePayload


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    data: dict[str, Any] | None = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    data: ErrorPayload = Field(default_factory=ErrorPayload)


StreamEvent = Annotated[
    Union[ConversationIdEvent, TokenEvent, SourcesEvent, UsageEvent, DoneEvent, ErrorEvent],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(StreamEvent)


def encode_event(event: BaseModel) -> str:
    """Frame one event as an SSE line followed by a blank line."""
    return f"{DATA_PREFIX}{event.model_dump_json(by_alias=True)}\n\n"


def encode_done() -> str:
    return f"{DATA_PREFIX}{DONE_SENTINEL}\n\n"


def decode_event(payload: str) -> StreamEvent:
    """Validate one JSON payload into its event type.

    Raises:
        ValidationError: If the payload is not JSON, has an unknown type,
            or its data does not match the event's schema.
    """
    return _event_adapter.validate_json(payload)


class StreamDecoder:
    """Incremental decoder for the chat event stream.

    Feed it raw chunks as they arrive. Bytes and lines split across chunks
    are buffered until complete; a bad event is skipped without affecting
    the rest of the stream.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.finished = False  # [DONE] seen
        self.skipped = 0

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Consume a chunk and return the events completed by it, in order."""
        if self.finished:
            return []

        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk

        *lines, self._buffer = self._buffer.split("\n")

        events = []
        for line in lines:
            event = self._parse_line(line)
            if self.finished:
                self._buffer = ""
                break
            if event is not None:
                events.append(event)
        return events

    def close(self) -> None:
        """Signal end of channel. An unterminated trailing line is dropped."""
        self._buffer += self._utf8.decode(b"", final=True)
        if self._buffer.strip() and not self.finished:
            logger.debug("stream.incomplete_line_dropped", length=len(self._buffer))
        self._buffer = ""

    def _parse_line(self, line: str) -> StreamEvent | None:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None

        data = line[len(DATA_PREFIX):]
        if data == DONE_SENTINEL:
            self.finished = True
            return None

        try:
            return decode_event(data)
        except ValidationError as e:
            self.skipped += 1
            logger.warning("stream.malformed_event", errors=e.error_count(), preview=data[:200])
            return None


def iter_events(chunks: Iterable[bytes | str]) -> Iterator[StreamEvent]:
    """Decode a whole stream, stopping at the [DONE] sentinel."""
    decoder = StreamDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
        if decoder.finished:
            break
    decoder.close()
