"""Pydantic models for the API layer.

Defines request/response schemas for all endpoints. Field names follow the
wire contract consumed by the chat widget, hence the camelCase aliases on
ChatRequest.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatRequest(BaseModel):
    """Incoming chat message from the widget."""
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1, max_length=4000, description="User question")
    selected_documents: list[str] | None = Field(default=None, alias="selectedDocuments")
    chat_id: str | None = Field(default=None, alias="chatId", description="Existing conversation id")
    agent_slug: str | None = Field(default=None, alias="agentSlug")

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("message must not be blank")
        return value


class SourceRecord(BaseModel):
    """Source reference as stored in session history (no content, no score)."""
    id: str
    title: str
    slug: str = ""
    type: Literal["article", "book"] = "article"
    chunk_index: int = Field(default=0, ge=0)


class MessageRecord(BaseModel):
    """Single message in a conversation history."""
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime
    sources: list[SourceRecord] | None = None


class SessionResponse(BaseModel):
    """Full message history of one conversation."""
    conversation_id: str
    title: str | None = None
    status: Literal["active", "closed"]
    agent_slug: str | None = None
    messages: list[MessageRecord] = Field(default_factory=list)


class SessionSummary(BaseModel):
    """Row of the history list."""
    conversation_id: str
    title: str | None = None
    last_activity: datetime
    status: Literal["active", "closed"]


class SessionsResponse(BaseModel):
    sessions: list[SessionSummary]


class SessionUpdateRequest(BaseModel):
    """Rename and/or close a conversation."""
    title: str | None = Field(default=None, min_length=1, max_length=200)
    status: Literal["closed"] | None = None


class AgentInfo(BaseModel):
    slug: str
    name: str


class AgentsResponse(BaseModel):
    agents: list[AgentInfo]


class LimitInfo(BaseModel):
    """Quota snapshot returned alongside a 429."""
    limit: int
    used: int
    remaining: int
    reset_at: str


class UsageStatsResponse(BaseModel):
    limit: int
    used: int
    remaining: int
    percentage: float
    reset_at: str


class ChunkResponse(BaseModel):
    id: str
    content: str
