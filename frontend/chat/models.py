"""Client-side chat model: messages, usage snapshot and status enums."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from backend.api.events import Source, UsagePayload
from backend.api.schemas import LimitInfo


class ChatStatus(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"


class TurnOutcome(str, Enum):
    """How a submit() call ended."""
    COMPLETED = "completed"
    REJECTED = "rejected"  # blank input or a turn already in flight
    LIMITED = "limited"    # daily quota exhausted (HTTP 429)
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    sources: list[Source] | None = None


def usage_percentage(used: int, limit: int) -> float:
    if limit <= 0:
        return 0.0
    return max(0.0, min(100.0, used / limit * 100))


@dataclass
class UsageSnapshot:
    """What the usage bar shows.

    Attributes:
        limit: Daily token cap.
        used: Tokens spent today.
        remaining: max(0, limit - used).
        percentage: used / limit as 0-100.
        reset_at: ISO-8601 time of the next UTC midnight.
        tokens_used: Tokens of the last turn, when known.
        cost_usd: Cost of the last turn, when known.
    """
    limit: int
    used: int
    remaining: int
    percentage: float
    reset_at: str
    tokens_used: int | None = None
    cost_usd: float | None = None

    @classmethod
    def from_limit_info(cls, info: dict) -> "UsageSnapshot":
        """Build from the `limit_info` object of a 429 response.

        Raises:
            ValidationError: If the object is missing fields or not numeric.
        """
        checked = LimitInfo.model_validate(info)
        return cls(
            limit=checked.limit,
            used=checked.used,
            remaining=checked.remaining,
            percentage=usage_percentage(checked.used, checked.limit),
            reset_at=checked.reset_at,
        )

    @classmethod
    def from_usage_payload(cls, payload: UsagePayload) -> "UsageSnapshot":
        return cls(
            limit=payload.daily_limit,
            used=payload.daily_used,
            remaining=payload.daily_remaining,
            percentage=usage_percentage(payload.daily_used, payload.daily_limit),
            reset_at=payload.reset_at,
            tokens_used=payload.tokens_used,
            cost_usd=payload.cost_usd,
        )

    def merged(self, **changes) -> "UsageSnapshot":
        """Copy with partial updates applied; percentage follows used/limit."""
        updated = replace(self, **changes)
        if "percentage" not in changes:
            updated.percentage = usage_percentage(updated.used, updated.limit)
        return updated


def parse_document_ids(raw: str) -> list[str]:
    """Split a comma or newline separated id list, dropping blanks and repeats."""
    ids: list[str] = []
    for part in raw.replace("\n", ",").split(","):
        doc_id = part.strip()
        if doc_id and doc_id not in ids:
            ids.append(doc_id)
    return ids
