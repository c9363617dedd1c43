"""Spending ledger: token accounting and cost estimation for billable calls.

One SpendingEntry is recorded per embedding call and per LLM call. The
ledger is append-only; totals for a conversation or a day are always sums
over entries.
"""

import math
from datetime import datetime, timezone
from typing import Literal

import structlog
from pydantic import BaseModel, Field, model_validator

logger = structlog.get_logger(__name__)

ServiceType = Literal["embedding", "llm"]

# USD per token
PRICING: dict[str, dict[str, float]] = {
    "gemini-embedding-001": {"input": 0.15 / 1_000_000},
    "text-embedding-3-large": {"input": 0.13 / 1_000_000},
    "gpt-oss-120b": {"input": 0.35 / 1_000_000, "output": 0.75 / 1_000_000},
    "openai/gpt-oss-120b": {"input": 0.15 / 1_000_000, "output": 0.75 / 1_000_000},
    "gpt-4o-mini": {"input": 0.15 / 1_000_000, "output": 0.60 / 1_000_000},
}


class TokenCounts(BaseModel):
    """Token counts for one billable call."""
    input: int | None = Field(default=None, ge=0)
    output: int | None = Field(default=None, ge=0)
    total: int = Field(..., ge=0)


class SpendingEntry(BaseModel):
    """A single billable call attached to a conversation."""
    service: ServiceType
    model: str
    tokens: TokenCounts
    cost_usd: float | None = None
    timestamp: datetime

    @model_validator(mode="after")
    def _check_total(self) -> "SpendingEntry":
        if self.service == "llm":
            expected = (self.tokens.input or 0) + (self.tokens.output or 0)
        else:
            expected = self.tokens.input or 0
        if self.tokens.total != expected:
            raise ValueError(
                f"{self.service} entry total {self.tokens.total} does not match its parts ({expected})"
            )
        return self


def calculate_cost(model: str, tokens: TokenCounts) -> float:
    """Calculate the USD cost of a call.

    Args:
        model: Model identifier as reported by the provider.
        tokens: Token counts of the call.

    Returns:
        Cost in USD, 0.0 for models missing from the pricing table.
    """
    pricing = PRICING.get(model)
    if pricing is None:
        logger.warning("ledger.no_pricing", model=model)
        return 0.0

    if "output" in pricing:
        return (tokens.input or 0) * pricing["input"] + (tokens.output or 0) * pricing["output"]
    return tokens.total * pricing["input"]


def create_embedding_spending(model: str, tokens: int, timestamp: datetime | None = None) -> SpendingEntry:
    """Build the ledger entry for an embedding call."""
    counts = TokenCounts(input=tokens, total=tokens)
    return SpendingEntry(
        service="embedding",
        model=model,
        tokens=counts,
        cost_usd=calculate_cost(model, counts),
        timestamp=timestamp or datetime.now(timezone.utc),
    )


def create_llm_spending(
    model: str,
    input_tokens: int,
    output_tokens: int,
    timestamp: datetime | None = None,
) -> SpendingEntry:
    """Build the ledger entry for an LLM completion."""
    counts = TokenCounts(input=input_tokens, output=output_tokens, total=input_tokens + output_tokens)
    return SpendingEntry(
        service="llm",
        model=model,
        tokens=counts,
        cost_usd=calculate_cost(model, counts),
        timestamp=timestamp or datetime.now(timezone.utc),
    )


def calculate_total_tokens(entries: list[SpendingEntry]) -> int:
    return sum(entry.tokens.total for entry in entries)


def calculate_total_cost(entries: list[SpendingEntry]) -> float:
    return sum(entry.cost_usd or 0.0 for entry in entries)


def estimate_tokens_from_text(text: str) -> int:
    """Rough token estimate: ~4 chars per token, rounded up."""
    return math.ceil(len(text) / 4)


def format_cost(cost: float) -> str:
    """Format a USD amount with precision matched to its magnitude."""
    if cost < 0.01:
        return f"${cost:.6f}"
    if cost < 1:
        return f"${cost:.4f}"
    return f"${cost:.2f}"


def get_spending_breakdown(entries: list[SpendingEntry]) -> dict[str, dict[str, float]]:
    """Group tokens and cost by service.

    Returns:
        Dict with "embedding", "llm" and "total" buckets, each holding
        "tokens" and "cost".
    """
    breakdown = {
        "embedding": {"tokens": 0, "cost": 0.0},
        "llm": {"tokens": 0, "cost": 0.0},
        "total": {"tokens": 0, "cost": 0.0},
    }
    for entry in entries:
        bucket = breakdown[entry.service]
        bucket["tokens"] += entry.tokens.total
        bucket["cost"] += entry.cost_usd or 0.0
        breakdown["total"]["tokens"] += entry.tokens.total
        breakdown["total"]["cost"] += entry.cost_usd or 0.0
    return breakdown
