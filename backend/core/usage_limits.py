"""Daily token quotas and usage accounting.

Limits resolve from a manual override on the user, then from the product
metadata of the user's active Stripe subscription, then from a default per
account class. Usage is recomputed from the spending ledger on every call:
there is no day-bucketed counter and no reservation, so two concurrent
requests from the same user can both pass the check and overshoot the
limit by up to one request's worth of tokens.

Failure policy differs by path. The limit lookup alone degrades to the free
tier; the allow/deny check fails closed.
"""

import json
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from backend.core.chat_sessions import get_user_spending
from backend.core.database import UserRow, as_utc, get_session, utcnow
from backend.core.ledger import calculate_total_tokens, estimate_tokens_from_text

logger = structlog.get_logger(__name__)

DEFAULT_LIMITS = {
    "free": 1_000,
    "basic": 5_000,
    "pro": 20_000,
    "enterprise": 100_000,
}

_BILLABLE_STATUSES = {"active", "trialing"}
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass
class DailyTokenUsage:
    """Tokens consumed in the current UTC day.

    Attributes:
        date: ISO date (YYYY-MM-DD) of the current UTC day.
        tokens_used: Sum of tokens.total over today's ledger entries.
        reset_at: ISO timestamp of the next UTC midnight.
    """
    date: str
    tokens_used: int
    reset_at: str


@dataclass
class TokenLimitCheckResult:
    """Point-in-time allow/deny decision for one request."""
    allowed: bool
    limit: int
    used: int
    remaining: int
    reset_at: str
    message: str | None = None
    check_failed: bool = False


@dataclass
class UsageStats:
    limit: int
    used: int
    remaining: int
    percentage: float
    reset_at: str


def start_of_day(now: datetime) -> datetime:
    now = as_utc(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def next_reset_time(now: datetime) -> datetime:
    """Next UTC midnight after `now`."""
    return start_of_day(now) + timedelta(days=1)


def _iso(value: datetime) -> str:
    return as_utc(value).isoformat().replace("+00:00", "Z")


def get_user_daily_limit(user_id: str) -> int:
    """Resolve the daily token cap for a user. Never raises.

    Args:
        user_id: CMS user id.

    Returns:
        The manual override if positive, else the cap from the active
        subscription's product metadata, else the account-class default.
        Any lookup error yields the free-tier default.
    """
    try:
        with get_session() as session:
            user = session.get(UserRow, str(user_id))

        if user is None:
            logger.warning("usage.user_not_found", user_id=user_id)
            return DEFAULT_LIMITS["free"]

        if user.daily_token_limit and user.daily_token_limit > 0:
            return user.daily_token_limit

        subscription_limit = _limit_from_subscription(user.customer_inventory)
        if subscription_limit > 0:
            return subscription_limit

        return DEFAULT_LIMITS.get(user.account_class or "free", DEFAULT_LIMITS["free"])

    except Exception as e:
        logger.error("usage.limit_lookup_failed", user_id=user_id, error=str(e))
        return DEFAULT_LIMITS["free"]


def _limit_from_subscription(inventory: str | dict | None) -> int:
    """Extract `daily_token_limit` from the first active subscription's products.

    Returns:
        The first valid positive integer cap found, or 0.
    """
    try:
        if isinstance(inventory, str):
            inventory = json.loads(inventory)
        if not isinstance(inventory, dict):
            return 0

        subscriptions = inventory.get("subscriptions") or {}
        if isinstance(subscriptions, dict):
            subscriptions = list(subscriptions.values())

        active = next(
            (s for s in subscriptions if isinstance(s, dict) and s.get("status") in _BILLABLE_STATUSES),
            None,
        )
        if active is None:
            return 0

        for item in (active.get("items") or {}).get("data") or []:
            product = (item.get("price") or {}).get("product")
            # Unexpanded product ids are plain strings
            if not isinstance(product, dict) or product.get("deleted"):
                continue
            limit = _parse_positive_int((product.get("metadata") or {}).get("daily_token_limit"))
            if limit:
                return limit
        return 0

    except Exception as e:
        logger.error("usage.subscription_parse_failed", error=str(e))
        return 0


def _parse_positive_int(raw) -> int:
    """Leading integer of the value, as metadata editors type it ("5000 ", "5.5")."""
    if raw is None or isinstance(raw, bool):
        return 0
    match = _LEADING_INT.match(str(raw))
    if match is None:
        return 0
    value = int(match.group(1))
    return value if value > 0 else 0


def _compute_daily_usage(user_id: str, now: datetime) -> DailyTokenUsage:
    """Sum today's ledger entries over all of the user's sessions. May raise."""
    today = start_of_day(now)
    entries = get_user_spending(str(user_id))
    todays = [e for e in entries if as_utc(e.timestamp) >= today]
    return DailyTokenUsage(
        date=today.date().isoformat(),
        tokens_used=calculate_total_tokens(todays),
        reset_at=_iso(next_reset_time(now)),
    )


def get_current_daily_usage(user_id: str, now: datetime | None = None) -> DailyTokenUsage:
    """Today's usage for display. Lookup errors degrade to zero usage."""
    now = now or utcnow()
    try:
        return _compute_daily_usage(user_id, now)
    except Exception as e:
        logger.error("usage.daily_usage_failed", user_id=user_id, error=str(e))
        return DailyTokenUsage(
            date=start_of_day(now).date().isoformat(),
            tokens_used=0,
            reset_at=_iso(next_reset_time(now)),
        )


def check_token_limit(user_id: str, tokens_to_use: int, now: datetime | None = None) -> TokenLimitCheckResult:
    """Decide whether a request of `tokens_to_use` tokens fits in today's quota.

    Args:
        user_id: CMS user id.
        tokens_to_use: Server-side estimate for the prospective request.
        now: Evaluation instant, defaults to the current time.

    Returns:
        TokenLimitCheckResult. On any failure the result denies the request
        with limit 0 and `check_failed` set.
    """
    now = now or utcnow()
    try:
        limit = get_user_daily_limit(user_id)
        usage = _compute_daily_usage(user_id, now)

        remaining = max(0, limit - usage.tokens_used)
        allowed = usage.tokens_used + tokens_to_use <= limit

        return TokenLimitCheckResult(
            allowed=allowed,
            limit=limit,
            used=usage.tokens_used,
            remaining=remaining,
            reset_at=usage.reset_at,
            message=None if allowed else f"Daily token limit exceeded. Resets at {usage.reset_at}",
        )

    except Exception as e:
        logger.error("usage.limit_check_failed", user_id=user_id, error=str(e))
        return TokenLimitCheckResult(
            allowed=False,
            limit=0,
            used=0,
            remaining=0,
            reset_at=_iso(now),
            message="Error checking token limit",
            check_failed=True,
        )


def get_user_usage_stats(user_id: str, now: datetime | None = None) -> UsageStats:
    """Usage figures formatted for the usage bar."""
    limit = get_user_daily_limit(user_id)
    usage = get_current_daily_usage(user_id, now)

    remaining = max(0, limit - usage.tokens_used)
    percentage = (usage.tokens_used / limit) * 100 if limit > 0 else 0.0

    return UsageStats(
        limit=limit,
        used=usage.tokens_used,
        remaining=remaining,
        percentage=max(0.0, min(100.0, percentage)),
        reset_at=usage.reset_at,
    )


def estimate_request_tokens(message: str) -> int:
    """Pre-flight estimate: the prompt plus a fixed allowance for the reply."""
    reserve = int(os.environ.get("ESTIMATED_RESPONSE_TOKENS", "256"))
    return estimate_tokens_from_text(message) + reserve
