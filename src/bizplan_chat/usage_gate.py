from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from bizplan_chat.errors import QuotaExceeded, SessionBusy, ValidationError

FREE_CONVERSATIONS_LIMIT = 10
PAID_CONVERSATIONS_LIMIT = 50


class SubscriptionStatus(str, Enum):
    FREE = "free"
    PAID = "paid"
    EXPIRED = "expired"


class SendDecision(str, Enum):
    ALLOWED = "allowed"
    BLOCKED_EMPTY = "blocked_empty"
    BLOCKED_BUSY = "blocked_busy"
    BLOCKED_QUOTA = "blocked_quota"


@dataclass(frozen=True)
class UsageCounters:
    free_used: int = 0
    paid_used: int = 0
    subscription_status: SubscriptionStatus = SubscriptionStatus.FREE


@dataclass(frozen=True)
class UsageLimits:
    free_limit: int = FREE_CONVERSATIONS_LIMIT
    paid_limit: int = PAID_CONVERSATIONS_LIMIT


def remaining_conversations(usage: UsageCounters, limits: UsageLimits = UsageLimits()) -> tuple[int, int]:
    """Return ``(free_remaining, paid_remaining)``. Paid credit only counts on a paid subscription."""
    free_remaining = max(0, limits.free_limit - usage.free_used)
    if usage.subscription_status is not SubscriptionStatus.PAID:
        return free_remaining, 0
    return free_remaining, max(0, limits.paid_limit - usage.paid_used)


def can_send(
    usage: UsageCounters,
    has_in_flight: bool,
    trimmed_input_length: int,
    limits: UsageLimits = UsageLimits(),
) -> SendDecision:
    if trimmed_input_length <= 0:
        return SendDecision.BLOCKED_EMPTY
    # Busy wins over quota so a second send is never queued behind the first.
    if has_in_flight:
        return SendDecision.BLOCKED_BUSY
    free_remaining, paid_remaining = remaining_conversations(usage, limits)
    if free_remaining == 0 and paid_remaining == 0:
        return SendDecision.BLOCKED_QUOTA
    return SendDecision.ALLOWED


def raise_for_decision(decision: SendDecision, usage: UsageCounters | None = None) -> None:
    if decision is SendDecision.ALLOWED:
        return
    if decision is SendDecision.BLOCKED_EMPTY:
        raise ValidationError("Message must not be empty.", ["Message must not be empty."])
    if decision is SendDecision.BLOCKED_BUSY:
        raise SessionBusy("Please wait for the current response before sending another message.")
    status = usage.subscription_status.value if usage is not None else "unknown"
    raise QuotaExceeded(f"Conversation limit reached (subscription={status}). Upgrade to continue chatting.")
