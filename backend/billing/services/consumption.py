"""Single entry point deciding whether a generation may run and who pays for it."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import transaction

from billing.models import PointsBalance
from billing.observability.metrics import CONSUMPTION_COUNT
from billing.services.ledger import ConcurrentModification, InsufficientFunds, debit, get_balance
from billing.services.quota import daily_allowance, record_usage, remaining_free_uses, try_consume_free
from billing.services.subscriptions import get_current_subscription

logger = logging.getLogger(__name__)

SOURCE_POINTS = "points"
SOURCE_FREE = "free"
REASON_NEEDS_PAYMENT = "needs_payment"


@dataclass(frozen=True)
class ConsumptionResult:
    allowed: bool
    source: Optional[str] = None
    remaining: Optional[int] = None
    reason: Optional[str] = None
    watermark: bool = False
    free_uses_remaining: Optional[int] = None
    balance: Optional[PointsBalance] = None


def generation_cost() -> int:
    return int(getattr(settings, "BILLING_GENERATION_COST", 10))


def consume(user_id, cost: int, *, details: Optional[Dict[str, Any]] = None) -> ConsumptionResult:
    """Charge ``cost`` points, falling back to one free use, or deny.

    Points are always tried before the daily allowance. A racing writer is retried once.
    """

    if cost <= 0:
        raise ValueError("Cost must be a positive integer.")

    try:
        result = _consume_once(user_id, cost, details)
    except ConcurrentModification:
        logger.info("Concurrent modification while charging user %s; retrying once.", user_id)
        result = _consume_once(user_id, cost, details)

    CONSUMPTION_COUNT.labels(source=result.source or "denied").inc()
    return result


def _consume_once(user_id, cost: int, details: Optional[Dict[str, Any]]) -> ConsumptionResult:
    # Lazy expiry first, so a lapsed subscription's points cannot be spent.
    get_current_subscription(user_id)

    # The charge and its usage log entry commit together.
    try:
        with transaction.atomic():
            ledger_result = debit(
                user_id,
                cost,
                description="Image generation",
                metadata=_ledger_metadata(details),
            )
            if details:
                record_usage(user_id, {**details, "source": SOURCE_POINTS, "cost": cost})
    except InsufficientFunds:
        ledger_result = None

    if ledger_result is not None:
        return ConsumptionResult(
            allowed=True,
            source=SOURCE_POINTS,
            remaining=ledger_result.balance.available_points,
            free_uses_remaining=remaining_free_uses(user_id),
            balance=ledger_result.balance,
        )

    quota = try_consume_free(
        user_id,
        details={**details, "source": SOURCE_FREE} if details else None,
    )
    if not quota.exhausted:
        return ConsumptionResult(
            allowed=True,
            source=SOURCE_FREE,
            remaining=quota.remaining,
            watermark=True,
            free_uses_remaining=quota.remaining,
            balance=get_balance(user_id),
        )

    return ConsumptionResult(
        allowed=False,
        reason=REASON_NEEDS_PAYMENT,
        remaining=0,
        free_uses_remaining=0,
        balance=get_balance(user_id),
    )


def usage_summary(user_id) -> Dict[str, Any]:
    """What the generation page needs to decide whether to show the purchase prompt."""

    subscription = get_current_subscription(user_id)
    balance = get_balance(user_id)
    free_remaining = remaining_free_uses(user_id)
    cost = generation_cost()
    return {
        "subscription": subscription,
        "balance": balance,
        "free_uses_remaining": free_remaining,
        "daily_free_uses": daily_allowance(),
        "generation_cost": cost,
        "can_generate": balance.available_points >= cost or free_remaining > 0,
    }


def _ledger_metadata(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not details:
        return {}
    return {key: value for key, value in details.items() if key in ("prompt", "image_url", "request_id")}
