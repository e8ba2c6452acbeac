"""Daily free-tier allowance, tracked independently of the points balance."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import IntegrityError, OperationalError, transaction
from django.utils import timezone

from billing.models import DailyQuota
from billing.services.ledger import ConcurrentModification


@dataclass(frozen=True)
class QuotaResult:
    remaining: int
    exhausted: bool
    total_uses: int


def daily_allowance() -> int:
    return int(getattr(settings, "BILLING_DAILY_FREE_USES", 10))


def remaining_free_uses(user_id, *, today: Optional[date] = None) -> int:
    """Free uses left today without consuming one."""

    today = today or timezone.localdate()
    row = DailyQuota.objects.filter(user_id=user_id, date=today).first()
    return daily_allowance() if row is None else row.free_uses_remaining


def try_consume_free(
    user_id,
    *,
    details: Optional[Dict[str, Any]] = None,
    today: Optional[date] = None,
) -> QuotaResult:
    """Take one free use for today if any is left.

    The day's row is created with the full allowance on first use. A denied attempt
    leaves the row untouched.
    """

    today = today or timezone.localdate()
    try:
        with transaction.atomic():
            DailyQuota.objects.get_or_create(
                user_id=user_id,
                date=today,
                defaults={"free_uses_remaining": daily_allowance()},
            )
            row = DailyQuota.objects.select_for_update().get(user_id=user_id, date=today)
            if row.free_uses_remaining <= 0:
                return QuotaResult(remaining=0, exhausted=True, total_uses=row.total_uses)

            row.free_uses_remaining -= 1
            row.total_uses += 1
            if details:
                row.call_log = list(row.call_log or []) + [_log_item(details)]
            row.save(update_fields=["free_uses_remaining", "total_uses", "call_log", "updated_at"])
    except (IntegrityError, OperationalError) as exc:
        raise ConcurrentModification(str(exc)) from exc

    return QuotaResult(remaining=row.free_uses_remaining, exhausted=False, total_uses=row.total_uses)


def record_usage(user_id, details: Dict[str, Any], *, today: Optional[date] = None) -> None:
    """Append call details (prompt, result URL) to today's log without touching the allowance."""

    today = today or timezone.localdate()
    try:
        with transaction.atomic():
            DailyQuota.objects.get_or_create(
                user_id=user_id,
                date=today,
                defaults={"free_uses_remaining": daily_allowance()},
            )
            row = DailyQuota.objects.select_for_update().get(user_id=user_id, date=today)
            row.call_log = list(row.call_log or []) + [_log_item(details)]
            row.save(update_fields=["call_log", "updated_at"])
    except (IntegrityError, OperationalError) as exc:
        raise ConcurrentModification(str(exc)) from exc


def _log_item(details: Dict[str, Any]) -> Dict[str, Any]:
    item = {"timestamp": timezone.now().isoformat()}
    item.update({key: value for key, value in details.items() if value not in (None, "")})
    return item
