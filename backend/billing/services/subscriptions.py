"""Subscription lifecycle: activation, renewal, cancellation, upgrade and lazy expiry.

All reads of a user's current subscription go through ``get_current_subscription``,
which expires overdue rows (and forfeits the balance) in the same transaction as the
read.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from billing.models import BillingAuditLog, LedgerEntry, Subscription, SubscriptionPlan
from billing.observability.metrics import FORFEITED_POINTS_COUNT
from billing.services import catalog
from billing.services.ledger import LedgerResult, credit, forfeit
from billing.services.stripe_payments import (
    cancel_gateway_subscription,
    create_upgrade_checkout_session,
    schedule_gateway_cancellation,
)

logger = logging.getLogger(__name__)


class SubscriptionLifecycleError(RuntimeError):
    """Base error for subscription lifecycle operations."""


class NoActiveSubscription(SubscriptionLifecycleError):
    """Raised when an operation needs an active subscription and there is none."""


class InvalidUpgrade(SubscriptionLifecycleError):
    """Raised when the requested plan is not an upgrade of the current one."""


@dataclass(frozen=True)
class ActivationResult:
    subscription: Subscription
    created: bool
    ledger: LedgerResult


@dataclass(frozen=True)
class UpgradeResult:
    subscription: Subscription
    redirect_url: Optional[str] = None
    checkout_session_id: Optional[str] = None


@dataclass(frozen=True)
class UpgradeApplied:
    previous: Optional[Subscription]
    subscription: Subscription
    ledger: LedgerResult


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamping the day to the target month's length."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_period_end(start: datetime, duration_unit: str) -> datetime:
    if duration_unit == SubscriptionPlan.DurationUnit.YEAR:
        return add_months(start, 12)
    return add_months(start, 1)


def get_current_subscription(user_id, *, now: Optional[datetime] = None) -> Optional[Subscription]:
    """Return the user's active subscription, expiring it first if its period has ended."""

    now = now or timezone.now()
    with transaction.atomic():
        subscription = (
            Subscription.objects.select_for_update()
            .select_related("plan")
            .filter(user_id=user_id, status=Subscription.Status.ACTIVE)
            .first()
        )
        if subscription is None:
            return None
        if subscription.end_date < now:
            _expire(subscription, actor="lazy-check")
            return None
        return subscription


def get_latest_subscription(user_id) -> Optional[Subscription]:
    """Most recent row of any status, after the lazy expiry check."""

    current = get_current_subscription(user_id)
    if current is not None:
        return current
    return Subscription.objects.select_related("plan").filter(user_id=user_id).order_by("-created_at").first()


def activate_subscription(
    user_id,
    plan: SubscriptionPlan,
    *,
    external_reference: str,
    points: Optional[int] = None,
    amount: Optional[Decimal] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    external_subscription_id: str = "",
    external_customer_id: str = "",
    actor: str = "reconciler",
) -> ActivationResult:
    """Create the active row, or update the existing one in place, and credit the plan's points."""

    now = timezone.now()
    start = period_start or now
    end = period_end or compute_period_end(start, plan.duration_unit)

    with transaction.atomic():
        subscription = (
            Subscription.objects.select_for_update()
            .filter(user_id=user_id, status=Subscription.Status.ACTIVE)
            .first()
        )
        if subscription is not None and subscription.end_date < now:
            _expire(subscription, actor=actor)
            subscription = None

        if subscription is None:
            subscription = Subscription.objects.create(
                user_id=user_id,
                plan=plan,
                status=Subscription.Status.ACTIVE,
                start_date=start,
                end_date=end,
                external_subscription_id=external_subscription_id or "",
                external_customer_id=external_customer_id or "",
            )
            created = True
        else:
            subscription.plan = plan
            subscription.start_date = start
            subscription.end_date = end
            subscription.cancel_at_period_end = False
            subscription.cancelled_at = None
            if external_subscription_id:
                subscription.external_subscription_id = external_subscription_id
            if external_customer_id:
                subscription.external_customer_id = external_customer_id
            subscription.save()
            created = False

        ledger_result = credit(
            user_id,
            points or plan.points,
            LedgerEntry.Reason.RECHARGE,
            external_reference,
            description=f"{plan.name} subscription",
            metadata={"subscription_id": str(subscription.pk), "plan": plan.key},
            recharge_amount=amount,
        )
        _audit(
            subscription,
            "billing.subscription.activated" if created else "billing.subscription.updated",
            actor=actor,
            stripe_id=external_subscription_id,
            details={"plan": plan.key, "end_date": end.isoformat(), "reference": external_reference},
        )

    return ActivationResult(subscription=subscription, created=created, ledger=ledger_result)


def renew_subscription(
    external_subscription_id: str,
    *,
    external_reference: str,
    period_end: datetime,
    period_start: Optional[datetime] = None,
    amount: Optional[Decimal] = None,
    actor: str = "reconciler",
) -> Optional[ActivationResult]:
    """Extend the row tied to a Stripe subscription after a paid renewal invoice.

    A paid invoice proves the subscription continued, so a row whose end date passed
    moments before the invoice arrived is extended rather than expired. When a read
    already expired it, a new active row is opened for the invoice period.
    """

    created = False
    with transaction.atomic():
        subscription = _active_for_gateway(external_subscription_id)
        if subscription is None:
            lapsed = (
                Subscription.objects.select_for_update()
                .select_related("plan")
                .filter(
                    external_subscription_id=external_subscription_id,
                    status=Subscription.Status.EXPIRED,
                    cancel_at_period_end=False,
                )
                .order_by("-end_date")
                .first()
            )
            if lapsed is None:
                return None

            # Another delivery of the same invoice may have reopened it while we waited for the lock.
            subscription = _active_for_gateway(external_subscription_id)
            if subscription is None:
                if Subscription.objects.filter(user_id=lapsed.user_id, status=Subscription.Status.ACTIVE).exists():
                    logger.warning(
                        "Renewal for %s arrived after expiry but user %s already has another active subscription.",
                        external_subscription_id,
                        lapsed.user_id,
                    )
                    return None
                subscription = Subscription.objects.create(
                    user_id=lapsed.user_id,
                    plan=lapsed.plan,
                    status=Subscription.Status.ACTIVE,
                    start_date=period_start or lapsed.end_date,
                    end_date=period_end,
                    external_subscription_id=external_subscription_id,
                    external_customer_id=lapsed.external_customer_id,
                    metadata={"renews": str(lapsed.pk)},
                )
                created = True

        if not created and period_end > subscription.end_date:
            subscription.end_date = period_end
            subscription.save(update_fields=["end_date", "updated_at"])

        ledger_result = credit(
            subscription.user_id,
            subscription.plan.points,
            LedgerEntry.Reason.RECHARGE,
            external_reference,
            description=f"{subscription.plan.name} renewal",
            metadata={"subscription_id": str(subscription.pk), "plan": subscription.plan.key},
            recharge_amount=amount,
        )
        _audit(
            subscription,
            "billing.subscription.reactivated" if created else "billing.subscription.renewed",
            actor=actor,
            stripe_id=external_subscription_id,
            details={"end_date": subscription.end_date.isoformat(), "reference": external_reference},
        )

    return ActivationResult(subscription=subscription, created=created, ledger=ledger_result)


def _active_for_gateway(external_subscription_id: str) -> Optional[Subscription]:
    return (
        Subscription.objects.select_for_update()
        .select_related("plan")
        .filter(external_subscription_id=external_subscription_id, status=Subscription.Status.ACTIVE)
        .first()
    )


def cancel_subscription(user_id, *, immediate: bool, actor: str = "user") -> Subscription:
    """Cancel at period end, or immediately with forfeiture of the balance.

    The Stripe call happens before any row is locked; a gateway failure leaves the
    local subscription untouched.
    """

    subscription = get_current_subscription(user_id)
    if subscription is None:
        raise NoActiveSubscription("No active subscription to cancel.")

    if subscription.external_subscription_id:
        if immediate:
            cancel_gateway_subscription(subscription.external_subscription_id)
        else:
            schedule_gateway_cancellation(subscription.external_subscription_id)

    with transaction.atomic():
        locked = Subscription.objects.select_for_update().select_related("plan").get(pk=subscription.pk)
        if locked.status != Subscription.Status.ACTIVE:
            raise NoActiveSubscription("Subscription changed state while cancelling.")

        now = timezone.now()
        locked.cancelled_at = now
        if immediate:
            locked.status = Subscription.Status.CANCELLED_IMMEDIATE
            locked.end_date = now
            locked.cancel_at_period_end = False
            locked.save(update_fields=["status", "end_date", "cancel_at_period_end", "cancelled_at", "updated_at"])
            _forfeit_for(locked, cause="cancelled")
        else:
            locked.cancel_at_period_end = True
            locked.save(update_fields=["cancel_at_period_end", "cancelled_at", "updated_at"])

        _audit(
            locked,
            "billing.subscription.cancelled",
            actor=actor,
            stripe_id=locked.external_subscription_id,
            details={"immediate": immediate},
        )

    return locked


def mark_gateway_subscription_ended(external_subscription_id: str, *, actor: str = "reconciler") -> Optional[Subscription]:
    """Stripe ended the subscription; keep access until the paid period runs out."""

    with transaction.atomic():
        subscription = (
            Subscription.objects.select_for_update()
            .filter(external_subscription_id=external_subscription_id, status=Subscription.Status.ACTIVE)
            .first()
        )
        if subscription is None or subscription.cancel_at_period_end:
            return subscription

        subscription.cancel_at_period_end = True
        subscription.cancelled_at = subscription.cancelled_at or timezone.now()
        subscription.save(update_fields=["cancel_at_period_end", "cancelled_at", "updated_at"])
        _audit(subscription, "billing.subscription.gateway_ended", actor=actor, stripe_id=external_subscription_id)
    return subscription


def upgrade_options(user_id) -> List[SubscriptionPlan]:
    subscription = get_current_subscription(user_id)
    if subscription is None:
        return []
    return catalog.plans_above(subscription.plan)


def start_upgrade(
    user,
    new_plan_id: Any,
    *,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> UpgradeResult:
    """Validate an upgrade and open a Checkout session for it.

    The local switch happens when the payment is reconciled (``apply_upgrade``).
    """

    subscription = get_current_subscription(user.pk)
    if subscription is None:
        raise NoActiveSubscription("An active subscription is required to upgrade.")

    new_plan = catalog.get_plan(new_plan_id)
    if new_plan.pk == subscription.plan_id:
        raise InvalidUpgrade("Already subscribed to this plan.")
    if new_plan.price <= subscription.plan.price:
        raise InvalidUpgrade("Only upgrades to a higher-priced plan are supported.")

    session = create_upgrade_checkout_session(
        user=user,
        subscription=subscription,
        new_plan=new_plan,
        success_url=success_url,
        cancel_url=cancel_url,
    )
    _audit(
        subscription,
        "billing.subscription.upgrade_requested",
        actor=str(user.pk),
        details={"to_plan": new_plan.key, "checkout_session_id": session.get("id")},
    )
    return UpgradeResult(subscription=subscription, redirect_url=session.get("url"), checkout_session_id=session.get("id"))


def apply_upgrade(
    user_id,
    new_plan: SubscriptionPlan,
    *,
    external_reference: str,
    replaced_subscription_id: Optional[str] = None,
    points: Optional[int] = None,
    amount: Optional[Decimal] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    external_subscription_id: str = "",
    external_customer_id: str = "",
    actor: str = "reconciler",
) -> UpgradeApplied:
    """Close the current row, open one on ``new_plan`` and credit the new plan's points.

    The balance is increased, never replaced. The replaced Stripe subscription is
    cancelled after commit.
    """

    now = timezone.now()
    start = period_start or now
    end = period_end or compute_period_end(start, new_plan.duration_unit)

    with transaction.atomic():
        previous = (
            Subscription.objects.select_for_update()
            .filter(user_id=user_id, status=Subscription.Status.ACTIVE)
            .first()
        )
        if previous is not None and replaced_subscription_id and str(previous.pk) != str(replaced_subscription_id):
            logger.warning(
                "Upgrade for user %s references subscription %s but %s is active; closing the active one.",
                user_id,
                replaced_subscription_id,
                previous.pk,
            )

        if previous is not None:
            previous.status = Subscription.Status.CANCELLED
            previous.cancelled_at = now
            previous.save(update_fields=["status", "cancelled_at", "updated_at"])

        subscription = Subscription.objects.create(
            user_id=user_id,
            plan=new_plan,
            status=Subscription.Status.ACTIVE,
            start_date=start,
            end_date=end,
            external_subscription_id=external_subscription_id or "",
            external_customer_id=external_customer_id or (previous.external_customer_id if previous else ""),
            metadata={"replaces": str(previous.pk)} if previous else {},
        )

        if previous is not None:
            previous.replaced_by = subscription
            previous.metadata = {**(previous.metadata or {}), "replaced_by": str(subscription.pk)}
            previous.save(update_fields=["replaced_by", "metadata", "updated_at"])

        ledger_result = credit(
            user_id,
            points or new_plan.points,
            LedgerEntry.Reason.RECHARGE,
            external_reference,
            description=f"Upgrade to {new_plan.name}",
            metadata={"subscription_id": str(subscription.pk), "plan": new_plan.key},
            recharge_amount=amount,
        )
        _audit(
            subscription,
            "billing.subscription.upgraded",
            actor=actor,
            stripe_id=external_subscription_id,
            details={
                "from_subscription": str(previous.pk) if previous else None,
                "to_plan": new_plan.key,
                "reference": external_reference,
            },
        )

        old_gateway_id = previous.external_subscription_id if previous else ""
        if old_gateway_id and old_gateway_id != external_subscription_id:
            from billing.tasks import cancel_gateway_subscription_task  # Lazy import to avoid circular dependency

            transaction.on_commit(lambda: cancel_gateway_subscription_task.delay(old_gateway_id))

    return UpgradeApplied(previous=previous, subscription=subscription, ledger=ledger_result)


def _expire(subscription: Subscription, *, actor: str) -> None:
    """Flip an overdue row to expired and forfeit the balance; caller holds the row lock."""

    subscription.status = Subscription.Status.EXPIRED
    subscription.save(update_fields=["status", "updated_at"])
    _forfeit_for(subscription, cause="expired")
    _audit(
        subscription,
        "billing.subscription.expired",
        actor=actor,
        stripe_id=subscription.external_subscription_id,
        details={"end_date": subscription.end_date.isoformat()},
    )
    logger.info("Subscription %s for user %s expired.", subscription.pk, subscription.user_id)


def _forfeit_for(subscription: Subscription, *, cause: str) -> None:
    result = forfeit(
        subscription.user_id,
        external_reference=f"forfeit:subscription:{subscription.pk}",
        description=f"Points forfeited: subscription {cause}",
    )
    if result.created and result.entry is not None:
        FORFEITED_POINTS_COUNT.labels(cause=cause).inc(-result.entry.delta)


def _audit(
    subscription: Subscription,
    event_type: str,
    *,
    actor: str,
    stripe_id: str = "",
    details: Optional[Dict[str, Any]] = None,
) -> None:
    BillingAuditLog.objects.create(
        user_id=subscription.user_id,
        subscription=subscription,
        event_type=event_type,
        stripe_id=stripe_id or "",
        actor=actor,
        details=details or {},
    )
