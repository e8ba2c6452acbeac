"""Turn gateway webhooks and client confirmations into exactly-once ledger effects.

Both channels derive the same external reference (the Checkout Session id) and pass
through ``reconcile_payment_event``, which keeps one ``PaymentReconciliation`` row per
reference. Whichever channel arrives first applies the payment; later deliveries are
reported as duplicates.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from billing.models import (
    LedgerEntry,
    PaymentInconsistency,
    PaymentKind,
    PaymentReconciliation,
    PointsBalance,
    PointsPurchase,
    Subscription,
)
from billing.observability.alerts import alert_reconciliation_failure
from billing.observability.metrics import CREDIT_APPLIED_COUNT, DUPLICATE_PAYMENT_COUNT
from billing.services import catalog
from billing.services.catalog import UnresolvedPlanOrPackage
from billing.services.ledger import credit, get_balance
from billing.services.stripe_payments import retrieve_checkout_session
from billing.services.subscriptions import (
    activate_subscription,
    apply_upgrade,
    mark_gateway_subscription_ended,
    renew_subscription,
)

logger = logging.getLogger(__name__)

User = get_user_model()

ZERO_DECIMAL_CURRENCIES: set[str] = {
    "bif",
    "clp",
    "djf",
    "gnf",
    "jpy",
    "kmf",
    "krw",
    "mga",
    "pyg",
    "rwf",
    "ugx",
    "vnd",
    "vuv",
    "xaf",
    "xof",
    "xpf",
}

PAID_STATUSES = {"paid"}


class ReconcilerError(Exception):
    """Base error for payment reconciliation."""


class PaymentOwnershipError(ReconcilerError):
    """Raised when a user confirms a checkout session that belongs to someone else."""


class _InconsistentPayment(ReconcilerError):
    def __init__(self, reason: str, detail: str):
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class PaymentEvent:
    """A paid checkout, normalised from a Stripe Checkout Session object."""

    external_reference: str
    kind: str
    user_id: Optional[str]
    amount: Decimal
    currency: str
    payment_status: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    external_subscription_id: str = ""
    external_customer_id: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one delivery; business conditions are statuses, not exceptions."""

    status: str
    detail: str = ""
    external_reference: Optional[str] = None
    kind: Optional[str] = None
    user_id: Optional[Any] = None
    balance: Optional[PointsBalance] = None
    subscription: Optional[Subscription] = None

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    PENDING = "pending"
    IGNORED = "ignored"
    INCONSISTENT = "inconsistent"


def normalize_checkout_session(session: Dict[str, Any]) -> PaymentEvent:
    metadata = dict(session.get("metadata") or {})
    currency = (session.get("currency") or "").lower()
    user_id = metadata.get("userId") or metadata.get("user_id") or session.get("client_reference_id")
    return PaymentEvent(
        external_reference=str(session.get("id") or ""),
        kind=str(metadata.get("type") or ""),
        user_id=str(user_id) if user_id else None,
        amount=_convert_minor_amount(session.get("amount_total"), currency),
        currency=currency,
        payment_status=str(session.get("payment_status") or ""),
        metadata=metadata,
        external_subscription_id=_object_id(session.get("subscription")),
        external_customer_id=_object_id(session.get("customer")),
        raw=session,
    )


def reconcile_payment_event(event: PaymentEvent, *, channel: str) -> ReconciliationResult:
    """Apply a paid event once, whichever channel delivers it."""

    if not event.external_reference:
        raise ValueError("Payment event has no external reference.")

    failure: Optional[_InconsistentPayment] = None

    with transaction.atomic():
        PaymentReconciliation.objects.get_or_create(
            external_reference=event.external_reference,
            defaults={"kind": event.kind if event.kind in PaymentKind.values else "", "first_channel": channel, "last_channel": channel},
        )
        record = PaymentReconciliation.objects.select_for_update().get(external_reference=event.external_reference)
        record.delivery_count += 1
        record.last_channel = channel

        if record.status == PaymentReconciliation.Status.APPLIED:
            record.save(update_fields=["delivery_count", "last_channel", "updated_at"])
            DUPLICATE_PAYMENT_COUNT.labels(channel=channel).inc()
            logger.info("Payment %s already applied; %s delivery is a no-op.", event.external_reference, channel)
            return ReconciliationResult(
                status=ReconciliationResult.DUPLICATE,
                detail="Payment already applied.",
                external_reference=event.external_reference,
                kind=record.kind,
                user_id=record.user_id,
                balance=get_balance(record.user_id) if record.user_id else None,
            )

        subscription: Optional[Subscription] = None
        try:
            with transaction.atomic():
                user = _resolve_user(event.user_id)
                subscription = _apply(event, user)
        except _InconsistentPayment as exc:
            failure = exc
            record.status = PaymentReconciliation.Status.INCONSISTENT
            record.last_error = f"{exc.reason}: {exc.detail}"
            record.user = _resolve_user_or_none(event.user_id)
            record.save(update_fields=["status", "last_error", "user", "delivery_count", "last_channel", "updated_at"])
            _record_inconsistency(
                reference=event.external_reference,
                kind=event.kind,
                channel=channel,
                reason=exc.reason,
                detail=exc.detail,
                payload=event.raw,
                user=record.user,
            )
        else:
            record.status = PaymentReconciliation.Status.APPLIED
            record.kind = event.kind
            record.user = user
            record.applied_at = timezone.now()
            record.last_error = ""
            record.save()
            PaymentInconsistency.objects.filter(external_reference=event.external_reference).delete()

    if failure is not None:
        alert_reconciliation_failure(
            reference=event.external_reference,
            reason=failure.reason,
            detail=failure.detail,
            user_id=event.user_id,
        )
        return ReconciliationResult(
            status=ReconciliationResult.INCONSISTENT,
            detail=failure.detail,
            external_reference=event.external_reference,
            kind=event.kind,
            user_id=event.user_id,
        )

    CREDIT_APPLIED_COUNT.labels(kind=event.kind, channel=channel).inc()
    logger.info("Applied %s payment %s via %s channel.", event.kind, event.external_reference, channel)
    return ReconciliationResult(
        status=ReconciliationResult.APPLIED,
        external_reference=event.external_reference,
        kind=event.kind,
        user_id=user.pk,
        balance=get_balance(user.pk),
        subscription=subscription,
    )


def confirm_checkout_session(session_id: str, *, user) -> ReconciliationResult:
    """Client-initiated confirmation after the Checkout redirect."""

    session = retrieve_checkout_session(session_id)
    event = normalize_checkout_session(session)

    if event.user_id and str(event.user_id) != str(user.pk):
        raise PaymentOwnershipError("Checkout session belongs to a different user.")

    if event.payment_status not in PAID_STATUSES:
        return ReconciliationResult(
            status=ReconciliationResult.PENDING,
            detail=f"Payment status is '{event.payment_status or 'unknown'}'.",
            external_reference=event.external_reference,
            kind=event.kind,
            user_id=user.pk,
        )

    return reconcile_payment_event(event, channel=PaymentReconciliation.Channel.SYNC)


def handle_stripe_event(event: Dict[str, Any]) -> ReconciliationResult:
    """Route a verified Stripe webhook event."""

    event_type = event.get("type") or ""
    handler = {
        "checkout.session.completed": _handle_checkout_session,
        "checkout.session.async_payment_succeeded": _handle_checkout_session,
        "invoice.payment_succeeded": _handle_invoice_paid,
        "customer.subscription.deleted": _handle_subscription_deleted,
    }.get(event_type)

    if handler is None:
        logger.info("Ignoring unsupported Stripe event type '%s'.", event_type)
        return ReconciliationResult(status=ReconciliationResult.IGNORED, detail="Unsupported event type")

    payload = (event.get("data") or {}).get("object") or {}
    return handler(payload)


def replay_inconsistency(inconsistency: PaymentInconsistency) -> ReconciliationResult:
    """Re-run a stored inconsistency through the channel that recorded it."""

    payload = dict(inconsistency.payload or {})
    if payload.get("object") == "invoice":
        return _handle_invoice_paid(payload)
    event = normalize_checkout_session(payload)
    return reconcile_payment_event(event, channel=inconsistency.channel)


def _handle_checkout_session(session: Dict[str, Any]) -> ReconciliationResult:
    event = normalize_checkout_session(session)
    if event.payment_status not in PAID_STATUSES:
        return ReconciliationResult(
            status=ReconciliationResult.IGNORED,
            detail=f"Checkout session not paid ({event.payment_status or 'unknown'}).",
            external_reference=event.external_reference,
        )
    return reconcile_payment_event(event, channel=PaymentReconciliation.Channel.ASYNC)


def _handle_invoice_paid(invoice: Dict[str, Any]) -> ReconciliationResult:
    # The first invoice of a subscription is covered by its checkout session.
    if invoice.get("billing_reason") != "subscription_cycle":
        return ReconciliationResult(status=ReconciliationResult.IGNORED, detail="Not a renewal invoice.")

    invoice_id = str(invoice.get("id") or "")
    subscription_id = _invoice_subscription_id(invoice)
    period_start, period_end = _extract_invoice_period(invoice)
    currency = (invoice.get("currency") or "").lower()
    amount = _convert_minor_amount(invoice.get("amount_paid"), currency)

    if not subscription_id or period_end is None:
        detail = "Renewal invoice has no subscription or period."
        result = None
    else:
        result = renew_subscription(
            subscription_id,
            external_reference=invoice_id,
            period_end=period_end,
            period_start=period_start,
            amount=amount,
        )
        detail = f"No active subscription matches {subscription_id}."

    if result is None:
        _record_inconsistency(
            reference=invoice_id,
            kind=PaymentKind.SUBSCRIPTION,
            channel=PaymentReconciliation.Channel.ASYNC,
            reason=PaymentInconsistency.Reason.UNKNOWN_SUBSCRIPTION,
            detail=detail,
            payload=invoice,
            user=None,
        )
        alert_reconciliation_failure(
            reference=invoice_id,
            reason=PaymentInconsistency.Reason.UNKNOWN_SUBSCRIPTION,
            detail=detail,
        )
        return ReconciliationResult(
            status=ReconciliationResult.INCONSISTENT,
            detail=detail,
            external_reference=invoice_id,
            kind=PaymentKind.SUBSCRIPTION,
        )

    PaymentInconsistency.objects.filter(external_reference=invoice_id).delete()
    if not result.ledger.created:
        DUPLICATE_PAYMENT_COUNT.labels(channel=PaymentReconciliation.Channel.ASYNC).inc()
        status = ReconciliationResult.DUPLICATE
    else:
        CREDIT_APPLIED_COUNT.labels(kind="renewal", channel=PaymentReconciliation.Channel.ASYNC).inc()
        status = ReconciliationResult.APPLIED
    return ReconciliationResult(
        status=status,
        external_reference=invoice_id,
        kind=PaymentKind.SUBSCRIPTION,
        user_id=result.subscription.user_id,
        balance=result.ledger.balance,
        subscription=result.subscription,
    )


def _handle_subscription_deleted(payload: Dict[str, Any]) -> ReconciliationResult:
    subscription_id = str(payload.get("id") or "")
    subscription = mark_gateway_subscription_ended(subscription_id) if subscription_id else None
    if subscription is None:
        return ReconciliationResult(status=ReconciliationResult.IGNORED, detail="No local subscription.")
    return ReconciliationResult(
        status=ReconciliationResult.APPLIED,
        external_reference=subscription_id,
        user_id=subscription.user_id,
        subscription=subscription,
    )


def _apply(event: PaymentEvent, user) -> Optional[Subscription]:
    metadata = event.metadata

    if event.kind == PaymentKind.SUBSCRIPTION:
        plan = _resolve_plan(metadata.get("planId"))
        grant = _resolve_grant(metadata, plan=plan, amount=event.amount)
        result = activate_subscription(
            user.pk,
            plan,
            external_reference=event.external_reference,
            points=grant.total,
            amount=event.amount,
            external_subscription_id=event.external_subscription_id,
            external_customer_id=event.external_customer_id,
        )
        return result.subscription

    if event.kind == PaymentKind.UPGRADE:
        plan = _resolve_plan(metadata.get("newPlanId") or metadata.get("planId"))
        grant = _resolve_grant(metadata, plan=plan, amount=event.amount)
        applied = apply_upgrade(
            user.pk,
            plan,
            external_reference=event.external_reference,
            replaced_subscription_id=metadata.get("currentSubscriptionId"),
            points=grant.total,
            amount=event.amount,
            external_subscription_id=event.external_subscription_id,
            external_customer_id=event.external_customer_id,
        )
        return applied.subscription

    if event.kind == PaymentKind.POINTS_PACKAGE:
        _apply_points_package(event, user)
        return None

    raise _InconsistentPayment(
        PaymentInconsistency.Reason.UNKNOWN_KIND,
        f"Unknown payment type '{event.kind or 'missing'}'.",
    )


def _apply_points_package(event: PaymentEvent, user) -> None:
    package = None
    package_id = event.metadata.get("packageId")
    if package_id:
        try:
            package = catalog.get_package(package_id, include_inactive=True)
        except UnresolvedPlanOrPackage as exc:
            raise _InconsistentPayment(PaymentInconsistency.Reason.UNRESOLVED_PACKAGE, str(exc)) from exc

    grant = _resolve_grant(event.metadata, package=package, amount=event.amount)
    name = package.name if package else "Points package"

    credit(
        user.pk,
        grant.points,
        LedgerEntry.Reason.RECHARGE,
        event.external_reference,
        description=name,
        metadata={"package": package.key if package else None, "source": grant.source},
        recharge_amount=event.amount,
    )
    if grant.bonus_points:
        credit(
            user.pk,
            grant.bonus_points,
            LedgerEntry.Reason.BONUS,
            f"{event.external_reference}:bonus",
            description=f"{name} bonus",
        )

    validity_days = package.validity_days if package else catalog.default_validity_days()
    paid_at = timezone.now()
    PointsPurchase.objects.get_or_create(
        external_reference=event.external_reference,
        defaults={
            "user": user,
            "package": package,
            "points": grant.points,
            "bonus_points": grant.bonus_points,
            "amount": event.amount,
            "currency": event.currency or (package.currency if package else "usd"),
            "paid_at": paid_at,
            "expire_at": paid_at + timedelta(days=validity_days),
        },
    )


def _resolve_plan(identifier: Any):
    try:
        return catalog.get_plan(identifier, include_inactive=True)
    except UnresolvedPlanOrPackage as exc:
        raise _InconsistentPayment(PaymentInconsistency.Reason.UNRESOLVED_PLAN, str(exc)) from exc


def _resolve_grant(metadata: Dict[str, Any], **kwargs):
    try:
        return catalog.resolve_granted_points(metadata, **kwargs)
    except UnresolvedPlanOrPackage as exc:
        raise _InconsistentPayment(PaymentInconsistency.Reason.MISSING_POINTS, str(exc)) from exc


def _resolve_user(user_id: Optional[str]):
    user = _resolve_user_or_none(user_id)
    if user is None:
        raise _InconsistentPayment(
            PaymentInconsistency.Reason.UNKNOWN_USER,
            f"No user matches '{user_id or 'missing'}'.",
        )
    return user


def _resolve_user_or_none(user_id: Optional[str]):
    if not user_id:
        return None
    try:
        return User.objects.get(pk=user_id)
    except (User.DoesNotExist, ValueError, TypeError):
        return None


def _record_inconsistency(
    *,
    reference: str,
    kind: str,
    channel: str,
    reason: str,
    detail: str,
    payload: Dict[str, Any],
    user,
) -> PaymentInconsistency:
    defaults = {
        "kind": kind or "",
        "channel": channel,
        "reason": reason,
        "detail": detail,
        "payload": payload,
        "user": user,
        "last_attempt_at": timezone.now(),
    }
    inconsistency, created = PaymentInconsistency.objects.get_or_create(
        external_reference=reference,
        defaults=defaults,
    )
    if not created:
        for key, value in defaults.items():
            setattr(inconsistency, key, value)
        inconsistency.retry_count = (inconsistency.retry_count or 0) + 1
        inconsistency.save()
    return inconsistency


def _object_id(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("id") or "")
    return str(value or "")


def _invoice_subscription_id(invoice: Dict[str, Any]) -> str:
    direct = _object_id(invoice.get("subscription"))
    if direct:
        return direct
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _object_id(details.get("subscription"))


def _extract_invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Derive coverage window for an invoice from its line items."""

    period_start = _coerce_timestamp(invoice.get("period_start"))
    period_end = _coerce_timestamp(invoice.get("period_end"))

    lines = (invoice.get("lines") or {}).get("data") or []
    if isinstance(lines, list):
        for line in lines:
            if not isinstance(line, dict):
                continue
            line_period = line.get("period") or {}
            line_start = _coerce_timestamp(line_period.get("start"))
            line_end = _coerce_timestamp(line_period.get("end"))

            if line_start and (period_start is None or line_start < period_start):
                period_start = line_start
            if line_end and (period_end is None or line_end > period_end):
                period_end = line_end

    return period_start, period_end


def _convert_minor_amount(value: Any, currency: str) -> Decimal:
    if value in (None, "", [], {}):
        return Decimal("0.00")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0.00")
    divisor = Decimal("1") if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES else Decimal("100")
    return (amount / divisor).quantize(Decimal("0.01"))


def _coerce_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=dt_timezone.utc)
    except (TypeError, ValueError):
        return None
