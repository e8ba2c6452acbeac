"""Celery tasks for Stripe event handling and billing housekeeping."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict

from celery import shared_task
from django.conf import settings
from django.db import IntegrityError, OperationalError, transaction
from django.utils import timezone

from billing.models import PointsPurchase, Subscription, WebhookEventLog
from billing.observability.metrics import FORFEITED_POINTS_COUNT
from billing.services.event_log import claim_event, fail_event, finish_event
from billing.services.ledger import ConcurrentModification, IdempotencyConflict, forfeit
from billing.services.reconciler import ReconciliationResult, handle_stripe_event
from billing.services.stripe_payments import StripeServiceError, cancel_gateway_subscription
from billing.services.subscriptions import get_current_subscription

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    queue="billing",
    autoretry_for=(IntegrityError, OperationalError, ConcurrentModification),
    retry_backoff=True,
    max_retries=5,
)
def process_stripe_event_async(self, event_data: Dict[str, Any]) -> Dict[str, Any]:
    """Process a verified Stripe webhook event, ensuring idempotency and logging."""

    event_id = event_data.get("id")
    event_type = event_data.get("type")

    claim = claim_event(event_data, stage=WebhookEventLog.Status.PROCESSING)
    if claim.already_handled:
        logger.info("Skipping Stripe event %s (%s); status=%s", event_id, event_type, claim.status)
        return {"status": "skipped"}
    log_entry = claim.entry

    try:
        result = handle_stripe_event(event_data)
    except IdempotencyConflict as exc:
        logger.warning("Idempotency conflict for event %s: %s", event_id, exc)
        fail_event(log_entry, str(exc))
        return {"status": "failed", "detail": str(exc)}
    except (IntegrityError, OperationalError, ConcurrentModification) as exc:
        fail_event(log_entry, str(exc))
        raise
    except Exception as exc:
        logger.exception("Unexpected error processing Stripe event %s", event_id)
        fail_event(log_entry, str(exc))
        raise self.retry(exc=exc)

    if result.status == ReconciliationResult.IGNORED:
        status = WebhookEventLog.Status.IGNORED
    else:
        # Inconsistent payments are parked for operators; redelivery would not help.
        status = WebhookEventLog.Status.PROCESSED
    finish_event(log_entry, status)

    logger.info(
        "Processed Stripe event %s (%s): %s",
        event_id,
        event_type,
        result.detail or result.status,
    )
    return {"status": result.status, "detail": result.detail}


@shared_task(bind=True, queue="billing", autoretry_for=(StripeServiceError,), retry_backoff=True, max_retries=3)
def cancel_gateway_subscription_task(self, external_subscription_id: str) -> Dict[str, Any]:
    """Cancel a Stripe subscription that was replaced by an upgrade."""

    cancel_gateway_subscription(external_subscription_id)
    logger.info("Cancelled replaced Stripe subscription %s.", external_subscription_id)
    return {"status": "cancelled", "subscription": external_subscription_id}


@shared_task(queue="billing")
def expire_overdue_subscriptions() -> int:
    """Run the lazy expiry accessor for every active row whose period has ended."""

    now = timezone.now()
    user_ids = (
        Subscription.objects.filter(status=Subscription.Status.ACTIVE, end_date__lt=now)
        .values_list("user_id", flat=True)
        .distinct()
    )

    expired = 0
    for user_id in list(user_ids):
        if get_current_subscription(user_id, now=now) is None:
            expired += 1

    if expired:
        logger.info("Expired %s overdue subscriptions.", expired)
    return expired


@shared_task(queue="billing")
def sweep_expired_package_points() -> Dict[str, int]:
    """Forfeit points from packages past their validity window, when the policy is enabled."""

    if not getattr(settings, "BILLING_SWEEP_EXPIRED_PACKAGE_POINTS", False):
        return {"purchases": 0, "points": 0}

    now = timezone.now()
    purchase_ids = list(
        PointsPurchase.objects.filter(expire_at__lte=now, swept_at__isnull=True).values_list("pk", flat=True)
    )

    swept_purchases = 0
    swept_points = 0
    for purchase_id in purchase_ids:
        with transaction.atomic():
            purchase = PointsPurchase.objects.select_for_update().filter(pk=purchase_id, swept_at__isnull=True).first()
            if purchase is None:
                continue
            result = forfeit(
                purchase.user_id,
                external_reference=f"package-expiry:{purchase.pk}",
                description="Points package expired",
                limit=purchase.total_points,
            )
            amount = -result.entry.delta if result.entry is not None else 0
            purchase.swept_points = amount
            purchase.swept_at = now
            purchase.save(update_fields=["swept_points", "swept_at"])

        swept_purchases += 1
        if result.created:
            swept_points += amount
            FORFEITED_POINTS_COUNT.labels(cause="package_expired").inc(amount)

    logger.info("Swept %s expired points packages (%s points).", swept_purchases, swept_points)
    return {"purchases": swept_purchases, "points": swept_points}


@shared_task(queue="maintenance")
def cleanup_webhook_event_logs(days: int = 7) -> int:
    """Remove processed webhook events older than ``days`` days."""

    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = WebhookEventLog.objects.filter(
        status__in=[WebhookEventLog.Status.PROCESSED, WebhookEventLog.Status.IGNORED],
        handled=True,
        processed_at__lt=cutoff,
    ).delete()

    logger.info("Cleaned up %s processed webhook events older than %s days.", deleted, days)
    return deleted
