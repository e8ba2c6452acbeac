"""Operator alerts for payments that were taken but could not be applied."""
from __future__ import annotations

import logging
from typing import Any, Optional

from django.core.mail import mail_admins

from billing.observability.metrics import RECONCILIATION_INCONSISTENCY_COUNT

logger = logging.getLogger("billing.alerts")


def alert_reconciliation_failure(*, reference: str, reason: str, detail: str, user_id: Optional[Any] = None) -> None:
    RECONCILIATION_INCONSISTENCY_COUNT.labels(reason=reason).inc()
    logger.error(
        "Payment %s could not be applied (%s): %s [user=%s]",
        reference,
        reason,
        detail,
        user_id or "unknown",
    )
    try:
        mail_admins(
            subject=f"Unapplied payment {reference}",
            message=(
                f"Reference: {reference}\nReason: {reason}\nUser: {user_id or 'unknown'}\n\n{detail}\n\n"
                "Run `manage.py replay_payment_inconsistencies` after fixing the catalog."
            ),
            fail_silently=False,
        )
    except Exception:  # noqa: BLE001
        logger.exception("Failed to mail admins about payment %s", reference)
