"""Receipt log for Stripe events, shared by the webhook endpoint and the worker.

Each event id gets one ``WebhookEventLog`` row. Claiming an event moves the row to
the caller's stage (``received`` at the endpoint, ``processing`` in the worker) unless
it was already handled, in which case the delivery is a duplicate.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.db import transaction
from django.utils import timezone

from billing.models import WebhookEventLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventClaim:
    entry: Optional[WebhookEventLog]
    already_handled: bool

    @property
    def status(self) -> str:
        return self.entry.status if self.entry is not None else "unknown"


def event_digest(event: Dict[str, Any]) -> str:
    """Stable sha256 of the event body, independent of key order."""

    serialized = json.dumps(event, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def claim_event(event: Dict[str, Any], *, stage: str) -> EventClaim:
    event_id = event.get("id")
    if not event_id:
        logger.warning("Stripe event without an id; it will be handled without a receipt.")
        return EventClaim(entry=None, already_handled=False)

    event_type = event.get("type") or ""
    digest = event_digest(event)
    with transaction.atomic():
        entry, created = WebhookEventLog.objects.select_for_update().get_or_create(
            event_id=event_id,
            defaults={"event_type": event_type, "status": stage, "payload_hash": digest},
        )
        if created:
            return EventClaim(entry=entry, already_handled=False)
        if entry.handled:
            return EventClaim(entry=entry, already_handled=True)

        entry.event_type = event_type or entry.event_type
        entry.status = stage
        entry.payload_hash = digest
        entry.last_error = ""
        entry.processed_at = None
        entry.save(update_fields=["event_type", "status", "payload_hash", "last_error", "processed_at"])
    return EventClaim(entry=entry, already_handled=False)


def finish_event(entry: Optional[WebhookEventLog], status: str) -> None:
    if entry is None:
        return
    entry.status = status
    entry.handled = True
    entry.last_error = ""
    entry.processed_at = timezone.now()
    entry.save(update_fields=["status", "handled", "last_error", "processed_at"])


def fail_event(entry: Optional[WebhookEventLog], error: str) -> None:
    """Leave the event unhandled so a redelivery or retry runs it again."""

    if entry is None:
        return
    entry.status = WebhookEventLog.Status.FAILED
    entry.handled = False
    entry.last_error = error
    entry.processed_at = None
    entry.save(update_fields=["status", "handled", "last_error", "processed_at"])
