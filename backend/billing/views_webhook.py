"""Stripe webhook endpoint: verify, record receipt, hand off to the billing queue."""
from __future__ import annotations

import logging

from django.http import HttpResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.models import WebhookEventLog
from billing.observability.metrics import WEBHOOK_SIGNATURE_FAILURE_COUNT
from billing.services.event_log import claim_event
from billing.services.stripe_payments import (
    StripeConfigurationError,
    StripeServiceError,
    UnverifiedEvent,
    parse_event,
)
from billing.tasks import process_stripe_event_async

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    """Only signature-verified events are recorded or queued; processing happens in the worker."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        try:
            payload = request.body.decode("utf-8")
        except UnicodeDecodeError:
            logger.error("Stripe webhook body is not valid UTF-8.")
            return HttpResponse(status=400)

        try:
            event = parse_event(payload=payload, sig_header=request.headers.get("Stripe-Signature") or "")
        except UnverifiedEvent:
            WEBHOOK_SIGNATURE_FAILURE_COUNT.inc()
            logger.warning("Rejected Stripe webhook with an invalid signature.")
            return HttpResponse(status=400)
        except StripeConfigurationError as exc:
            logger.error("Stripe webhooks are not configured: %s", exc)
            return HttpResponse(status=500)
        except StripeServiceError as exc:
            logger.warning("Rejected malformed Stripe webhook: %s", exc)
            return HttpResponse(status=400)

        claim = claim_event(event, stage=WebhookEventLog.Status.RECEIVED)
        if claim.already_handled:
            logger.info("Stripe event %s already handled (%s).", event.get("id"), claim.status)
            return Response({"status": claim.status}, status=200)

        process_stripe_event_async.delay(event)
        logger.info("Queued Stripe event %s (%s).", event.get("id"), event.get("type"))
        return Response({"status": "queued"}, status=202)
