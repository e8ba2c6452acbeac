"""Shared response helpers for billing API views."""
from __future__ import annotations

from rest_framework.response import Response

from billing.observability.logging import log_billing_event
from billing.observability.metrics import BILLING_REQUEST_COUNT
from billing.services.stripe_payments import StripeConfigurationError


class BillingMetricsMixin:
    endpoint_label: str = "billing"
    method: str = "POST"

    def _record_request(self, status: int) -> None:
        BILLING_REQUEST_COUNT.labels(
            endpoint=self.endpoint_label,
            method=self.method,
            status=str(status),
        ).inc()

    def _success_response(self, payload, *, status: int = 200, user_id=None, message: str | None = None):
        self._record_request(status)
        if message:
            log_billing_event(message=message, user_id=user_id)
        return Response(payload, status=status)

    def _error_response(
        self,
        *,
        status: int,
        code: str,
        message: str,
        details: dict | None = None,
        user_id=None,
    ):
        self._record_request(status)
        log_billing_event(
            message=message,
            user_id=user_id,
            extra={"code": code, "details": details or {}},
        )
        payload = {"code": code, "message": message, "details": details or {}}
        return Response(payload, status=status)

    def _gateway_error_response(self, exc: Exception, *, user_id=None):
        if isinstance(exc, StripeConfigurationError):
            return self._error_response(
                status=503,
                code="payments_unavailable",
                message="Payments are not configured.",
                user_id=user_id,
            )
        return self._error_response(
            status=502,
            code="stripe_error",
            message=str(exc),
            user_id=user_id,
        )
