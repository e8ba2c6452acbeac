"""Points package checkout and client-side payment confirmation endpoints."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView

from billing.observability.metrics import BILLING_REQUEST_LATENCY
from billing.serializers import (
    ConfirmPaymentSerializer,
    PointsBalanceSerializer,
    PointsPurchaseRequestSerializer,
    SubscriptionSerializer,
)
from billing.services import catalog
from billing.services.catalog import UnresolvedPlanOrPackage
from billing.services.ledger import ConcurrentModification, get_balance
from billing.services.reconciler import PaymentOwnershipError, ReconciliationResult, confirm_checkout_session
from billing.services.stripe_payments import (
    StripeConfigurationError,
    StripeServiceError,
    create_points_checkout_session,
)
from billing.services.subscriptions import get_current_subscription
from billing.views.mixins import BillingMetricsMixin


class PointsPurchaseView(BillingMetricsMixin, APIView):
    """Start a Checkout session for a points package; subscribers only."""

    permission_classes = [IsAuthenticated]
    endpoint_label = "points.purchase"

    def post(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            serializer = PointsPurchaseRequestSerializer(data=request.data)
            if not serializer.is_valid():
                return self._error_response(
                    status=400,
                    code="invalid_request",
                    message="Invalid purchase request.",
                    details=serializer.errors,
                    user_id=request.user.pk,
                )

            if get_current_subscription(request.user.pk) is None:
                return self._error_response(
                    status=403,
                    code="subscription_required",
                    message="An active subscription is required to buy points packages.",
                    user_id=request.user.pk,
                )

            try:
                package = catalog.get_package(serializer.validated_data["package_id"])
            except UnresolvedPlanOrPackage as exc:
                return self._error_response(
                    status=404,
                    code="package_not_found",
                    message=str(exc),
                    user_id=request.user.pk,
                )

            try:
                session = create_points_checkout_session(
                    user=request.user,
                    package=package,
                    success_url=serializer.validated_data.get("success_url"),
                    cancel_url=serializer.validated_data.get("cancel_url"),
                )
            except (StripeConfigurationError, StripeServiceError) as exc:
                return self._gateway_error_response(exc, user_id=request.user.pk)

            return self._success_response(
                {"checkout_session_id": session.get("id"), "checkout_url": session.get("url")},
                status=201,
                user_id=request.user.pk,
                message=f"Points checkout created for package {package.key}",
            )


class ConfirmPaymentView(BillingMetricsMixin, APIView):
    """Synchronous confirmation after the Checkout redirect.

    The session is re-read from Stripe; nothing in the request body besides its id is
    trusted. The webhook may already have applied the payment, in which case the answer
    is the same balance with ``status=duplicate``.
    """

    permission_classes = [IsAuthenticated]
    endpoint_label = "payments.confirm"

    def post(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            serializer = ConfirmPaymentSerializer(data=request.data)
            if not serializer.is_valid():
                return self._error_response(
                    status=400,
                    code="invalid_request",
                    message="Invalid confirmation request.",
                    details=serializer.errors,
                    user_id=request.user.pk,
                )

            session_id = serializer.validated_data["session_id"]
            try:
                result = confirm_checkout_session(session_id, user=request.user)
            except PaymentOwnershipError as exc:
                return self._error_response(status=403, code="forbidden", message=str(exc), user_id=request.user.pk)
            except ConcurrentModification:
                return self._error_response(
                    status=409,
                    code="concurrent_modification",
                    message="Payment is being applied by another request; please retry.",
                    user_id=request.user.pk,
                )
            except (StripeConfigurationError, StripeServiceError) as exc:
                return self._gateway_error_response(exc, user_id=request.user.pk)

            # Operators are alerted on inconsistencies; the buyer only sees processing.
            if result.status in (ReconciliationResult.PENDING, ReconciliationResult.INCONSISTENT):
                return self._success_response(
                    {"status": ReconciliationResult.PENDING, "session_id": session_id},
                    status=202,
                    user_id=request.user.pk,
                    message=f"Payment {session_id} not applied yet ({result.status})",
                )

            balance = result.balance if result.balance is not None else get_balance(request.user.pk)
            subscription = result.subscription or get_current_subscription(request.user.pk)
            payload = {
                "status": result.status,
                "session_id": session_id,
                "kind": result.kind,
                "balance": PointsBalanceSerializer(balance).data,
                "subscription": SubscriptionSerializer(subscription).data if subscription else None,
            }
            return self._success_response(
                payload,
                user_id=request.user.pk,
                message=f"Payment {session_id} confirmed ({result.status})",
            )
