"""Subscription lookup, checkout, cancellation and upgrade endpoints."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView

from billing.observability.metrics import BILLING_REQUEST_LATENCY
from billing.serializers import (
    SubscriptionCancelSerializer,
    SubscriptionCheckoutSerializer,
    SubscriptionPlanSerializer,
    SubscriptionSerializer,
)
from billing.services import catalog
from billing.services.catalog import UnresolvedPlanOrPackage
from billing.services.stripe_payments import (
    StripeConfigurationError,
    StripeServiceError,
    create_subscription_checkout_session,
)
from billing.services.subscriptions import (
    InvalidUpgrade,
    NoActiveSubscription,
    cancel_subscription,
    get_current_subscription,
    get_latest_subscription,
    start_upgrade,
    upgrade_options,
)
from billing.views.mixins import BillingMetricsMixin


class SubscriptionView(BillingMetricsMixin, APIView):
    """Current subscription; reading it applies the lazy expiry check."""

    permission_classes = [IsAuthenticated]
    endpoint_label = "subscription"
    method = "GET"

    def get(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            subscription = get_current_subscription(request.user.pk)
            latest = subscription or get_latest_subscription(request.user.pk)
            payload = {
                "subscription": SubscriptionSerializer(subscription).data if subscription else None,
                "latest": SubscriptionSerializer(latest).data if latest else None,
            }
            return self._success_response(payload)


class SubscriptionCheckoutView(BillingMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "subscription.checkout"

    def post(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            serializer = SubscriptionCheckoutSerializer(data=request.data)
            if not serializer.is_valid():
                return self._error_response(
                    status=400,
                    code="invalid_request",
                    message="Invalid checkout request.",
                    details=serializer.errors,
                    user_id=request.user.pk,
                )

            try:
                plan = catalog.get_plan(serializer.validated_data["plan_id"])
            except UnresolvedPlanOrPackage as exc:
                return self._error_response(status=404, code="plan_not_found", message=str(exc), user_id=request.user.pk)

            current = get_current_subscription(request.user.pk)
            if current is not None:
                return self._error_response(
                    status=409,
                    code="subscription_active",
                    message="You already have an active subscription; upgrade it instead.",
                    details={"subscription_id": str(current.pk), "plan": current.plan.key},
                    user_id=request.user.pk,
                )

            try:
                session = create_subscription_checkout_session(
                    user=request.user,
                    plan=plan,
                    success_url=serializer.validated_data.get("success_url"),
                    cancel_url=serializer.validated_data.get("cancel_url"),
                )
            except (StripeConfigurationError, StripeServiceError) as exc:
                return self._gateway_error_response(exc, user_id=request.user.pk)

            return self._success_response(
                {"checkout_session_id": session.get("id"), "checkout_url": session.get("url")},
                status=201,
                user_id=request.user.pk,
                message=f"Subscription checkout created for plan {plan.key}",
            )


class SubscriptionCancelView(BillingMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "subscription.cancel"

    def post(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            serializer = SubscriptionCancelSerializer(data=request.data)
            if not serializer.is_valid():
                return self._error_response(
                    status=400,
                    code="invalid_request",
                    message="Invalid cancellation request.",
                    details=serializer.errors,
                    user_id=request.user.pk,
                )

            immediate = serializer.validated_data["immediate"]
            try:
                subscription = cancel_subscription(request.user.pk, immediate=immediate, actor=str(request.user.pk))
            except NoActiveSubscription as exc:
                return self._error_response(
                    status=409,
                    code="no_active_subscription",
                    message=str(exc),
                    user_id=request.user.pk,
                )
            except (StripeConfigurationError, StripeServiceError) as exc:
                return self._gateway_error_response(exc, user_id=request.user.pk)

            return self._success_response(
                {"subscription": SubscriptionSerializer(subscription).data},
                user_id=request.user.pk,
                message="Subscription cancelled immediately" if immediate else "Subscription set to cancel at period end",
            )


class SubscriptionUpgradeView(BillingMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "subscription.upgrade"

    def get(self, request):
        self.method = "GET"
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            plans = upgrade_options(request.user.pk)
            return self._success_response({"plans": SubscriptionPlanSerializer(plans, many=True).data})

    def post(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            serializer = SubscriptionCheckoutSerializer(data=request.data)
            if not serializer.is_valid():
                return self._error_response(
                    status=400,
                    code="invalid_request",
                    message="Invalid upgrade request.",
                    details=serializer.errors,
                    user_id=request.user.pk,
                )

            try:
                result = start_upgrade(
                    request.user,
                    serializer.validated_data["plan_id"],
                    success_url=serializer.validated_data.get("success_url"),
                    cancel_url=serializer.validated_data.get("cancel_url"),
                )
            except UnresolvedPlanOrPackage as exc:
                return self._error_response(status=404, code="plan_not_found", message=str(exc), user_id=request.user.pk)
            except NoActiveSubscription as exc:
                return self._error_response(
                    status=409,
                    code="no_active_subscription",
                    message=str(exc),
                    user_id=request.user.pk,
                )
            except InvalidUpgrade as exc:
                return self._error_response(status=400, code="invalid_upgrade", message=str(exc), user_id=request.user.pk)
            except (StripeConfigurationError, StripeServiceError) as exc:
                return self._gateway_error_response(exc, user_id=request.user.pk)

            payload = {
                "subscription": SubscriptionSerializer(result.subscription).data,
                "redirect_url": result.redirect_url,
                "checkout_session_id": result.checkout_session_id,
            }
            return self._success_response(payload, user_id=request.user.pk, message="Upgrade checkout created")
