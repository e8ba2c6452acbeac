"""Balance, ledger history, usage and consumption endpoints."""
from __future__ import annotations

from datetime import timedelta

from django.conf import settings
from django.db.models import Sum
from django.utils import timezone
from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.filters import LedgerEntryFilter
from billing.models import LedgerEntry, PointsPurchase
from billing.observability.metrics import BILLING_REQUEST_LATENCY
from billing.pagination import LedgerPageNumberPagination
from billing.serializers import (
    ConsumeRequestSerializer,
    LedgerEntrySerializer,
    PointsBalanceSerializer,
    PointsPurchaseSerializer,
    SubscriptionSerializer,
)
from billing.services.consumption import consume, generation_cost, usage_summary
from billing.services.ledger import ConcurrentModification, get_balance
from billing.views.mixins import BillingMetricsMixin


class BalanceView(BillingMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "balance"
    method = "GET"

    def get(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            balance = get_balance(request.user.pk)
            return self._success_response(PointsBalanceSerializer(balance).data)


class LedgerEntryViewSet(ReadOnlyModelViewSet):
    """Ledger history for the authenticated user, newest first."""

    serializer_class = LedgerEntrySerializer
    permission_classes = [IsAuthenticated]
    pagination_class = LedgerPageNumberPagination
    filterset_class = LedgerEntryFilter
    ordering_fields = ("created_at", "delta")
    ordering = ("-created_at",)

    def get_queryset(self):
        return LedgerEntry.objects.filter(user=self.request.user).order_by("-created_at")


class UsageSummaryView(BillingMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "usage.summary"
    method = "GET"

    def get(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            summary = usage_summary(request.user.pk)
            subscription = summary["subscription"]
            payload = {
                "subscription": SubscriptionSerializer(subscription).data if subscription else None,
                "balance": PointsBalanceSerializer(summary["balance"]).data,
                "free_uses_remaining": summary["free_uses_remaining"],
                "daily_free_uses": summary["daily_free_uses"],
                "generation_cost": summary["generation_cost"],
                "can_generate": summary["can_generate"],
            }
            return self._success_response(payload)


class ExpiringPointsView(BillingMetricsMixin, APIView):
    """Points packages whose validity window closes soon."""

    permission_classes = [IsAuthenticated]
    endpoint_label = "points.expiring"
    method = "GET"

    def get(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            now = timezone.now()
            horizon = now + timedelta(days=int(getattr(settings, "BILLING_EXPIRY_WARNING_DAYS", 7)))
            purchases = PointsPurchase.objects.select_related("package").filter(
                user=request.user,
                expire_at__gt=now,
                expire_at__lte=horizon,
                swept_at__isnull=True,
            ).order_by("expire_at")
            totals = purchases.aggregate(points=Sum("points"), bonus=Sum("bonus_points"))
            payload = {
                "expiring_before": horizon,
                "points": (totals["points"] or 0) + (totals["bonus"] or 0),
                "purchases": PointsPurchaseSerializer(purchases, many=True).data,
            }
            return self._success_response(payload)


class ConsumeView(BillingMetricsMixin, APIView):
    """Charge one generation; a denial is a normal 402 answer, never an error page."""

    permission_classes = [IsAuthenticated]
    endpoint_label = "consume"

    def post(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            serializer = ConsumeRequestSerializer(data=request.data)
            if not serializer.is_valid():
                return self._error_response(
                    status=400,
                    code="invalid_request",
                    message="Invalid consumption request.",
                    details=serializer.errors,
                    user_id=request.user.pk,
                )

            cost = generation_cost()
            try:
                result = consume(request.user.pk, cost, details=serializer.get_details())
            except ConcurrentModification:
                return self._error_response(
                    status=409,
                    code="concurrent_modification",
                    message="The balance changed while charging; please retry.",
                    user_id=request.user.pk,
                )

            payload = {
                "allowed": result.allowed,
                "source": result.source,
                "remaining": result.remaining,
                "reason": result.reason,
                "watermark": result.watermark,
                "free_uses_remaining": result.free_uses_remaining,
                "cost": cost,
                "balance": PointsBalanceSerializer(result.balance).data if result.balance is not None else None,
            }
            if not result.allowed:
                return self._success_response(
                    payload,
                    status=402,
                    user_id=request.user.pk,
                    message="Generation denied: payment required",
                )
            return self._success_response(
                payload,
                user_id=request.user.pk,
                message=f"Generation charged to {result.source}",
            )
