"""Plan and points package catalog endpoints."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView

from billing.observability.metrics import BILLING_REQUEST_LATENCY
from billing.serializers import PointsPackageSerializer, SubscriptionPlanSerializer
from billing.services import catalog
from billing.services.subscriptions import get_current_subscription
from billing.views.mixins import BillingMetricsMixin


class SubscriptionPlanListView(BillingMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "plans.list"
    method = "GET"

    def get(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            subscription = get_current_subscription(request.user.pk)
            serializer = SubscriptionPlanSerializer(
                catalog.list_plans(),
                many=True,
                context={"current_plan_id": subscription.plan_id if subscription else None},
            )
            return self._success_response({"plans": serializer.data})


class PointsPackageListView(BillingMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "packages.list"
    method = "GET"

    def get(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self.method).time():
            serializer = PointsPackageSerializer(catalog.list_packages(), many=True)
            return self._success_response({"packages": serializer.data})
