"""Subscription audit trail for the authenticated user."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.filters import BillingAuditLogFilter
from billing.models import BillingAuditLog
from billing.pagination import LedgerPageNumberPagination
from billing.serializers import BillingAuditLogSerializer


class UserBillingAuditLogViewSet(ReadOnlyModelViewSet):
    serializer_class = BillingAuditLogSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = LedgerPageNumberPagination
    filterset_class = BillingAuditLogFilter
    ordering_fields = ("created_at", "event_type")
    ordering = ("-created_at",)

    def get_queryset(self):
        return BillingAuditLog.objects.filter(user=self.request.user).order_by("-created_at")
