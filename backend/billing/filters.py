"""FilterSet definitions for billing endpoints."""
from __future__ import annotations

import django_filters

from billing.models import BillingAuditLog, LedgerEntry


class LedgerEntryFilter(django_filters.FilterSet):
    reason = django_filters.CharFilter(field_name="reason", lookup_expr="iexact")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")
    direction = django_filters.ChoiceFilter(
        choices=(("credit", "Credit"), ("debit", "Debit")),
        method="filter_direction",
    )

    class Meta:
        model = LedgerEntry
        fields = ["reason"]

    def filter_direction(self, queryset, name, value):
        if value == "credit":
            return queryset.filter(delta__gt=0)
        return queryset.filter(delta__lt=0)


class BillingAuditLogFilter(django_filters.FilterSet):
    event_type = django_filters.CharFilter(field_name="event_type", lookup_expr="iexact")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = BillingAuditLog
        fields = ["event_type"]
