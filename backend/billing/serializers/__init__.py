"""DRF serializers for billing flows (catalog, balance, subscriptions, consumption, checkout)."""
from __future__ import annotations

from typing import Any, Dict, Optional

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from billing.models import (
    BillingAuditLog,
    LedgerEntry,
    PointsBalance,
    PointsPackage,
    PointsPurchase,
    Subscription,
    SubscriptionPlan,
)

CONSUME_DETAIL_MAX_LENGTH = 2000


class SubscriptionPlanSerializer(serializers.ModelSerializer):
    """Plan catalog entry with a flag for the caller's current plan."""

    is_current = serializers.SerializerMethodField()

    class Meta:
        model = SubscriptionPlan
        fields = (
            "id",
            "key",
            "name",
            "description",
            "price",
            "currency",
            "duration_unit",
            "points",
            "is_current",
        )
        read_only_fields = fields

    def get_is_current(self, obj: SubscriptionPlan) -> bool:
        current_plan_id = self.context.get("current_plan_id")
        return current_plan_id is not None and str(current_plan_id) == str(obj.pk)


class PointsPackageSerializer(serializers.ModelSerializer):
    total_points = serializers.IntegerField(read_only=True)

    class Meta:
        model = PointsPackage
        fields = (
            "id",
            "key",
            "name",
            "description",
            "price",
            "currency",
            "points",
            "bonus_points",
            "total_points",
            "validity_days",
        )
        read_only_fields = fields


class PointsBalanceSerializer(serializers.ModelSerializer):
    user_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = PointsBalance
        fields = (
            "user_id",
            "total_points",
            "available_points",
            "used_points",
            "expired_points",
            "lifetime_recharge_amount",
            "updated_at",
        )
        read_only_fields = fields


class LedgerEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = LedgerEntry
        fields = (
            "id",
            "delta",
            "reason",
            "external_reference",
            "balance_after",
            "description",
            "metadata",
            "created_at",
        )
        read_only_fields = fields


class SubscriptionSerializer(serializers.ModelSerializer):
    """Subscription snapshot; ``state`` folds period-end cancellation into the lifecycle."""

    plan = SubscriptionPlanSerializer(read_only=True)
    state = serializers.CharField(source="lifecycle_state", read_only=True)
    replaced_by = serializers.UUIDField(source="replaced_by_id", read_only=True)

    class Meta:
        model = Subscription
        fields = (
            "id",
            "plan",
            "status",
            "state",
            "start_date",
            "end_date",
            "cancel_at_period_end",
            "cancelled_at",
            "external_subscription_id",
            "replaced_by",
            "created_at",
        )
        read_only_fields = fields


class PointsPurchaseSerializer(serializers.ModelSerializer):
    package = serializers.CharField(source="package.key", read_only=True, default=None)
    total_points = serializers.IntegerField(read_only=True)

    class Meta:
        model = PointsPurchase
        fields = (
            "id",
            "package",
            "points",
            "bonus_points",
            "total_points",
            "amount",
            "currency",
            "paid_at",
            "expire_at",
            "swept_points",
        )
        read_only_fields = fields


class BillingAuditLogSerializer(serializers.ModelSerializer):
    subscription_id = serializers.UUIDField(read_only=True)

    class Meta:
        model = BillingAuditLog
        fields = (
            "id",
            "event_type",
            "subscription_id",
            "stripe_id",
            "actor",
            "details",
            "created_at",
        )
        read_only_fields = fields


class ConsumeRequestSerializer(serializers.Serializer):
    """Optional call details kept in the day's log; the price is fixed on the server."""

    prompt = serializers.CharField(required=False, allow_blank=True, max_length=CONSUME_DETAIL_MAX_LENGTH)
    image_url = serializers.URLField(required=False, allow_blank=True, max_length=CONSUME_DETAIL_MAX_LENGTH)
    request_id = serializers.CharField(required=False, allow_blank=True, max_length=128)

    def get_details(self) -> Optional[Dict[str, Any]]:
        details = {
            key: self.validated_data.get(key)
            for key in ("prompt", "image_url", "request_id")
            if self.validated_data.get(key)
        }
        return details or None


class CheckoutRedirectSerializer(serializers.Serializer):
    success_url = serializers.URLField(required=False)
    cancel_url = serializers.URLField(required=False)


class SubscriptionCheckoutSerializer(CheckoutRedirectSerializer):
    plan_id = serializers.CharField()


class PointsPurchaseRequestSerializer(CheckoutRedirectSerializer):
    package_id = serializers.CharField()


class SubscriptionCancelSerializer(serializers.Serializer):
    immediate = serializers.BooleanField(default=False)


class ConfirmPaymentSerializer(serializers.Serializer):
    session_id = serializers.CharField(max_length=255)

    def validate_session_id(self, value: str) -> str:
        value = value.strip()
        if not value.startswith("cs_"):
            raise serializers.ValidationError(_("Not a Checkout Session identifier."))
        return value
