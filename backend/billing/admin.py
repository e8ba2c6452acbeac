from django.contrib import admin

from .models import (
    BillingAuditLog,
    DailyQuota,
    LedgerEntry,
    PaymentInconsistency,
    PaymentReconciliation,
    PointsBalance,
    PointsPackage,
    PointsPurchase,
    Subscription,
    SubscriptionPlan,
    WebhookEventLog,
)


@admin.register(SubscriptionPlan)
class SubscriptionPlanAdmin(admin.ModelAdmin):
    list_display = ("key", "name", "price", "currency", "duration_unit", "points", "is_active", "sort_order")
    list_filter = ("is_active", "duration_unit")
    search_fields = ("key", "name", "stripe_product_id")
    ordering = ("sort_order", "price")


@admin.register(PointsPackage)
class PointsPackageAdmin(admin.ModelAdmin):
    list_display = ("key", "name", "price", "currency", "points", "bonus_points", "validity_days", "is_active")
    list_filter = ("is_active",)
    search_fields = ("key", "name")
    ordering = ("sort_order", "price")


@admin.register(PointsBalance)
class PointsBalanceAdmin(admin.ModelAdmin):
    """Balances move only through the ledger; the admin shows them read-only."""

    list_display = (
        "user",
        "available_points",
        "total_points",
        "used_points",
        "expired_points",
        "lifetime_recharge_amount",
        "updated_at",
    )
    search_fields = ("user__username", "user__email")
    list_select_related = ("user",)
    readonly_fields = (
        "user",
        "total_points",
        "available_points",
        "used_points",
        "expired_points",
        "lifetime_recharge_amount",
        "created_at",
        "updated_at",
    )

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(LedgerEntry)
class LedgerEntryAdmin(admin.ModelAdmin):
    """Read-only audit trail for point movements."""

    list_display = ("created_at", "user", "delta", "reason", "balance_after", "external_reference")
    list_filter = ("reason", "created_at")
    search_fields = ("external_reference", "user__username", "user__email", "description")
    list_select_related = ("user",)
    date_hierarchy = "created_at"
    readonly_fields = tuple(field.name for field in LedgerEntry._meta.fields)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "user",
        "plan",
        "status",
        "cancel_at_period_end",
        "start_date",
        "end_date",
        "external_subscription_id",
    )
    list_filter = ("status", "cancel_at_period_end", "plan")
    search_fields = ("user__username", "user__email", "external_subscription_id", "external_customer_id")
    list_select_related = ("user", "plan")
    raw_id_fields = ("user", "replaced_by")
    readonly_fields = ("created_at", "updated_at", "cancelled_at")


@admin.register(DailyQuota)
class DailyQuotaAdmin(admin.ModelAdmin):
    list_display = ("user", "date", "free_uses_remaining", "total_uses")
    list_filter = ("date",)
    search_fields = ("user__username", "user__email")
    list_select_related = ("user",)
    readonly_fields = ("call_log", "created_at", "updated_at")


@admin.register(PointsPurchase)
class PointsPurchaseAdmin(admin.ModelAdmin):
    list_display = ("user", "package", "points", "bonus_points", "amount", "paid_at", "expire_at", "swept_at")
    list_filter = ("package", "expire_at")
    search_fields = ("external_reference", "user__username", "user__email")
    list_select_related = ("user", "package")
    readonly_fields = tuple(field.name for field in PointsPurchase._meta.fields)

    def has_add_permission(self, request):
        return False


@admin.register(PaymentReconciliation)
class PaymentReconciliationAdmin(admin.ModelAdmin):
    list_display = (
        "external_reference",
        "kind",
        "status",
        "user",
        "first_channel",
        "last_channel",
        "delivery_count",
        "applied_at",
    )
    list_filter = ("status", "kind", "first_channel")
    search_fields = ("external_reference", "user__username", "user__email")
    readonly_fields = tuple(field.name for field in PaymentReconciliation._meta.fields)

    def has_add_permission(self, request):
        return False


@admin.register(PaymentInconsistency)
class PaymentInconsistencyAdmin(admin.ModelAdmin):
    """Payments awaiting manual reconciliation; replay with ``replay_payment_inconsistencies``."""

    list_display = ("external_reference", "reason", "kind", "channel", "user", "retry_count", "created_at")
    list_filter = ("reason", "kind", "channel")
    search_fields = ("external_reference", "detail")
    readonly_fields = ("payload", "created_at", "last_attempt_at", "retry_count")


@admin.register(WebhookEventLog)
class WebhookEventLogAdmin(admin.ModelAdmin):
    list_display = ("event_id", "event_type", "status", "handled", "processed_at", "created_at")
    list_filter = ("status", "event_type", "handled")
    search_fields = ("event_id", "event_type", "last_error")
    readonly_fields = tuple(field.name for field in WebhookEventLog._meta.fields)

    def has_add_permission(self, request):
        return False


@admin.register(BillingAuditLog)
class BillingAuditLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "event_type", "user", "subscription", "actor", "stripe_id")
    list_filter = ("event_type",)
    search_fields = ("event_type", "stripe_id", "user__username", "user__email")
    list_select_related = ("user", "subscription")
    readonly_fields = tuple(field.name for field in BillingAuditLog._meta.fields)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
