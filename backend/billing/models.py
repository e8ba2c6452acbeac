"""Billing models for the points ledger, subscriptions, daily quota, and payment reconciliation."""
import uuid
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "STRIPE_CURRENCY", "usd").lower()


def _default_daily_free_uses() -> int:
    return int(getattr(settings, "BILLING_DAILY_FREE_USES", 10))


class PaymentKind(models.TextChoices):
    SUBSCRIPTION = "subscription", "Subscription"
    POINTS_PACKAGE = "points_package", "Points package"
    UPGRADE = "subscription_upgrade", "Subscription upgrade"


class SubscriptionPlan(models.Model):
    """Recurring plan and the points it grants for every paid period."""

    class DurationUnit(models.TextChoices):
        MONTH = "month", "Month"
        YEAR = "year", "Year"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    key = models.SlugField(max_length=50, unique=True, help_text="Stable identifier used by checkout metadata")
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        help_text="Price per period in billing currency",
    )
    currency = models.CharField(max_length=3, default=_default_currency)
    duration_unit = models.CharField(
        max_length=10,
        choices=DurationUnit.choices,
        default=DurationUnit.MONTH,
        help_text="Length of one paid period",
    )
    points = models.PositiveIntegerField(help_text="Points credited for each paid period")
    stripe_product_id = models.CharField(max_length=100, blank=True)
    is_active = models.BooleanField(default=True)
    sort_order = models.PositiveSmallIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription_plan"
        verbose_name = "Subscription plan"
        verbose_name_plural = "Subscription plans"
        ordering = ["sort_order", "price"]

    def __str__(self):
        return f"SubscriptionPlan<{self.key}>"


class PointsPackage(models.Model):
    """One-off points bundle purchasable by subscribed users."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    key = models.SlugField(max_length=50, unique=True)
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(0)],
    )
    currency = models.CharField(max_length=3, default=_default_currency)
    points = models.PositiveIntegerField(help_text="Base points credited on purchase")
    bonus_points = models.PositiveIntegerField(default=0, help_text="Extra points credited on purchase")
    validity_days = models.PositiveIntegerField(
        default=60,
        help_text="Days after purchase at which the package points are considered expired",
    )
    is_active = models.BooleanField(default=True)
    sort_order = models.PositiveSmallIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_points_package"
        verbose_name = "Points package"
        verbose_name_plural = "Points packages"
        ordering = ["sort_order", "price"]

    @property
    def total_points(self) -> int:
        return self.points + self.bonus_points

    def __str__(self):
        return f"PointsPackage<{self.key}>"


class PointsBalance(models.Model):
    """Per-user points balance; mutated only through ``billing.services.ledger``."""

    id = models.BigAutoField(primary_key=True)
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="points_balance",
    )
    total_points = models.IntegerField(default=0, help_text="Points ever granted, net of forfeitures")
    available_points = models.IntegerField(default=0, help_text="Points that can still be spent")
    used_points = models.IntegerField(default=0, help_text="Points spent on consumption")
    expired_points = models.IntegerField(default=0, help_text="Points forfeited on expiry, for reporting")
    lifetime_recharge_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text="Total money paid for points and subscriptions",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_points_balance"
        verbose_name = "Points balance"
        verbose_name_plural = "Points balances"
        ordering = ["-updated_at"]
        constraints = [
            models.CheckConstraint(
                condition=Q(available_points__gte=0),
                name="points_balance_available_non_negative",
            ),
            models.CheckConstraint(
                condition=Q(available_points=F("total_points") - F("used_points")),
                name="points_balance_available_consistent",
            ),
        ]

    def __str__(self):
        return f"PointsBalance<{self.user_id}:{self.available_points}>"


class LedgerEntry(models.Model):
    """Immutable audit trail for every points balance change."""

    class Reason(models.TextChoices):
        RECHARGE = "recharge", "Recharge"
        CONSUMPTION = "consumption", "Consumption"
        FORFEITURE = "forfeiture", "Forfeiture"
        REFUND = "refund", "Refund"
        BONUS = "bonus", "Bonus"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="ledger_entries",
    )
    delta = models.IntegerField(help_text="Signed points amount; positive for credits, negative for debits")
    reason = models.CharField(max_length=20, choices=Reason.choices)
    external_reference = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Payment or event identifier that makes the write idempotent",
    )
    balance_after = models.IntegerField(help_text="Available points immediately after this entry")
    description = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_ledger_entry"
        verbose_name = "Ledger entry"
        verbose_name_plural = "Ledger entries"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(condition=~Q(delta=0), name="ledger_entry_non_zero"),
            models.CheckConstraint(condition=Q(balance_after__gte=0), name="ledger_entry_balance_after_non_negative"),
            models.UniqueConstraint(
                fields=["external_reference"],
                condition=Q(external_reference__isnull=False),
                name="unique_ledger_entry_external_reference",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "created_at"], name="ledger_entry_user_created_idx"),
            models.Index(fields=["reason"], name="ledger_entry_reason_idx"),
        ]

    def save(self, *args, **kwargs):
        if self._state.adding is False:
            raise ValidationError("LedgerEntry records are immutable and cannot be updated.")
        # Uniqueness is left to the database so racing writers surface as IntegrityError.
        self.full_clean(validate_unique=False, validate_constraints=False)
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("LedgerEntry records are immutable and cannot be deleted.")

    def __str__(self):
        return f"LedgerEntry<{self.reason}:{self.delta} for {self.user_id}>"


class Subscription(models.Model):
    """A user's subscription period; historical rows are retained."""

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        CANCELLED_IMMEDIATE = "cancelled_immediate", "Cancelled immediately"
        CANCELLED = "cancelled", "Replaced by upgrade"
        EXPIRED = "expired", "Expired"

    # Reported for active rows scheduled to end; never stored.
    CANCELLED_PENDING = "cancelled_pending"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="subscriptions",
    )
    plan = models.ForeignKey(
        SubscriptionPlan,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)
    start_date = models.DateTimeField()
    end_date = models.DateTimeField()
    cancel_at_period_end = models.BooleanField(
        default=False,
        help_text="Access continues until end_date, then the row expires",
    )
    cancelled_at = models.DateTimeField(null=True, blank=True)
    external_subscription_id = models.CharField(max_length=255, blank=True)
    external_customer_id = models.CharField(max_length=255, blank=True)
    replaced_by = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="replaces",
        help_text="Subscription that superseded this one on upgrade",
    )
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription"
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["user"],
                condition=Q(status="active"),
                name="unique_active_subscription_per_user",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "status"], name="subscription_user_status_idx"),
            models.Index(fields=["external_subscription_id"], name="subscription_external_idx"),
            models.Index(fields=["status", "end_date"], name="subscription_status_end_idx"),
        ]

    @property
    def lifecycle_state(self) -> str:
        if self.status == self.Status.ACTIVE and self.cancel_at_period_end:
            return self.CANCELLED_PENDING
        return self.status

    def is_overdue(self, now=None) -> bool:
        now = now or timezone.now()
        return self.status == self.Status.ACTIVE and self.end_date < now

    def __str__(self):
        return f"Subscription<{self.user_id}:{self.plan_id}:{self.status}>"


class DailyQuota(models.Model):
    """Free-tier generation allowance for one user on one calendar day."""

    id = models.BigAutoField(primary_key=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="daily_quotas",
    )
    date = models.DateField()
    free_uses_remaining = models.IntegerField(default=_default_daily_free_uses)
    total_uses = models.PositiveIntegerField(default=0)
    call_log = models.JSONField(default=list, blank=True, help_text="Per-call details recorded for the day")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_daily_quota"
        verbose_name = "Daily quota"
        verbose_name_plural = "Daily quotas"
        ordering = ["-date"]
        constraints = [
            models.UniqueConstraint(fields=["user", "date"], name="unique_daily_quota_per_user_date"),
            models.CheckConstraint(
                condition=Q(free_uses_remaining__gte=0),
                name="daily_quota_remaining_non_negative",
            ),
        ]

    def __str__(self):
        return f"DailyQuota<{self.user_id}:{self.date}:{self.free_uses_remaining}>"


class PointsPurchase(models.Model):
    """Record of a paid points package, kept for validity reporting."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="points_purchases",
    )
    package = models.ForeignKey(
        PointsPackage,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="purchases",
        help_text="Empty when the grant was resolved through the legacy price table",
    )
    points = models.PositiveIntegerField()
    bonus_points = models.PositiveIntegerField(default=0)
    amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default=_default_currency)
    external_reference = models.CharField(max_length=255, unique=True)
    paid_at = models.DateTimeField()
    expire_at = models.DateTimeField()
    swept_points = models.PositiveIntegerField(
        default=0,
        help_text="Points removed from the balance when the package expired",
    )
    swept_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_points_purchase"
        verbose_name = "Points purchase"
        verbose_name_plural = "Points purchases"
        ordering = ["-paid_at"]
        indexes = [
            models.Index(fields=["user", "expire_at"], name="points_purchase_expiry_idx"),
        ]

    @property
    def total_points(self) -> int:
        return self.points + self.bonus_points

    def __str__(self):
        return f"PointsPurchase<{self.user_id}:{self.total_points}>"


class PaymentReconciliation(models.Model):
    """State of one external payment, shared by the webhook and client confirmation channels."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPLIED = "applied", "Applied"
        INCONSISTENT = "inconsistent", "Inconsistent"

    class Channel(models.TextChoices):
        ASYNC = "async", "Gateway webhook"
        SYNC = "sync", "Client confirmation"

    id = models.BigAutoField(primary_key=True)
    external_reference = models.CharField(max_length=255, unique=True)
    kind = models.CharField(max_length=30, choices=PaymentKind.choices, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_reconciliations",
    )
    first_channel = models.CharField(max_length=10, choices=Channel.choices)
    last_channel = models.CharField(max_length=10, choices=Channel.choices)
    delivery_count = models.PositiveIntegerField(default=0)
    applied_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_payment_reconciliation"
        verbose_name = "Payment reconciliation"
        verbose_name_plural = "Payment reconciliations"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="payment_recon_status_idx"),
        ]

    def __str__(self):
        return f"PaymentReconciliation<{self.external_reference}:{self.status}>"


class PaymentInconsistency(models.Model):
    """Paid events that could not be applied and need operator follow-up."""

    class Reason(models.TextChoices):
        UNRESOLVED_PLAN = "unresolved_plan", "Unresolved plan"
        UNRESOLVED_PACKAGE = "unresolved_package", "Unresolved package"
        MISSING_POINTS = "missing_points", "Missing point metadata"
        UNKNOWN_USER = "unknown_user", "Unknown user"
        UNKNOWN_KIND = "unknown_kind", "Unknown payment kind"
        UNKNOWN_SUBSCRIPTION = "unknown_subscription", "Unknown subscription"

    id = models.BigAutoField(primary_key=True)
    external_reference = models.CharField(max_length=255, unique=True)
    kind = models.CharField(max_length=30, blank=True)
    channel = models.CharField(max_length=10, choices=PaymentReconciliation.Channel.choices)
    reason = models.CharField(max_length=30, choices=Reason.choices)
    detail = models.TextField(blank=True)
    payload = models.JSONField(help_text="Checkout session or event object that failed to apply")
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_inconsistencies",
    )
    retry_count = models.PositiveIntegerField(default=0)
    last_attempt_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_payment_inconsistency"
        verbose_name = "Payment inconsistency"
        verbose_name_plural = "Payment inconsistencies"
        ordering = ["-created_at"]

    def __str__(self):
        return f"PaymentInconsistency<{self.external_reference}:{self.reason}>"


class WebhookEventLog(models.Model):
    """Keeps track of received webhook events so redeliveries are acknowledged cheaply."""

    class Status(models.TextChoices):
        RECEIVED = "received", "Received"
        PROCESSING = "processing", "Processing"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=255, blank=True)
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the event body for drift detection.",
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RECEIVED,
    )
    last_error = models.TextField(blank=True)
    handled = models.BooleanField(
        default=False,
        help_text="True once the event has been fully processed.",
    )
    processed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_webhook_event_log"
        verbose_name = "Webhook event log"
        verbose_name_plural = "Webhook event logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="webhook_event_status_idx"),
            models.Index(fields=["event_type"], name="webhook_event_type_idx"),
        ]

    def __str__(self):
        return f"WebhookEventLog<{self.event_id}:{self.status}>"


class BillingAuditLog(models.Model):
    """Structured audit log for subscription lifecycle events."""

    id = models.BigAutoField(primary_key=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="billing_audit_logs",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    event_type = models.CharField(max_length=100, help_text="Classification of the billing event.")
    stripe_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe object identifier tied to the event.",
    )
    actor = models.CharField(
        max_length=255,
        blank=True,
        help_text="Auth user or system actor responsible.",
    )
    details = models.JSONField(
        blank=True,
        null=True,
        help_text="Structured data describing the event.",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_audit_log"
        verbose_name = "Billing audit log"
        verbose_name_plural = "Billing audit logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "event_type"], name="billing_audit_user_event_idx"),
            models.Index(fields=["stripe_id"], name="billing_audit_stripe_idx"),
        ]

    def __str__(self):
        return f"BillingAuditLog<{self.user_id}:{self.event_type}>"
