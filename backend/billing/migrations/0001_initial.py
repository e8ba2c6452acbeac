from decimal import Decimal
import uuid

import billing.models
import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="SubscriptionPlan",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("key", models.SlugField(help_text="Stable identifier used by checkout metadata", unique=True)),
                ("name", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True)),
                ("price", models.DecimalField(decimal_places=2, help_text="Price per period in billing currency", max_digits=10, validators=[django.core.validators.MinValueValidator(0)])),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=3)),
                ("duration_unit", models.CharField(choices=[("month", "Month"), ("year", "Year")], default="month", help_text="Length of one paid period", max_length=10)),
                ("points", models.PositiveIntegerField(help_text="Points credited for each paid period")),
                ("stripe_product_id", models.CharField(blank=True, max_length=100)),
                ("is_active", models.BooleanField(default=True)),
                ("sort_order", models.PositiveSmallIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "billing_subscription_plan",
                "ordering": ["sort_order", "price"],
                "verbose_name": "Subscription plan",
                "verbose_name_plural": "Subscription plans",
            },
        ),
        migrations.CreateModel(
            name="PointsPackage",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("key", models.SlugField(unique=True)),
                ("name", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True)),
                ("price", models.DecimalField(decimal_places=2, max_digits=10, validators=[django.core.validators.MinValueValidator(0)])),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=3)),
                ("points", models.PositiveIntegerField(help_text="Base points credited on purchase")),
                ("bonus_points", models.PositiveIntegerField(default=0, help_text="Extra points credited on purchase")),
                ("validity_days", models.PositiveIntegerField(default=60, help_text="Days after purchase at which the package points are considered expired")),
                ("is_active", models.BooleanField(default=True)),
                ("sort_order", models.PositiveSmallIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "billing_points_package",
                "ordering": ["sort_order", "price"],
                "verbose_name": "Points package",
                "verbose_name_plural": "Points packages",
            },
        ),
        migrations.CreateModel(
            name="PointsBalance",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("total_points", models.IntegerField(default=0, help_text="Points ever granted, net of forfeitures")),
                ("available_points", models.IntegerField(default=0, help_text="Points that can still be spent")),
                ("used_points", models.IntegerField(default=0, help_text="Points spent on consumption")),
                ("expired_points", models.IntegerField(default=0, help_text="Points forfeited on expiry, for reporting")),
                ("lifetime_recharge_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), help_text="Total money paid for points and subscriptions", max_digits=12)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="points_balance", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "billing_points_balance",
                "ordering": ["-updated_at"],
                "verbose_name": "Points balance",
                "verbose_name_plural": "Points balances",
                "constraints": [
                    models.CheckConstraint(condition=models.Q(available_points__gte=0), name="points_balance_available_non_negative"),
                    models.CheckConstraint(condition=models.Q(available_points=models.F("total_points") - models.F("used_points")), name="points_balance_available_consistent"),
                ],
            },
        ),
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("delta", models.IntegerField(help_text="Signed points amount; positive for credits, negative for debits")),
                ("reason", models.CharField(choices=[("recharge", "Recharge"), ("consumption", "Consumption"), ("forfeiture", "Forfeiture"), ("refund", "Refund"), ("bonus", "Bonus")], max_length=20)),
                ("external_reference", models.CharField(blank=True, help_text="Payment or event identifier that makes the write idempotent", max_length=255, null=True)),
                ("balance_after", models.IntegerField(help_text="Available points immediately after this entry")),
                ("description", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="ledger_entries", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "billing_ledger_entry",
                "ordering": ["-created_at"],
                "verbose_name": "Ledger entry",
                "verbose_name_plural": "Ledger entries",
                "constraints": [
                    models.CheckConstraint(condition=~models.Q(delta=0), name="ledger_entry_non_zero"),
                    models.CheckConstraint(condition=models.Q(balance_after__gte=0), name="ledger_entry_balance_after_non_negative"),
                    models.UniqueConstraint(condition=models.Q(external_reference__isnull=False), fields=["external_reference"], name="unique_ledger_entry_external_reference"),
                ],
                "indexes": [
                    models.Index(fields=["user", "created_at"], name="ledger_entry_user_created_idx"),
                    models.Index(fields=["reason"], name="ledger_entry_reason_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("status", models.CharField(choices=[("active", "Active"), ("cancelled_immediate", "Cancelled immediately"), ("cancelled", "Replaced by upgrade"), ("expired", "Expired")], default="active", max_length=20)),
                ("start_date", models.DateTimeField()),
                ("end_date", models.DateTimeField()),
                ("cancel_at_period_end", models.BooleanField(default=False, help_text="Access continues until end_date, then the row expires")),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("external_subscription_id", models.CharField(blank=True, max_length=255)),
                ("external_customer_id", models.CharField(blank=True, max_length=255)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("plan", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="subscriptions", to="billing.subscriptionplan")),
                ("replaced_by", models.ForeignKey(blank=True, help_text="Subscription that superseded this one on upgrade", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="replaces", to="billing.subscription")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="subscriptions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "billing_subscription",
                "ordering": ["-created_at"],
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(status="active"), fields=["user"], name="unique_active_subscription_per_user"),
                ],
                "indexes": [
                    models.Index(fields=["user", "status"], name="subscription_user_status_idx"),
                    models.Index(fields=["external_subscription_id"], name="subscription_external_idx"),
                    models.Index(fields=["status", "end_date"], name="subscription_status_end_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="DailyQuota",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("date", models.DateField()),
                ("free_uses_remaining", models.IntegerField(default=billing.models._default_daily_free_uses)),
                ("total_uses", models.PositiveIntegerField(default=0)),
                ("call_log", models.JSONField(blank=True, default=list, help_text="Per-call details recorded for the day")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="daily_quotas", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "billing_daily_quota",
                "ordering": ["-date"],
                "verbose_name": "Daily quota",
                "verbose_name_plural": "Daily quotas",
                "constraints": [
                    models.UniqueConstraint(fields=["user", "date"], name="unique_daily_quota_per_user_date"),
                    models.CheckConstraint(condition=models.Q(free_uses_remaining__gte=0), name="daily_quota_remaining_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PointsPurchase",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("points", models.PositiveIntegerField()),
                ("bonus_points", models.PositiveIntegerField(default=0)),
                ("amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=3)),
                ("external_reference", models.CharField(max_length=255, unique=True)),
                ("paid_at", models.DateTimeField()),
                ("expire_at", models.DateTimeField()),
                ("swept_points", models.PositiveIntegerField(default=0, help_text="Points removed from the balance when the package expired")),
                ("swept_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("package", models.ForeignKey(blank=True, help_text="Empty when the grant was resolved through the legacy price table", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="purchases", to="billing.pointspackage")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="points_purchases", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "billing_points_purchase",
                "ordering": ["-paid_at"],
                "verbose_name": "Points purchase",
                "verbose_name_plural": "Points purchases",
                "indexes": [
                    models.Index(fields=["user", "expire_at"], name="points_purchase_expiry_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentReconciliation",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("external_reference", models.CharField(max_length=255, unique=True)),
                ("kind", models.CharField(blank=True, choices=[("subscription", "Subscription"), ("points_package", "Points package"), ("subscription_upgrade", "Subscription upgrade")], max_length=30)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("applied", "Applied"), ("inconsistent", "Inconsistent")], default="pending", max_length=20)),
                ("first_channel", models.CharField(choices=[("async", "Gateway webhook"), ("sync", "Client confirmation")], max_length=10)),
                ("last_channel", models.CharField(choices=[("async", "Gateway webhook"), ("sync", "Client confirmation")], max_length=10)),
                ("delivery_count", models.PositiveIntegerField(default=0)),
                ("applied_at", models.DateTimeField(blank=True, null=True)),
                ("last_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="payment_reconciliations", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "billing_payment_reconciliation",
                "ordering": ["-created_at"],
                "verbose_name": "Payment reconciliation",
                "verbose_name_plural": "Payment reconciliations",
                "indexes": [
                    models.Index(fields=["status"], name="payment_recon_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentInconsistency",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("external_reference", models.CharField(max_length=255, unique=True)),
                ("kind", models.CharField(blank=True, max_length=30)),
                ("channel", models.CharField(choices=[("async", "Gateway webhook"), ("sync", "Client confirmation")], max_length=10)),
                ("reason", models.CharField(choices=[("unresolved_plan", "Unresolved plan"), ("unresolved_package", "Unresolved package"), ("missing_points", "Missing point metadata"), ("unknown_user", "Unknown user"), ("unknown_kind", "Unknown payment kind"), ("unknown_subscription", "Unknown subscription")], max_length=30)),
                ("detail", models.TextField(blank=True)),
                ("payload", models.JSONField(help_text="Checkout session or event object that failed to apply")),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("last_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("user", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="payment_inconsistencies", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "billing_payment_inconsistency",
                "ordering": ["-created_at"],
                "verbose_name": "Payment inconsistency",
                "verbose_name_plural": "Payment inconsistencies",
            },
        ),
        migrations.CreateModel(
            name="WebhookEventLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                ("payload_hash", models.CharField(blank=True, help_text="SHA256 of the event body for drift detection.", max_length=64)),
                ("status", models.CharField(choices=[("received", "Received"), ("processing", "Processing"), ("processed", "Processed"), ("ignored", "Ignored"), ("failed", "Failed")], default="received", max_length=20)),
                ("last_error", models.TextField(blank=True)),
                ("handled", models.BooleanField(default=False, help_text="True once the event has been fully processed.")),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "billing_webhook_event_log",
                "ordering": ["-created_at"],
                "verbose_name": "Webhook event log",
                "verbose_name_plural": "Webhook event logs",
                "indexes": [
                    models.Index(fields=["status"], name="webhook_event_status_idx"),
                    models.Index(fields=["event_type"], name="webhook_event_type_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingAuditLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_type", models.CharField(help_text="Classification of the billing event.", max_length=100)),
                ("stripe_id", models.CharField(blank=True, help_text="Stripe object identifier tied to the event.", max_length=255)),
                ("actor", models.CharField(blank=True, help_text="Auth user or system actor responsible.", max_length=255)),
                ("details", models.JSONField(blank=True, help_text="Structured data describing the event.", null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("subscription", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="audit_logs", to="billing.subscription")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="billing_audit_logs", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "billing_audit_log",
                "ordering": ["-created_at"],
                "verbose_name": "Billing audit log",
                "verbose_name_plural": "Billing audit logs",
                "indexes": [
                    models.Index(fields=["user", "event_type"], name="billing_audit_user_event_idx"),
                    models.Index(fields=["stripe_id"], name="billing_audit_stripe_idx"),
                ],
            },
        ),
    ]
