"""URL routes for billing endpoints."""
from django.urls import path

from .views import (
    BalanceView,
    ConfirmPaymentView,
    ConsumeView,
    ExpiringPointsView,
    LedgerEntryViewSet,
    PointsPackageListView,
    PointsPurchaseView,
    SubscriptionCancelView,
    SubscriptionCheckoutView,
    SubscriptionPlanListView,
    SubscriptionUpgradeView,
    SubscriptionView,
    UsageSummaryView,
    UserBillingAuditLogViewSet,
)
from .views_webhook import StripeWebhookView

app_name = "billing"

urlpatterns = [
    path("plans/", SubscriptionPlanListView.as_view(), name="plan-list"),
    path("points/packages/", PointsPackageListView.as_view(), name="points-package-list"),
    path("points/purchase/", PointsPurchaseView.as_view(), name="points-purchase"),
    path("points/expiring/", ExpiringPointsView.as_view(), name="points-expiring"),
    path("balance/", BalanceView.as_view(), name="balance"),
    path("ledger/", LedgerEntryViewSet.as_view({"get": "list"}), name="ledger-list"),
    path("usage/summary/", UsageSummaryView.as_view(), name="usage-summary"),
    path("consume/", ConsumeView.as_view(), name="consume"),
    path("subscription/", SubscriptionView.as_view(), name="subscription"),
    path("subscription/checkout/", SubscriptionCheckoutView.as_view(), name="subscription-checkout"),
    path("subscription/cancel/", SubscriptionCancelView.as_view(), name="subscription-cancel"),
    path("subscription/upgrade/", SubscriptionUpgradeView.as_view(), name="subscription-upgrade"),
    path("payments/confirm/", ConfirmPaymentView.as_view(), name="payment-confirm"),
    path("audit/", UserBillingAuditLogViewSet.as_view({"get": "list"}), name="audit-list"),
    path("webhook/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
]
