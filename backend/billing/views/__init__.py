"""Billing API views for balances, subscriptions, checkout and consumption."""

from .audit import UserBillingAuditLogViewSet
from .balance import BalanceView, ConsumeView, ExpiringPointsView, LedgerEntryViewSet, UsageSummaryView
from .catalog import PointsPackageListView, SubscriptionPlanListView
from .payments import ConfirmPaymentView, PointsPurchaseView
from .subscription import (
    SubscriptionCancelView,
    SubscriptionCheckoutView,
    SubscriptionUpgradeView,
    SubscriptionView,
)
