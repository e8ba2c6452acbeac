from datetime import datetime, timedelta, timezone as dt_timezone
from unittest import mock

import pytest
from django.utils import timezone

from billing.models import BillingAuditLog, LedgerEntry, Subscription
from billing.services.ledger import credit, get_balance
from billing.services.subscriptions import (
    InvalidUpgrade,
    NoActiveSubscription,
    activate_subscription,
    add_months,
    apply_upgrade,
    cancel_subscription,
    get_current_subscription,
    renew_subscription,
    start_upgrade,
)


def test_add_months_clamps_to_month_length():
    start = datetime(2026, 1, 31, 12, 0, tzinfo=dt_timezone.utc)

    assert add_months(start, 1) == datetime(2026, 2, 28, 12, 0, tzinfo=dt_timezone.utc)
    assert add_months(start, 12) == datetime(2027, 1, 31, 12, 0, tzinfo=dt_timezone.utc)
    assert add_months(datetime(2028, 2, 29, tzinfo=dt_timezone.utc), 12) == datetime(2029, 2, 28, tzinfo=dt_timezone.utc)


@pytest.mark.django_db
def test_activation_creates_row_and_credits_plan_points(user, basic_plan):
    result = activate_subscription(user.pk, basic_plan, external_reference="cs_activate")

    assert result.created is True
    subscription = result.subscription
    assert subscription.status == Subscription.Status.ACTIVE
    assert subscription.end_date == add_months(subscription.start_date, 1)
    assert get_balance(user.pk).available_points == 680
    assert BillingAuditLog.objects.filter(event_type="billing.subscription.activated").count() == 1


@pytest.mark.django_db
def test_activation_updates_existing_active_row_in_place(user, basic_plan, premium_plan, make_subscription):
    existing = make_subscription(user, basic_plan)

    result = activate_subscription(user.pk, premium_plan, external_reference="cs_replace")

    assert result.created is False
    assert result.subscription.pk == existing.pk
    assert Subscription.objects.filter(user=user).count() == 1
    existing.refresh_from_db()
    assert existing.plan == premium_plan


@pytest.mark.django_db
def test_overdue_subscription_read_expires_and_forfeits(user, basic_plan, make_subscription):
    subscription = make_subscription(user, basic_plan, days_left=-1)
    credit(user.pk, 500, LedgerEntry.Reason.RECHARGE, "cs_before_expiry")

    assert get_current_subscription(user.pk) is None

    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.EXPIRED
    balance = get_balance(user.pk)
    assert balance.available_points == 0
    assert balance.expired_points == 500
    forfeiture = LedgerEntry.objects.get(user=user, reason=LedgerEntry.Reason.FORFEITURE)
    assert forfeiture.delta == -500

    # A second read does not forfeit again.
    assert get_current_subscription(user.pk) is None
    assert LedgerEntry.objects.filter(user=user, reason=LedgerEntry.Reason.FORFEITURE).count() == 1


@pytest.mark.django_db
def test_period_end_cancel_keeps_access_and_balance(user, basic_plan, make_subscription):
    make_subscription(user, basic_plan, external_subscription_id="sub_123")
    credit(user.pk, 680, LedgerEntry.Reason.RECHARGE, "cs_period_end")

    with mock.patch("billing.services.subscriptions.schedule_gateway_cancellation") as schedule:
        subscription = cancel_subscription(user.pk, immediate=False)

    schedule.assert_called_once_with("sub_123")
    assert subscription.status == Subscription.Status.ACTIVE
    assert subscription.cancel_at_period_end is True
    assert subscription.lifecycle_state == Subscription.CANCELLED_PENDING
    assert get_balance(user.pk).available_points == 680
    assert get_current_subscription(user.pk) is not None


@pytest.mark.django_db
def test_immediate_cancel_forfeits_balance(user, basic_plan, make_subscription):
    make_subscription(user, basic_plan, external_subscription_id="sub_now")
    credit(user.pk, 300, LedgerEntry.Reason.RECHARGE, "cs_immediate")

    with mock.patch("billing.services.subscriptions.cancel_gateway_subscription") as cancel:
        subscription = cancel_subscription(user.pk, immediate=True)

    cancel.assert_called_once_with("sub_now")
    assert subscription.status == Subscription.Status.CANCELLED_IMMEDIATE
    assert subscription.end_date <= timezone.now()
    assert get_balance(user.pk).available_points == 0
    assert get_current_subscription(user.pk) is None


@pytest.mark.django_db
def test_cancel_without_subscription_raises(user):
    with pytest.raises(NoActiveSubscription):
        cancel_subscription(user.pk, immediate=False)


@pytest.mark.django_db
def test_gateway_failure_leaves_subscription_untouched(user, basic_plan, make_subscription):
    from billing.services.stripe_payments import StripeServiceError

    subscription = make_subscription(user, basic_plan, external_subscription_id="sub_fail")

    with mock.patch(
        "billing.services.subscriptions.cancel_gateway_subscription",
        side_effect=StripeServiceError("boom"),
    ):
        with pytest.raises(StripeServiceError):
            cancel_subscription(user.pk, immediate=True)

    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.ACTIVE


@pytest.mark.django_db
def test_upgrade_closes_old_row_and_adds_new_plan_points(user, basic_plan, premium_plan, make_subscription):
    old = make_subscription(user, basic_plan, days_left=20)
    credit(user.pk, 680, LedgerEntry.Reason.RECHARGE, "cs_original")

    applied = apply_upgrade(
        user.pk,
        premium_plan,
        external_reference="cs_upgrade",
        replaced_subscription_id=str(old.pk),
    )

    old.refresh_from_db()
    assert old.status == Subscription.Status.CANCELLED
    assert old.replaced_by_id == applied.subscription.pk
    assert old.metadata["replaced_by"] == str(applied.subscription.pk)

    new = applied.subscription
    assert new.status == Subscription.Status.ACTIVE
    assert new.plan == premium_plan
    assert new.end_date > old.end_date
    assert get_balance(user.pk).available_points == 680 + 8000
    assert Subscription.objects.filter(user=user, status=Subscription.Status.ACTIVE).count() == 1


@pytest.mark.django_db
def test_upgrade_cancels_replaced_gateway_subscription_after_commit(
    user, basic_plan, premium_plan, make_subscription, django_capture_on_commit_callbacks
):
    make_subscription(user, basic_plan, external_subscription_id="sub_old")

    with mock.patch("billing.tasks.cancel_gateway_subscription_task.delay") as delay:
        with django_capture_on_commit_callbacks(execute=True):
            apply_upgrade(
                user.pk,
                premium_plan,
                external_reference="cs_upgrade_gateway",
                external_subscription_id="sub_new",
            )

    delay.assert_called_once_with("sub_old")


@pytest.mark.django_db
def test_start_upgrade_requires_higher_priced_plan(user, basic_plan, premium_plan, make_subscription):
    make_subscription(user, premium_plan)

    with pytest.raises(InvalidUpgrade):
        start_upgrade(user, str(basic_plan.pk))
    with pytest.raises(InvalidUpgrade):
        start_upgrade(user, str(premium_plan.pk))


@pytest.mark.django_db
def test_start_upgrade_without_subscription(user, premium_plan):
    with pytest.raises(NoActiveSubscription):
        start_upgrade(user, str(premium_plan.pk))


@pytest.mark.django_db
def test_start_upgrade_creates_checkout_with_upgrade_metadata(user, basic_plan, premium_plan, make_subscription):
    current = make_subscription(user, basic_plan)

    with mock.patch(
        "billing.services.subscriptions.create_upgrade_checkout_session",
        return_value={"id": "cs_up", "url": "https://checkout.stripe.test/cs_up"},
    ) as create:
        result = start_upgrade(user, premium_plan.key)

    assert result.redirect_url == "https://checkout.stripe.test/cs_up"
    assert result.subscription.pk == current.pk
    kwargs = create.call_args.kwargs
    assert kwargs["new_plan"] == premium_plan
    assert kwargs["subscription"].pk == current.pk
    # Nothing changes locally until the payment is reconciled.
    current.refresh_from_db()
    assert current.status == Subscription.Status.ACTIVE


@pytest.mark.django_db
def test_renewal_extends_period_and_credits_under_invoice_reference(user, basic_plan, make_subscription):
    subscription = make_subscription(user, basic_plan, external_subscription_id="sub_renew")
    new_end = subscription.end_date + timedelta(days=30)

    result = renew_subscription("sub_renew", external_reference="in_1", period_end=new_end)
    again = renew_subscription("sub_renew", external_reference="in_1", period_end=new_end)

    assert result.subscription.end_date == new_end
    assert result.ledger.created is True
    assert again.ledger.created is False
    assert get_balance(user.pk).available_points == 680


@pytest.mark.django_db
def test_renewal_for_unknown_gateway_subscription_returns_none(user):
    assert renew_subscription("sub_missing", external_reference="in_x", period_end=timezone.now()) is None


@pytest.mark.django_db
def test_renewal_after_lazy_expiry_opens_new_active_row(user, basic_plan, make_subscription):
    lapsed = make_subscription(user, basic_plan, external_subscription_id="sub_lapsed", external_customer_id="cus_1")
    credit(user.pk, 680, LedgerEntry.Reason.RECHARGE, "cs_lapsed")
    Subscription.objects.filter(pk=lapsed.pk).update(end_date=timezone.now() - timedelta(minutes=5))

    assert get_current_subscription(user.pk) is None
    assert get_balance(user.pk).available_points == 0

    period_start = timezone.now() - timedelta(minutes=5)
    period_end = add_months(period_start, 1)
    result = renew_subscription("sub_lapsed", external_reference="in_late", period_start=period_start, period_end=period_end)
    again = renew_subscription("sub_lapsed", external_reference="in_late", period_start=period_start, period_end=period_end)

    assert result.created is True
    assert result.subscription.pk != lapsed.pk
    assert result.subscription.status == Subscription.Status.ACTIVE
    assert result.subscription.end_date == period_end
    assert result.subscription.external_customer_id == "cus_1"
    assert result.subscription.metadata == {"renews": str(lapsed.pk)}
    assert again.subscription.pk == result.subscription.pk
    assert again.ledger.created is False
    assert get_current_subscription(user.pk).pk == result.subscription.pk
    assert get_balance(user.pk).available_points == 680
    assert BillingAuditLog.objects.filter(event_type="billing.subscription.reactivated").count() == 1


@pytest.mark.django_db
def test_renewal_does_not_reopen_immediately_cancelled_row(user, basic_plan, make_subscription):
    cancelled = make_subscription(user, basic_plan, external_subscription_id="sub_cancelled")
    Subscription.objects.filter(pk=cancelled.pk).update(
        status=Subscription.Status.CANCELLED_IMMEDIATE,
        end_date=timezone.now() - timedelta(minutes=5),
    )

    result = renew_subscription(
        "sub_cancelled",
        external_reference="in_after_cancel",
        period_end=timezone.now() + timedelta(days=30),
    )

    assert result is None
    assert not Subscription.objects.filter(user=user, status=Subscription.Status.ACTIVE).exists()
