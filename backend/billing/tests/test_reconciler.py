from datetime import timedelta
from decimal import Decimal
from unittest import mock

import pytest
from django.core.management import call_command
from django.test import override_settings
from django.utils import timezone

from billing.models import (
    LedgerEntry,
    PaymentInconsistency,
    PaymentReconciliation,
    PointsPurchase,
    Subscription,
)
from billing.services.consumption import consume
from billing.services.ledger import credit, get_balance
from billing.services.reconciler import (
    PaymentOwnershipError,
    ReconciliationResult,
    confirm_checkout_session,
    handle_stripe_event,
    normalize_checkout_session,
    reconcile_payment_event,
)


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.mark.django_db
def test_normalize_reads_user_kind_and_amount(user, checkout_session):
    session = checkout_session("cs_norm", user=user, kind="subscription", amount_total=11880)

    event = normalize_checkout_session(session)

    assert event.external_reference == "cs_norm"
    assert event.kind == "subscription"
    assert event.user_id == str(user.pk)
    assert event.amount == Decimal("118.80")
    assert event.external_customer_id == "cus_test"


@pytest.mark.django_db
def test_normalize_handles_zero_decimal_currency(user, checkout_session):
    session = checkout_session("cs_jpy", user=user, kind="points_package", amount_total=500, currency="jpy")

    assert normalize_checkout_session(session).amount == Decimal("500.00")


@pytest.mark.django_db
def test_webhook_then_client_confirmation_credits_once(user, basic_plan, checkout_session):
    session = checkout_session(
        "cs_dual",
        user=user,
        kind="subscription",
        metadata={"planId": str(basic_plan.pk), "points": "680"},
        subscription="sub_dual",
    )

    first = handle_stripe_event(_event("checkout.session.completed", session))
    with mock.patch("billing.services.reconciler.retrieve_checkout_session", return_value=session):
        second = confirm_checkout_session("cs_dual", user=user)

    assert first.status == ReconciliationResult.APPLIED
    assert second.status == ReconciliationResult.DUPLICATE
    assert get_balance(user.pk).available_points == 680
    assert LedgerEntry.objects.filter(user=user).count() == 1

    record = PaymentReconciliation.objects.get(external_reference="cs_dual")
    assert record.status == PaymentReconciliation.Status.APPLIED
    assert record.first_channel == PaymentReconciliation.Channel.ASYNC
    assert record.last_channel == PaymentReconciliation.Channel.SYNC
    assert record.delivery_count == 2

    subscription = Subscription.objects.get(user=user, status=Subscription.Status.ACTIVE)
    assert subscription.external_subscription_id == "sub_dual"


@pytest.mark.django_db
def test_client_confirmation_first_then_redelivered_webhooks(user, basic_plan, checkout_session):
    session = checkout_session("cs_sync_first", user=user, kind="subscription", metadata={"planId": basic_plan.key})

    with mock.patch("billing.services.reconciler.retrieve_checkout_session", return_value=session):
        assert confirm_checkout_session("cs_sync_first", user=user).status == ReconciliationResult.APPLIED

    for event_id in ("evt_a", "evt_b", "evt_c"):
        result = handle_stripe_event(_event("checkout.session.completed", session, event_id=event_id))
        assert result.status == ReconciliationResult.DUPLICATE

    # No explicit point metadata: the plan's catalog grant applies.
    assert get_balance(user.pk).available_points == 680
    assert PaymentReconciliation.objects.get(external_reference="cs_sync_first").delivery_count == 4


@pytest.mark.django_db
def test_unpaid_session_is_pending_for_client_and_ignored_for_webhook(user, basic_plan, checkout_session):
    session = checkout_session(
        "cs_unpaid",
        user=user,
        kind="subscription",
        metadata={"planId": basic_plan.key},
        payment_status="unpaid",
    )

    with mock.patch("billing.services.reconciler.retrieve_checkout_session", return_value=session):
        assert confirm_checkout_session("cs_unpaid", user=user).status == ReconciliationResult.PENDING
    assert handle_stripe_event(_event("checkout.session.completed", session)).status == ReconciliationResult.IGNORED
    assert get_balance(user.pk).available_points == 0
    assert not PaymentReconciliation.objects.filter(external_reference="cs_unpaid").exists()


@pytest.mark.django_db
def test_confirming_someone_elses_session_is_rejected(user, other_user, basic_plan, checkout_session):
    session = checkout_session("cs_theirs", user=other_user, kind="subscription", metadata={"planId": basic_plan.key})

    with mock.patch("billing.services.reconciler.retrieve_checkout_session", return_value=session):
        with pytest.raises(PaymentOwnershipError):
            confirm_checkout_session("cs_theirs", user=user)

    assert get_balance(other_user.pk).available_points == 0


@pytest.mark.django_db
def test_points_package_grants_points_bonus_and_validity(user, bonus_package, checkout_session):
    session = checkout_session(
        "cs_pack",
        user=user,
        kind="points_package",
        amount_total=990,
        metadata={"packageId": str(bonus_package.pk), "points": "1100", "bonusPoints": "100"},
    )

    result = reconcile_payment_event(normalize_checkout_session(session), channel="async")

    assert result.status == ReconciliationResult.APPLIED
    balance = get_balance(user.pk)
    assert balance.available_points == 1200
    assert balance.lifetime_recharge_amount == Decimal("9.90")
    references = set(LedgerEntry.objects.filter(user=user).values_list("external_reference", "reason"))
    assert references == {("cs_pack", "recharge"), ("cs_pack:bonus", "bonus")}

    purchase = PointsPurchase.objects.get(external_reference="cs_pack")
    assert purchase.package == bonus_package
    assert purchase.total_points == 1200
    assert purchase.expire_at - purchase.paid_at == timedelta(days=60)


@pytest.mark.django_db
def test_unresolved_plan_is_recorded_and_alerted(user, checkout_session):
    session = checkout_session("cs_ghost", user=user, kind="subscription", metadata={"planId": "no-such-plan"})

    with mock.patch("billing.services.reconciler.alert_reconciliation_failure") as alert:
        result = handle_stripe_event(_event("checkout.session.completed", session))

    assert result.status == ReconciliationResult.INCONSISTENT
    inconsistency = PaymentInconsistency.objects.get(external_reference="cs_ghost")
    assert inconsistency.reason == PaymentInconsistency.Reason.UNRESOLVED_PLAN
    assert inconsistency.user == user
    assert inconsistency.payload["id"] == "cs_ghost"
    assert PaymentReconciliation.objects.get(external_reference="cs_ghost").status == (
        PaymentReconciliation.Status.INCONSISTENT
    )
    assert get_balance(user.pk).available_points == 0
    assert not Subscription.objects.filter(user=user).exists()
    alert.assert_called_once()
    assert alert.call_args.kwargs["reference"] == "cs_ghost"
    assert alert.call_args.kwargs["reason"] == "unresolved_plan"


@pytest.mark.django_db
def test_unknown_user_and_unknown_kind_are_inconsistencies(user, checkout_session):
    orphan = checkout_session("cs_orphan", user=user, kind="points_package", metadata={"points": "100"})
    orphan["metadata"]["userId"] = "999999"
    orphan["client_reference_id"] = None
    strange = checkout_session("cs_strange", user=user, kind="gift_card", metadata={"points": "100"})

    assert handle_stripe_event(_event("checkout.session.completed", orphan)).status == ReconciliationResult.INCONSISTENT
    assert handle_stripe_event(_event("checkout.session.completed", strange)).status == ReconciliationResult.INCONSISTENT

    reasons = dict(PaymentInconsistency.objects.values_list("external_reference", "reason"))
    assert reasons == {"cs_orphan": "unknown_user", "cs_strange": "unknown_kind"}


@pytest.mark.django_db
def test_missing_point_metadata_needs_legacy_switch(user, checkout_session):
    session = checkout_session("cs_legacy", user=user, kind="points_package", amount_total=1690)

    result = handle_stripe_event(_event("checkout.session.completed", session))
    assert result.status == ReconciliationResult.INCONSISTENT
    assert PaymentInconsistency.objects.get(external_reference="cs_legacy").reason == "missing_points"

    with override_settings(BILLING_ALLOW_LEGACY_PRICE_FALLBACK=True):
        call_command("replay_payment_inconsistencies", "--reference", "cs_legacy")

    assert get_balance(user.pk).available_points == 680
    assert not PaymentInconsistency.objects.filter(external_reference="cs_legacy").exists()


@pytest.mark.django_db
def test_replay_applies_after_catalog_fix(user, checkout_session):
    from billing.models import SubscriptionPlan

    session = checkout_session("cs_replay", user=user, kind="subscription", metadata={"planId": "test_late_plan"})
    handle_stripe_event(_event("checkout.session.completed", session))
    assert PaymentInconsistency.objects.filter(external_reference="cs_replay").exists()

    call_command("replay_payment_inconsistencies", "--dry-run")
    assert PaymentInconsistency.objects.filter(external_reference="cs_replay").exists()

    SubscriptionPlan.objects.create(key="test_late_plan", name="Late", price=Decimal("16.90"), points=680)
    call_command("replay_payment_inconsistencies")

    assert not PaymentInconsistency.objects.exists()
    assert get_balance(user.pk).available_points == 680
    assert PaymentReconciliation.objects.get(external_reference="cs_replay").status == (
        PaymentReconciliation.Status.APPLIED
    )


@pytest.mark.django_db
def test_upgrade_payment_switches_plan(user, basic_plan, premium_plan, make_subscription, checkout_session):
    current = make_subscription(user, basic_plan)
    session = checkout_session(
        "cs_upgrade_paid",
        user=user,
        kind="subscription_upgrade",
        amount_total=11880,
        metadata={
            "currentSubscriptionId": str(current.pk),
            "newPlanId": str(premium_plan.pk),
            "points": "8000",
        },
    )

    result = handle_stripe_event(_event("checkout.session.completed", session))

    assert result.status == ReconciliationResult.APPLIED
    current.refresh_from_db()
    assert current.status == Subscription.Status.CANCELLED
    assert result.subscription.plan == premium_plan
    assert get_balance(user.pk).available_points == 8000


@pytest.mark.django_db
def test_renewal_invoice_extends_subscription(user, basic_plan, make_subscription):
    subscription = make_subscription(user, basic_plan, external_subscription_id="sub_cycle")
    period_end = int((subscription.end_date + timedelta(days=31)).timestamp())
    invoice = {
        "id": "in_cycle",
        "object": "invoice",
        "billing_reason": "subscription_cycle",
        "subscription": "sub_cycle",
        "amount_paid": 1690,
        "currency": "usd",
        "lines": {"data": [{"period": {"start": int(timezone.now().timestamp()), "end": period_end}}]},
    }

    first = handle_stripe_event(_event("invoice.payment_succeeded", invoice))
    second = handle_stripe_event(_event("invoice.payment_succeeded", invoice, event_id="evt_2"))

    assert first.status == ReconciliationResult.APPLIED
    assert second.status == ReconciliationResult.DUPLICATE
    subscription.refresh_from_db()
    assert int(subscription.end_date.timestamp()) == period_end
    assert get_balance(user.pk).available_points == 680


@pytest.mark.django_db
def test_renewal_invoice_after_lazy_expiry_reopens_subscription(user, basic_plan, make_subscription):
    lapsed = make_subscription(user, basic_plan, external_subscription_id="sub_late")
    credit(user.pk, 680, LedgerEntry.Reason.RECHARGE, "cs_late")
    Subscription.objects.filter(pk=lapsed.pk).update(end_date=timezone.now() - timedelta(minutes=5))

    # A generation in the gap between period end and the invoice expires the row.
    consume(user.pk, 10)
    lapsed.refresh_from_db()
    assert lapsed.status == Subscription.Status.EXPIRED

    period_start = int(lapsed.end_date.timestamp())
    period_end = int((lapsed.end_date + timedelta(days=31)).timestamp())
    invoice = {
        "id": "in_late",
        "object": "invoice",
        "billing_reason": "subscription_cycle",
        "subscription": "sub_late",
        "amount_paid": 1690,
        "currency": "usd",
        "lines": {"data": [{"period": {"start": period_start, "end": period_end}}]},
    }

    first = handle_stripe_event(_event("invoice.payment_succeeded", invoice))
    second = handle_stripe_event(_event("invoice.payment_succeeded", invoice, event_id="evt_2"))

    assert first.status == ReconciliationResult.APPLIED
    assert second.status == ReconciliationResult.DUPLICATE
    active = Subscription.objects.get(user=user, status=Subscription.Status.ACTIVE)
    assert active.pk != lapsed.pk
    assert int(active.end_date.timestamp()) == period_end
    assert get_balance(user.pk).available_points == 680
    assert not PaymentInconsistency.objects.filter(external_reference="in_late").exists()


@pytest.mark.django_db
def test_first_invoice_is_left_to_checkout_session(user):
    invoice = {"id": "in_first", "object": "invoice", "billing_reason": "subscription_create"}

    assert handle_stripe_event(_event("invoice.payment_succeeded", invoice)).status == ReconciliationResult.IGNORED


@pytest.mark.django_db
def test_renewal_for_unknown_subscription_is_inconsistent():
    invoice = {
        "id": "in_lost",
        "object": "invoice",
        "billing_reason": "subscription_cycle",
        "parent": {"subscription_details": {"subscription": "sub_lost"}},
        "period_end": int(timezone.now().timestamp()),
    }

    result = handle_stripe_event(_event("invoice.payment_succeeded", invoice))

    assert result.status == ReconciliationResult.INCONSISTENT
    assert PaymentInconsistency.objects.get(external_reference="in_lost").reason == "unknown_subscription"


@pytest.mark.django_db
def test_gateway_deletion_schedules_period_end(user, basic_plan, make_subscription):
    subscription = make_subscription(user, basic_plan, external_subscription_id="sub_deleted")

    result = handle_stripe_event(_event("customer.subscription.deleted", {"id": "sub_deleted"}))

    assert result.status == ReconciliationResult.APPLIED
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.ACTIVE
    assert subscription.cancel_at_period_end is True


@pytest.mark.django_db
def test_unsupported_events_are_ignored():
    result = handle_stripe_event(_event("customer.created", {"id": "cus_1"}))

    assert result.status == ReconciliationResult.IGNORED
