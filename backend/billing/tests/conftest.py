from datetime import timedelta
from decimal import Decimal

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APIClient

from billing.models import PointsPackage, Subscription, SubscriptionPlan


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(
        username="alice",
        email="alice@example.com",
        password="pass1234",
    )


@pytest.fixture
def other_user(db):
    return get_user_model().objects.create_user(
        username="bob",
        email="bob@example.com",
        password="pass1234",
    )


@pytest.fixture
def api_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def basic_plan(db):
    return SubscriptionPlan.objects.create(
        key="test_basic",
        name="Basic",
        price=Decimal("16.90"),
        duration_unit=SubscriptionPlan.DurationUnit.MONTH,
        points=680,
        sort_order=10,
    )


@pytest.fixture
def premium_plan(db):
    return SubscriptionPlan.objects.create(
        key="test_premium",
        name="Premium",
        price=Decimal("118.80"),
        duration_unit=SubscriptionPlan.DurationUnit.YEAR,
        points=8000,
        sort_order=11,
    )


@pytest.fixture
def bonus_package(db):
    return PointsPackage.objects.create(
        key="test_bonus_pack",
        name="1200 Points",
        price=Decimal("9.90"),
        points=1100,
        bonus_points=100,
        validity_days=60,
    )


@pytest.fixture
def make_subscription():
    def _make(user, plan, *, days_left=20, **extra):
        now = timezone.now()
        return Subscription.objects.create(
            user=user,
            plan=plan,
            status=Subscription.Status.ACTIVE,
            start_date=now - timedelta(days=10),
            end_date=now + timedelta(days=days_left),
            **extra,
        )

    return _make


@pytest.fixture
def checkout_session():
    """Build a paid Checkout Session dict the way Stripe returns it."""

    def _build(session_id, *, user, kind, metadata=None, amount_total=1690, payment_status="paid", **extra):
        session = {
            "id": session_id,
            "object": "checkout.session",
            "amount_total": amount_total,
            "currency": "usd",
            "payment_status": payment_status,
            "client_reference_id": str(user.pk),
            "customer": "cus_test",
            "subscription": None,
            "metadata": {"userId": str(user.pk), "type": kind, **(metadata or {})},
        }
        session.update(extra)
        return session

    return _build
