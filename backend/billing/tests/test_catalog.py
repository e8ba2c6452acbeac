from decimal import Decimal

import pytest
from django.core.management import call_command

from billing.models import PointsPackage, SubscriptionPlan
from billing.services import catalog
from billing.services.catalog import UnresolvedPlanOrPackage, legacy_points_for_price, resolve_granted_points


def test_explicit_metadata_wins_over_catalog(basic_plan):
    grant = resolve_granted_points({"points": "700", "bonusPoints": "20"}, plan=basic_plan)

    assert grant.points == 700
    assert grant.bonus_points == 20
    assert grant.total == 720
    assert grant.source == "metadata"


def test_catalog_entry_used_without_metadata(basic_plan, bonus_package):
    plan_grant = resolve_granted_points({}, plan=basic_plan)
    package_grant = resolve_granted_points({"points": "0"}, package=bonus_package)

    assert (plan_grant.points, plan_grant.source) == (680, "catalog")
    assert (package_grant.points, package_grant.bonus_points) == (1100, 100)


def test_price_table_requires_legacy_switch(settings):
    settings.BILLING_ALLOW_LEGACY_PRICE_FALLBACK = False
    with pytest.raises(UnresolvedPlanOrPackage):
        resolve_granted_points({}, amount=Decimal("16.90"))

    settings.BILLING_ALLOW_LEGACY_PRICE_FALLBACK = True
    grant = resolve_granted_points({}, amount=Decimal("118.80"))
    assert (grant.points, grant.source) == (8000, "legacy_price")


@pytest.mark.parametrize(
    "amount, points",
    [
        ("16.90", 680),
        ("118.80", 8000),
        ("4.90", 100),
        ("10.00", 100),
        ("25.00", 1000),
    ],
)
def test_legacy_price_table(amount, points):
    assert legacy_points_for_price(Decimal(amount)) == points


@pytest.mark.django_db
def test_lookup_by_key_or_primary_key(basic_plan):
    assert catalog.get_plan("test_basic") == basic_plan
    assert catalog.get_plan(str(basic_plan.pk)) == basic_plan
    with pytest.raises(UnresolvedPlanOrPackage):
        catalog.get_plan("")


@pytest.mark.django_db
def test_inactive_entries_are_only_found_on_request(basic_plan):
    basic_plan.is_active = False
    basic_plan.save()

    with pytest.raises(UnresolvedPlanOrPackage):
        catalog.get_plan("test_basic")
    assert catalog.get_plan("test_basic", include_inactive=True) == basic_plan
    assert basic_plan not in catalog.list_plans()


@pytest.mark.django_db
def test_plans_above_only_lists_pricier_plans(basic_plan, premium_plan):
    above = catalog.plans_above(basic_plan)

    assert premium_plan in above
    assert basic_plan not in above
    assert catalog.plans_above(premium_plan) == [
        plan for plan in catalog.list_plans() if plan.price > premium_plan.price
    ]


@pytest.mark.django_db
def test_default_catalog_is_seeded_and_refreshed(settings):
    settings.BILLING_SUBSCRIPTION_PLANS = {
        "monthly": {"name": "Monthly", "price": "19.90", "points": 800},
    }
    settings.BILLING_POINTS_PACKAGES = {
        "points_test": {"name": "Test points", "price": "2.00", "points": 50},
    }

    result = catalog.ensure_default_catalog()

    assert "monthly" in result["updated"]
    assert result["created"] == ["points_test"]
    monthly = SubscriptionPlan.objects.get(key="monthly")
    assert monthly.price == Decimal("19.90")
    assert monthly.points == 800
    assert PointsPackage.objects.get(key="points_test").validity_days == 60

    assert catalog.ensure_default_catalog() == {"created": [], "updated": []}


@pytest.mark.django_db
def test_setup_command_rejects_bad_catalog(settings):
    from django.core.management.base import CommandError

    settings.BILLING_SUBSCRIPTION_PLANS = {"broken": {"price": "9.90", "points": 0}}

    with pytest.raises(CommandError):
        call_command("setup_billing_catalog")
