"""Authoritative lookup of subscription plans and points packages.

Every conversion from a purchase to a number of points goes through this module;
the reconciler, the checkout views and the catalog endpoints all read from here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from django.conf import settings
from django.core.exceptions import ValidationError

from billing.models import PointsPackage, SubscriptionPlan

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """Base exception for catalog issues."""


class UnresolvedPlanOrPackage(CatalogError):
    """Raised when a plan or package identifier does not match the active catalog."""


class CatalogConfigurationError(CatalogError):
    """Raised when the seed catalog in settings is malformed."""


@dataclass(frozen=True)
class PointGrant:
    """Points a payment is worth and where the figure came from."""

    points: int
    bonus_points: int = 0
    source: str = "metadata"

    @property
    def total(self) -> int:
        return self.points + self.bonus_points


def list_plans() -> List[SubscriptionPlan]:
    return list(SubscriptionPlan.objects.filter(is_active=True).order_by("sort_order", "price"))


def list_packages() -> List[PointsPackage]:
    return list(PointsPackage.objects.filter(is_active=True).order_by("sort_order", "price"))


def get_plan(identifier: Any, *, include_inactive: bool = False) -> SubscriptionPlan:
    """Return a plan by primary key or key."""

    return _lookup(SubscriptionPlan, identifier, include_inactive=include_inactive, label="plan")


def get_package(identifier: Any, *, include_inactive: bool = False) -> PointsPackage:
    """Return a points package by primary key or key."""

    return _lookup(PointsPackage, identifier, include_inactive=include_inactive, label="package")


def plans_above(plan: SubscriptionPlan) -> List[SubscriptionPlan]:
    """Active plans a subscriber of ``plan`` may upgrade to."""

    return [candidate for candidate in list_plans() if candidate.price > plan.price]


def resolve_granted_points(
    metadata: Mapping[str, Any],
    *,
    plan: Optional[SubscriptionPlan] = None,
    package: Optional[PointsPackage] = None,
    amount: Optional[Decimal] = None,
) -> PointGrant:
    """Work out the points a payment grants.

    Explicit point metadata written at checkout wins. Otherwise the catalog entry the
    payment refers to is used. The price table is consulted last, only when the legacy
    fallback is switched on, for sessions created before point metadata existed.
    """

    explicit = _int_or_none(metadata.get("points"))
    bonus = _int_or_none(metadata.get("bonusPoints")) or 0
    if explicit is not None and explicit > 0:
        return PointGrant(points=explicit, bonus_points=max(bonus, 0), source="metadata")

    if package is not None:
        return PointGrant(points=package.points, bonus_points=package.bonus_points, source="catalog")
    if plan is not None:
        return PointGrant(points=plan.points, source="catalog")

    if amount is not None and getattr(settings, "BILLING_ALLOW_LEGACY_PRICE_FALLBACK", False):
        points = legacy_points_for_price(amount)
        logger.warning(
            "Granting %s points for amount %s from the legacy price table; metadata had no point count.",
            points,
            amount,
        )
        return PointGrant(points=points, source="legacy_price")

    raise UnresolvedPlanOrPackage("Payment carries no point metadata and no resolvable plan or package.")


def legacy_points_for_price(amount: Decimal) -> int:
    """Deprecated price-to-points table for payments that predate point metadata."""

    table: Dict[str, int] = getattr(settings, "BILLING_LEGACY_PRICE_POINTS", {}) or {}
    normalised = Decimal(amount).quantize(Decimal("0.01"))
    for price, points in table.items():
        if Decimal(str(price)).quantize(Decimal("0.01")) == normalised:
            return int(points)
    if normalised <= Decimal("10"):
        return 100
    return int(normalised * 40)


def ensure_default_catalog() -> Dict[str, List[str]]:
    """Create or refresh the plans and packages declared in settings."""

    created: List[str] = []
    updated: List[str] = []

    plan_config = getattr(settings, "BILLING_SUBSCRIPTION_PLANS", {}) or {}
    package_config = getattr(settings, "BILLING_POINTS_PACKAGES", {}) or {}
    default_validity = default_validity_days()

    for key, config in plan_config.items():
        defaults = {
            "name": config.get("name", key.title()),
            "description": config.get("description", ""),
            "price": _decimal(config.get("price"), key),
            "duration_unit": config.get("duration_unit", SubscriptionPlan.DurationUnit.MONTH),
            "points": _positive_int(config.get("points"), key),
            "stripe_product_id": config.get("stripe_product_id") or "",
            "sort_order": int(config.get("sort_order", 0)),
        }
        _upsert(SubscriptionPlan, key, defaults, created, updated)

    for key, config in package_config.items():
        defaults = {
            "name": config.get("name", key.title()),
            "description": config.get("description", ""),
            "price": _decimal(config.get("price"), key),
            "points": _positive_int(config.get("points"), key),
            "bonus_points": int(config.get("bonus_points", 0)),
            "validity_days": int(config.get("validity_days", default_validity)),
            "sort_order": int(config.get("sort_order", 0)),
        }
        _upsert(PointsPackage, key, defaults, created, updated)

    return {"created": created, "updated": updated}


def _upsert(model, key: str, defaults: Dict[str, Any], created: List[str], updated: List[str]) -> None:
    instance, was_created = model.objects.get_or_create(key=key, defaults=defaults)
    if was_created:
        created.append(key)
        return

    fields_to_update = []
    for field, expected in defaults.items():
        if getattr(instance, field) != expected:
            setattr(instance, field, expected)
            fields_to_update.append(field)
    if fields_to_update:
        instance.save(update_fields=fields_to_update + ["updated_at"])
        updated.append(key)


def _lookup(model, identifier: Any, *, include_inactive: bool, label: str):
    if identifier in (None, ""):
        raise UnresolvedPlanOrPackage(f"No {label} identifier supplied.")

    queryset = model.objects.all() if include_inactive else model.objects.filter(is_active=True)
    text = str(identifier)
    try:
        instance = queryset.filter(pk=text).first()
    except ValidationError:
        instance = None
    if instance is None:
        instance = queryset.filter(key=text).first()
    if instance is None:
        raise UnresolvedPlanOrPackage(f"Unknown {label} '{text}'.")
    return instance


def _int_or_none(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _decimal(value: Any, key: str) -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError) as exc:
        raise CatalogConfigurationError(f"Catalog entry '{key}' has an invalid price.") from exc


def _positive_int(value: Any, key: str) -> int:
    number = _int_or_none(value)
    if number is None or number <= 0:
        raise CatalogConfigurationError(f"Catalog entry '{key}' must define a positive point count.")
    return number


def default_validity_days() -> int:
    return int(getattr(settings, "BILLING_PACKAGE_VALIDITY_DAYS", 60))
