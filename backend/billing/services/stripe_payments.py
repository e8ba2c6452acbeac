"""Stripe checkout and webhook helpers used across the billing flows.

Nothing in this module touches the database; callers must not hold row locks while
calling into it.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from django.conf import settings
import stripe

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from billing.models import PointsPackage, Subscription, SubscriptionPlan


class StripeConfigurationError(RuntimeError):
    """Raised when mandatory Stripe configuration is missing."""


class StripeServiceError(RuntimeError):
    """Raised when Stripe returns an operational error."""


class UnverifiedEvent(StripeServiceError):
    """Raised when a webhook payload fails signature verification."""


def _configure_stripe() -> None:
    secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not secret_key:
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured.")

    stripe.api_key = secret_key
    api_version = getattr(settings, "STRIPE_API_VERSION", None)
    if api_version:
        stripe.api_version = api_version


def _build_public_url(path: str) -> str:
    base_url = getattr(settings, "BILLING_PUBLIC_BASE_URL", "")
    if not base_url:
        return ""
    normalized_base = base_url if base_url.endswith("/") else f"{base_url}/"
    normalized_path = path.lstrip("/")
    return urljoin(normalized_base, normalized_path)


def _default_success_url() -> str:
    url = getattr(settings, "STRIPE_SUCCESS_URL", "") or _build_public_url("billing/success")
    if not url:
        raise StripeConfigurationError("STRIPE_SUCCESS_URL or BILLING_PUBLIC_BASE_URL must be configured.")
    return url


def _default_cancel_url() -> str:
    url = getattr(settings, "STRIPE_CANCEL_URL", "") or _build_public_url("billing/cancel")
    if not url:
        raise StripeConfigurationError("STRIPE_CANCEL_URL or BILLING_PUBLIC_BASE_URL must be configured.")
    return url


def _stringify_metadata(values: Dict[str, Any]) -> Dict[str, str]:
    return {key: "" if value is None else str(value) for key, value in values.items()}


def _append_checkout_params(url: str, params: Dict[str, Any], *, include_session: bool = False) -> str:
    """Append query parameters to success/cancel URLs, preserving existing values."""

    if not params and not include_session:
        return url

    split_url = urlsplit(url)
    existing_params = dict(parse_qsl(split_url.query, keep_blank_values=True))

    for key, value in params.items():
        if value in (None, ""):
            continue
        existing_params[key] = str(value)

    query = urlencode(existing_params, doseq=True)
    # Stripe substitutes the placeholder literally, so it must not be url-encoded.
    if include_session and "session_id" not in existing_params:
        session_fragment = "session_id={CHECKOUT_SESSION_ID}"
        query = f"{query}&{session_fragment}" if query else session_fragment

    return urlunsplit((split_url.scheme, split_url.netloc, split_url.path, query, split_url.fragment))


def _to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def _to_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    to_dict_recursive = getattr(obj, "to_dict_recursive", None)
    if callable(to_dict_recursive):
        return to_dict_recursive()
    return obj.to_dict()


def create_checkout_session(**params: Any) -> Dict[str, Any]:
    _configure_stripe()
    metadata = params.get("metadata")
    if metadata:
        params["metadata"] = _stringify_metadata(metadata)
    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as exc:
        logger.warning("Stripe checkout session creation failed: %s", exc)
        raise StripeServiceError(str(exc)) from exc
    return {"id": session.get("id"), "url": session.get("url")}


def create_subscription_checkout_session(
    *,
    user,
    plan: "SubscriptionPlan",
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a recurring Checkout session for a first subscription."""

    metadata = {
        "userId": user.pk,
        "type": "subscription",
        "planId": plan.pk,
        "planName": plan.name,
        "points": plan.points,
        "billingPeriod": plan.duration_unit,
    }
    return create_checkout_session(
        mode="subscription",
        line_items=[_recurring_line_item(plan)],
        metadata=metadata,
        subscription_data={"metadata": _stringify_metadata(metadata)},
        customer_email=getattr(user, "email", None) or None,
        client_reference_id=str(user.pk),
        success_url=_append_checkout_params(
            success_url or _default_success_url(),
            {"context": "subscription", "plan": plan.key},
            include_session=True,
        ),
        cancel_url=_append_checkout_params(cancel_url or _default_cancel_url(), {"context": "subscription"}),
    )


def create_points_checkout_session(
    *,
    user,
    package: "PointsPackage",
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a one-off Checkout session for a points package."""

    metadata = {
        "userId": user.pk,
        "type": "points_package",
        "packageId": package.pk,
        "packageName": package.name,
        "points": package.points,
        "bonusPoints": package.bonus_points,
        "totalPoints": package.total_points,
    }
    line_item = {
        "price_data": {
            "currency": package.currency,
            "unit_amount": _to_minor_units(package.price),
            "product_data": {
                "name": package.name,
                "description": f"{package.total_points} points",
            },
        },
        "quantity": 1,
    }
    return create_checkout_session(
        mode="payment",
        line_items=[line_item],
        metadata=metadata,
        customer_email=getattr(user, "email", None) or None,
        client_reference_id=str(user.pk),
        success_url=_append_checkout_params(
            success_url or _default_success_url(),
            {"context": "points", "package": package.key},
            include_session=True,
        ),
        cancel_url=_append_checkout_params(cancel_url or _default_cancel_url(), {"context": "points"}),
    )


def create_upgrade_checkout_session(
    *,
    user,
    subscription: "Subscription",
    new_plan: "SubscriptionPlan",
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a recurring Checkout session that replaces ``subscription`` once paid."""

    metadata = {
        "userId": user.pk,
        "type": "subscription_upgrade",
        "currentSubscriptionId": subscription.pk,
        "newPlanId": new_plan.pk,
        "newPlanName": new_plan.name,
        "planId": new_plan.pk,
        "points": new_plan.points,
        "billingPeriod": new_plan.duration_unit,
    }
    return create_checkout_session(
        mode="subscription",
        line_items=[_recurring_line_item(new_plan)],
        metadata=metadata,
        subscription_data={"metadata": _stringify_metadata(metadata)},
        customer=subscription.external_customer_id or None,
        client_reference_id=str(user.pk),
        success_url=_append_checkout_params(
            success_url or _default_success_url(),
            {"context": "upgrade", "plan": new_plan.key},
            include_session=True,
        ),
        cancel_url=_append_checkout_params(cancel_url or _default_cancel_url(), {"context": "upgrade"}),
    )


def _recurring_line_item(plan: "SubscriptionPlan") -> Dict[str, Any]:
    product_data: Dict[str, Any] = {"name": plan.name, "description": f"{plan.points} points per {plan.duration_unit}"}
    if plan.stripe_product_id:
        product_data["metadata"] = {"product_id": plan.stripe_product_id}
    return {
        "price_data": {
            "currency": plan.currency,
            "unit_amount": _to_minor_units(plan.price),
            "recurring": {"interval": plan.duration_unit},
            "product_data": product_data,
        },
        "quantity": 1,
    }


def retrieve_checkout_session(session_id: str) -> Dict[str, Any]:
    """Fetch a Checkout session server-side, so the client never supplies payment facts."""

    if not session_id:
        raise ValueError("session_id is required.")

    _configure_stripe()
    try:
        session = stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as exc:
        logger.warning("Failed to retrieve Stripe checkout session %s: %s", session_id, exc)
        raise StripeServiceError(str(exc)) from exc
    return _to_dict(session)


def parse_event(payload: str, sig_header: str, secret: Optional[str] = None) -> Dict[str, Any]:
    """Validate and deserialize a Stripe webhook payload."""

    if not sig_header:
        raise UnverifiedEvent("Stripe-Signature header is missing.")

    webhook_secret = secret or getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    if not webhook_secret:
        raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET is not configured.")

    try:
        event = stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=webhook_secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise UnverifiedEvent("Stripe webhook signature verification failed.") from exc
    except ValueError as exc:
        logger.error("Received malformed Stripe webhook payload: %s", exc)
        raise StripeServiceError("Malformed Stripe webhook payload.") from exc
    return _to_dict(event)


def cancel_gateway_subscription(external_subscription_id: str) -> Optional[Dict[str, Any]]:
    """Cancel a Stripe subscription right away; an already removed subscription is not an error."""

    if not external_subscription_id:
        return None

    _configure_stripe()
    try:
        subscription = stripe.Subscription.cancel(external_subscription_id)
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", None) == "resource_missing":
            logger.info("Stripe subscription %s already gone.", external_subscription_id)
            return None
        raise StripeServiceError(str(exc)) from exc
    except stripe.StripeError as exc:
        logger.warning("Failed to cancel Stripe subscription %s: %s", external_subscription_id, exc)
        raise StripeServiceError(str(exc)) from exc
    return _to_dict(subscription)


def schedule_gateway_cancellation(external_subscription_id: str) -> Optional[Dict[str, Any]]:
    """Stop renewals while leaving the current paid period intact."""

    if not external_subscription_id:
        return None

    _configure_stripe()
    try:
        subscription = stripe.Subscription.modify(external_subscription_id, cancel_at_period_end=True)
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", None) == "resource_missing":
            logger.info("Stripe subscription %s already gone.", external_subscription_id)
            return None
        raise StripeServiceError(str(exc)) from exc
    except stripe.StripeError as exc:
        logger.warning("Failed to schedule cancellation for %s: %s", external_subscription_id, exc)
        raise StripeServiceError(str(exc)) from exc
    return _to_dict(subscription)
