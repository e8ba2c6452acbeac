from unittest import mock

import pytest
import stripe

from billing.services import stripe_payments
from billing.services.stripe_payments import (
    StripeConfigurationError,
    StripeServiceError,
    UnverifiedEvent,
    cancel_gateway_subscription,
    create_points_checkout_session,
    parse_event,
)


def test_checkout_urls_keep_placeholder_unencoded():
    url = stripe_payments._append_checkout_params(
        "https://app.test/billing/success?ref=mail",
        {"context": "points", "package": "points_500", "empty": ""},
        include_session=True,
    )

    assert url == "https://app.test/billing/success?ref=mail&context=points&package=points_500&session_id={CHECKOUT_SESSION_ID}"


def test_missing_secret_key_is_a_configuration_error(settings):
    settings.STRIPE_SECRET_KEY = ""

    with pytest.raises(StripeConfigurationError):
        stripe_payments.create_checkout_session(mode="payment")


@pytest.mark.django_db
def test_points_checkout_carries_point_metadata(settings, user, bonus_package):
    settings.STRIPE_SECRET_KEY = "sk_test_123"
    settings.STRIPE_SUCCESS_URL = "https://app.test/success"
    settings.STRIPE_CANCEL_URL = "https://app.test/cancel"

    with mock.patch.object(
        stripe.checkout.Session,
        "create",
        return_value={"id": "cs_meta", "url": "https://checkout.stripe.test/cs_meta"},
    ) as create:
        session = create_points_checkout_session(user=user, package=bonus_package)

    assert session == {"id": "cs_meta", "url": "https://checkout.stripe.test/cs_meta"}
    params = create.call_args.kwargs
    assert params["mode"] == "payment"
    assert params["client_reference_id"] == str(user.pk)
    assert params["metadata"]["type"] == "points_package"
    assert params["metadata"]["userId"] == str(user.pk)
    assert params["metadata"]["points"] == "1100"
    assert params["metadata"]["bonusPoints"] == "100"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 990
    assert params["success_url"].endswith("session_id={CHECKOUT_SESSION_ID}")


def test_parse_event_requires_signature_header(settings):
    settings.STRIPE_WEBHOOK_SECRET = "whsec_test"

    with pytest.raises(UnverifiedEvent):
        parse_event("{}", "")


def test_parse_event_maps_signature_failures(settings):
    settings.STRIPE_WEBHOOK_SECRET = "whsec_test"

    with mock.patch.object(
        stripe.Webhook,
        "construct_event",
        side_effect=stripe.SignatureVerificationError("bad", "t=1,v1=x"),
    ):
        with pytest.raises(UnverifiedEvent):
            parse_event("{}", "t=1,v1=x")

    with mock.patch.object(stripe.Webhook, "construct_event", side_effect=ValueError("not json")):
        with pytest.raises(StripeServiceError) as excinfo:
            parse_event("not json", "t=1,v1=x")
    assert not isinstance(excinfo.value, UnverifiedEvent)


def test_cancelling_missing_gateway_subscription_is_not_an_error(settings):
    settings.STRIPE_SECRET_KEY = "sk_test_123"
    missing = stripe.InvalidRequestError("No such subscription", "id", code="resource_missing")

    with mock.patch.object(stripe.Subscription, "cancel", side_effect=missing):
        assert cancel_gateway_subscription("sub_gone") is None

    with mock.patch.object(stripe.Subscription, "cancel", side_effect=stripe.APIConnectionError("down")):
        with pytest.raises(StripeServiceError):
            cancel_gateway_subscription("sub_down")
