import json
from unittest import mock

import pytest
import stripe

from billing.errors import (
    EventValidationError,
    InvalidSignature,
    ProcessorConfigurationError,
    ProcessorNotFound,
    ProcessorRequestError,
    ProcessorUnavailable,
)
from billing.services.stripe_gateway import ExternalPrice, StripeGateway
from billing.tests.conftest import WEBHOOK_SECRET, make_event_payload, sign_payload


def _gateway(**kwargs):
    options = {"webhook_secret": WEBHOOK_SECRET, "client": mock.MagicMock(), "sleep": lambda _: None}
    options.update(kwargs)
    return StripeGateway(**options)


def _payload(**kwargs):
    return json.dumps(make_event_payload("invoice.paid", {"id": "in_1"}, **kwargs)).encode("utf-8")


def test_valid_signature_parses_event():
    raw = _payload(event_id="evt_valid")
    event = _gateway().verify_and_parse_event(raw, sign_payload(raw))
    assert event.id == "evt_valid"
    assert event.type == "invoice.paid"
    assert event.data_object == {"id": "in_1"}
    assert len(event.payload_hash) == 64


def test_single_flipped_bit_is_rejected():
    raw = _payload()
    header = sign_payload(raw)
    tampered = bytearray(raw)
    tampered[10] ^= 0x01
    with pytest.raises(InvalidSignature):
        _gateway().verify_and_parse_event(bytes(tampered), header)


def test_signature_replayed_against_other_payload_is_rejected():
    original = _payload(event_id="evt_original")
    other = _payload(event_id="evt_other")
    with pytest.raises(InvalidSignature):
        _gateway().verify_and_parse_event(other, sign_payload(original))


def test_wrong_secret_is_rejected():
    raw = _payload()
    with pytest.raises(InvalidSignature):
        _gateway().verify_and_parse_event(raw, sign_payload(raw, secret="whsec_other"))


def test_stale_signature_timestamp_is_rejected():
    raw = _payload()
    with pytest.raises(InvalidSignature):
        _gateway().verify_and_parse_event(raw, sign_payload(raw, timestamp=1))


def test_missing_header_is_rejected():
    with pytest.raises(InvalidSignature):
        _gateway().verify_and_parse_event(_payload(), "")


def test_missing_secret_is_a_configuration_error():
    raw = _payload()
    with pytest.raises(ProcessorConfigurationError):
        _gateway(webhook_secret="").verify_and_parse_event(raw, sign_payload(raw))


def test_signed_but_incomplete_envelope_is_a_validation_error():
    raw = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode("utf-8")
    with pytest.raises(EventValidationError):
        _gateway().verify_and_parse_event(raw, sign_payload(raw))


def test_transport_failures_are_retried_then_reported():
    gateway = _gateway(max_attempts=3)
    gateway._client.prices.retrieve.side_effect = stripe.APIConnectionError("connection reset")

    with pytest.raises(ProcessorUnavailable):
        gateway.retrieve_price("price_1")

    assert gateway._client.prices.retrieve.call_count == 3


def test_transport_failure_followed_by_success():
    gateway = _gateway(max_attempts=3)
    gateway._client.prices.retrieve.side_effect = [
        stripe.APIConnectionError("timeout"),
        {
            "id": "price_1",
            "product": "prod_1",
            "unit_amount": 2999,
            "currency": "usd",
            "recurring": {"interval": "month"},
            "active": True,
        },
    ]

    price = gateway.retrieve_price("price_1")

    assert price == ExternalPrice(
        id="price_1", product_id="prod_1", unit_amount=2999, currency="usd", interval="month", active=True
    )
    assert gateway._client.prices.retrieve.call_count == 2


def test_client_errors_are_not_retried():
    gateway = _gateway(max_attempts=3)
    gateway._client.prices.create.side_effect = stripe.InvalidRequestError(
        "Invalid currency", param="currency", http_status=400
    )

    with pytest.raises(ProcessorRequestError):
        gateway.create_price("prod_1", 2999, "usd", "month", {})

    assert gateway._client.prices.create.call_count == 1


def test_missing_object_translates_to_not_found():
    gateway = _gateway()
    gateway._client.prices.retrieve.side_effect = stripe.InvalidRequestError(
        "No such price", param="id", code="resource_missing", http_status=404
    )
    with pytest.raises(ProcessorNotFound):
        gateway.retrieve_price("price_gone")


def test_authentication_failure_is_a_configuration_error():
    gateway = _gateway()
    gateway._client.balance.retrieve.side_effect = stripe.AuthenticationError("Invalid API Key")
    with pytest.raises(ProcessorConfigurationError):
        gateway.ping()


def test_float_amounts_are_refused_before_any_call():
    gateway = _gateway()
    with pytest.raises(ProcessorRequestError):
        gateway.create_price("prod_1", 29.99, "usd", "month", {})
    gateway._client.prices.create.assert_not_called()


def test_create_customer_links_local_user():
    gateway = _gateway()
    gateway._client.customers.create.return_value = {"id": "cus_1"}

    assert gateway.create_customer(42, "athlete@example.com", "Ath Lete") == "cus_1"

    _, kwargs = gateway._client.customers.create.call_args
    assert kwargs["params"]["metadata"]["local_user_id"] == "42"
    assert kwargs["options"] == {"idempotency_key": "customer-user-42"}


def test_calls_require_an_open_client():
    gateway = StripeGateway(api_key="", webhook_secret=WEBHOOK_SECRET)
    with gateway:
        with pytest.raises(ProcessorConfigurationError):
            gateway.ping()


def test_open_builds_client_and_close_releases_it():
    with mock.patch("billing.services.stripe_gateway.stripe.StripeClient") as client_cls, mock.patch(
        "billing.services.stripe_gateway.stripe.RequestsClient"
    ) as http_cls:
        gateway = StripeGateway(api_key="sk_test_123", api_version="2023-10-16", timeout=7)
        with gateway:
            client_cls.assert_called_once()
            _, kwargs = client_cls.call_args
            assert kwargs["max_network_retries"] == 0
            http_cls.assert_called_once_with(timeout=7)
        http_cls.return_value.close.assert_called_once()


def test_event_from_other_stripe_mode_is_a_configuration_error():
    raw = _payload()
    with pytest.raises(ProcessorConfigurationError):
        _gateway(live_mode=True).verify_and_parse_event(raw, sign_payload(raw))


def test_undecodable_payload_fails_authentication():
    raw = b"\xff\xfe" + _payload()
    with pytest.raises(InvalidSignature):
        _gateway().verify_and_parse_event(raw, sign_payload(raw))


def test_create_subscription_returns_first_invoice_and_client_secret():
    gateway = _gateway()
    gateway._client.subscriptions.create.return_value = {
        "id": "sub_1",
        "status": "incomplete",
        "customer": "cus_1",
        "latest_invoice": {
            "id": "in_1",
            "amount_due": 2999,
            "currency": "usd",
            "payment_intent": {"id": "pi_1", "client_secret": "pi_1_secret"},
        },
    }

    created = gateway.create_subscription(
        "cus_1", "price_monthly", {"local_subscription_id": 7}, idempotency_key="subscription-7-start-1"
    )

    assert created.id == "sub_1"
    assert created.latest_invoice_id == "in_1"
    assert created.amount_due == 2999
    assert created.payment_intent_id == "pi_1"
    assert created.client_secret == "pi_1_secret"
    _, kwargs = gateway._client.subscriptions.create.call_args
    assert kwargs["params"]["payment_behavior"] == "default_incomplete"
    assert kwargs["params"]["metadata"] == {"local_subscription_id": "7"}
    assert kwargs["options"] == {"idempotency_key": "subscription-7-start-1"}


def test_cancel_subscription_at_period_end_updates_instead_of_deleting():
    gateway = _gateway()
    gateway._client.subscriptions.update.return_value = {
        "id": "sub_1",
        "status": "active",
        "customer": "cus_1",
        "cancel_at_period_end": True,
    }

    result = gateway.cancel_subscription("sub_1", reason="too_expensive")

    assert result.cancel_at_period_end
    gateway._client.subscriptions.cancel.assert_not_called()
    args, kwargs = gateway._client.subscriptions.update.call_args
    assert args == ("sub_1",)
    assert kwargs["params"] == {"cancel_at_period_end": True, "metadata": {"cancellation_reason": "too_expensive"}}


def test_immediate_cancellation_calls_cancel():
    gateway = _gateway()
    gateway._client.subscriptions.cancel.return_value = {"id": "sub_1", "status": "canceled", "customer": "cus_1"}

    result = gateway.cancel_subscription("sub_1", at_period_end=False)

    assert result.status == "canceled"
    gateway._client.subscriptions.update.assert_not_called()
