import hashlib
import hmac
import json
import time

import pytest
import stripe

from apps.orders.errors import PaymentGatewayError
from apps.payments.base import AckDecision, PaymentRequest, WebhookPayload
from apps.payments.stripe_provider import StripeProvider

SECRET = "whsec_test_secret"


@pytest.fixture
def provider():
    return StripeProvider(
        {"secret_key": "sk_test_x", "webhook_secret": SECRET, "checkout_url": "http://shop/pages/stripe-checkout.html"}
    )


def event(event_type="payment_intent.succeeded", **intent):
    obj = {"id": "pi_123", "amount": 205000, "amount_received": 205000, "latest_charge": "ch_9", "metadata": {"orderId": "o-1", "buyerId": "b-1"}}
    obj.update(intent)
    return {"id": "evt_1", "object": "event", "type": event_type, "data": {"object": obj}}


def signed(body: bytes, secret=SECRET, ts=None):
    ts = ts or int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return WebhookPayload(body, {"Stripe-Signature": f"t={ts},v1={sig}"})


def test_verify_real_signature(provider):
    result = provider.verify_callback(signed(json.dumps(event()).encode()))
    assert result.valid and result.succeeded
    assert result.order_ref == "o-1"
    assert result.correlation_id == "pi_123"
    assert result.amount == 205000
    assert result.external_transaction_id == "ch_9"


def test_verify_tampered_body(provider):
    payload = signed(json.dumps(event()).encode())
    tampered = WebhookPayload(payload.body.replace(b"205000", b"1000"), payload.headers)
    assert provider.verify_callback(tampered).valid is False


def test_verify_missing_header(provider):
    assert provider.verify_callback(WebhookPayload(json.dumps(event()).encode())).valid is False


def test_failed_intent_is_not_final(provider):
    body = json.dumps(event("payment_intent.payment_failed", last_payment_error={"message": "Your card was declined."}))
    result = provider.verify_callback(signed(body.encode()))
    assert result.valid and not result.succeeded
    assert result.failure_reason == "Your card was declined."
    assert result.final is False


def test_canceled_intent_is_final(provider):
    body = json.dumps(event("payment_intent.canceled", cancellation_reason="abandoned"))
    result = provider.verify_callback(signed(body.encode()))
    assert result.valid and not result.succeeded and result.final
    assert result.failure_reason == "abandoned"
    assert result.order_ref == "o-1"


def test_charge_refunded(provider):
    charge = {
        "id": "ch_9",
        "object": "charge",
        "payment_intent": "pi_123",
        "amount_refunded": 205000,
        "metadata": {},
        "refunds": {"data": [{"id": "re_1", "amount": 205000, "metadata": {"orderId": "o-1"}}]},
    }
    body = {"id": "evt_2", "type": "charge.refunded", "data": {"object": charge}}
    result = provider.verify_callback(signed(json.dumps(body).encode()))
    assert result.valid and result.refund
    assert not result.succeeded
    assert result.correlation_id == "pi_123"
    assert result.order_ref == "o-1"
    assert result.amount == 205000
    assert result.refund_id == "re_1"


def test_irrelevant_event_is_valid_without_refs(provider):
    result = provider.verify_callback(signed(json.dumps(event("payment_intent.created")).encode()))
    assert result.valid
    assert result.order_ref is None and result.correlation_id is None


def test_create_payment_intent(provider, monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "pi_123", "client_secret": "pi_123_secret_abc"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    link = provider.create_payment_request(
        PaymentRequest(205000, "VND", "o-1", "Order o-1", "http://r", "http://c", buyer_id="b-1")
    )

    assert captured["currency"] == "vnd"
    assert captured["metadata"] == {"orderId": "o-1", "buyerId": "b-1"}
    assert captured["api_key"] == "sk_test_x"
    assert link.correlation_id == "pi_123"
    assert link.checkout_url.startswith("http://shop/pages/stripe-checkout.html?payment_intent=pi_123")


def test_create_sdk_error_is_gateway_error(provider, monkeypatch):
    def boom(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.PaymentIntent, "create", boom)
    with pytest.raises(PaymentGatewayError):
        provider.create_payment_request(PaymentRequest(1, "VND", "o-1", "x", "http://r", "http://c"))


@pytest.mark.parametrize("status,succeeded,pending", [("succeeded", True, False), ("processing", False, True), ("canceled", False, False)])
def test_query_status(provider, monkeypatch, status, succeeded, pending):
    monkeypatch.setattr(
        stripe.PaymentIntent, "retrieve", lambda pid, **kw: {"id": pid, "status": status, "amount": 205000}
    )
    result = provider.query_status("pi_123")
    assert (result.succeeded, result.pending) == (succeeded, pending)


def test_acknowledge(provider):
    assert provider.acknowledge(AckDecision.ACCEPTED) == (200, {"received": True})
    assert provider.acknowledge(AckDecision.REJECTED)[0] == 400
    assert provider.acknowledge(AckDecision.RETRY)[0] == 500


def test_refund(provider, monkeypatch):
    captured = {}

    def fake_refund(**kwargs):
        captured.update(kwargs)
        return {"id": "re_1", "amount": kwargs["amount"], "status": "succeeded"}

    monkeypatch.setattr(stripe.Refund, "create", fake_refund)
    result = provider.refund("pi_123", 100000, order_ref="o-1", reason="damaged")

    assert provider.supports_refund
    assert captured["payment_intent"] == "pi_123"
    assert captured["amount"] == 100000
    assert captured["metadata"] == {"orderId": "o-1", "note": "damaged"}
    assert (result.refund_id, result.amount, result.status) == ("re_1", 100000, "succeeded")


def test_refund_sdk_error_is_gateway_error(provider, monkeypatch):
    def boom(**kwargs):
        raise stripe.InvalidRequestError("charge already refunded", "payment_intent")

    monkeypatch.setattr(stripe.Refund, "create", boom)
    with pytest.raises(PaymentGatewayError):
        provider.refund("pi_123", 1)
