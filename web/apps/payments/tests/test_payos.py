import json

import httpx
import pytest

from apps.orders.errors import PaymentGatewayError
from apps.payments.base import AckDecision, PaymentRequest, WebhookPayload
from apps.payments.payos import PayOSProvider
from apps.payments.signatures import HmacSigner, canonical

CONFIG = {"client_id": "cid", "api_key": "akey", "checksum_key": "checksum"}


def respond(status_code, body):
    return httpx.Response(status_code, json=body, request=httpx.Request("GET", "http://payos"))


@pytest.fixture
def provider():
    return PayOSProvider(CONFIG, clock=lambda: 1700123456.789)


@pytest.fixture
def sent(monkeypatch):
    seen = []
    replies = []

    def fake_request(self, method, url, **kwargs):
        seen.append((method, url, kwargs))
        return replies.pop(0)

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)
    return seen, replies


def webhook(data, signature=None):
    body = {"code": "00", "desc": "success", "success": True, "data": data}
    body["signature"] = signature or HmacSigner("checksum").sign(canonical(data))
    return WebhookPayload(json.dumps(body).encode("utf-8"))


PAID = {
    "orderCode": 123456789,
    "amount": 205000,
    "description": "Order 1a2b3c4d",
    "reference": "FT23311",
    "code": "00",
    "desc": "success",
}


def test_create_uses_short_numeric_order_code(provider, sent):
    seen, replies = sent
    replies.append(respond(200, {"code": "00", "data": {"checkoutUrl": "https://pay.payos.vn/web/x"}}))

    link = provider.create_payment_request(
        PaymentRequest(
            amount=205000,
            currency="VND",
            order_ref="txn_1a2b3c4d",
            description="A description that is far longer than allowed",
            return_url="http://shop/ok",
            callback_url="http://api/webhook",
        )
    )

    method, url, kwargs = seen[0]
    body = kwargs["json"]
    assert url.endswith("/v2/payment-requests")
    assert kwargs["headers"]["x-client-id"] == "cid"
    assert body["orderCode"] == 123456789
    assert len(body["description"]) == 25
    signed = {k: body[k] for k in ("amount", "cancelUrl", "description", "orderCode", "returnUrl")}
    assert body["signature"] == HmacSigner("checksum").sign(canonical(signed))
    assert link.correlation_id == "123456789"


def test_create_refused(provider, sent):
    _, replies = sent
    replies.append(respond(200, {"code": "20", "desc": "orderCode already exists"}))
    with pytest.raises(PaymentGatewayError):
        provider.create_payment_request(
            PaymentRequest(205000, "VND", "o-1", "Order", "http://r", "http://c")
        )


def test_verify_valid_webhook(provider):
    result = provider.verify_callback(webhook(PAID))
    assert result.valid and result.succeeded
    assert result.correlation_id == "123456789"
    assert result.amount == 205000
    assert result.external_transaction_id == "FT23311"
    assert result.order_ref is None


def test_verify_tampered_webhook(provider):
    good = HmacSigner("checksum").sign(canonical(PAID))
    assert provider.verify_callback(webhook(dict(PAID, amount=1), signature=good)).valid is False
    assert provider.verify_callback(WebhookPayload(b'{"data": "x"}')).valid is False


def test_verify_unsuccessful_code(provider):
    result = provider.verify_callback(webhook(dict(PAID, code="01", desc="cancelled")))
    assert result.valid and not result.succeeded
    assert result.failure_reason == "cancelled"


@pytest.mark.parametrize(
    "status,succeeded,pending",
    [("PAID", True, False), ("PENDING", False, True), ("CANCELLED", False, False)],
)
def test_query_status(provider, sent, status, succeeded, pending):
    seen, replies = sent
    replies.append(
        respond(200, {"code": "00", "data": {"status": status, "amountPaid": 205000, "transactions": []}})
    )
    result = provider.query_status("123456789")
    assert (result.succeeded, result.pending) == (succeeded, pending)
    assert seen[0][0] == "GET"
    assert seen[0][1].endswith("/v2/payment-requests/123456789")


def test_acknowledge(provider):
    assert provider.acknowledge(AckDecision.ACCEPTED) == (200, {"success": True})
    assert provider.acknowledge(AckDecision.UNMATCHED) == (200, {"success": True})
    assert provider.acknowledge(AckDecision.REJECTED)[0] == 400
    assert provider.acknowledge(AckDecision.RETRY)[0] == 500


def test_cancel_payment_link(provider, sent):
    seen, replies = sent
    replies.append(respond(200, {"code": "00", "data": {"status": "CANCELLED"}}))
    provider.cancel_payment("123456789", "Buyer started a new payment")

    method, url, kwargs = seen[0]
    assert method == "POST"
    assert url.endswith("/v2/payment-requests/123456789/cancel")
    assert kwargs["json"] == {"cancellationReason": "Buyer started a new payment"}
    assert kwargs["headers"]["x-api-key"] == "akey"


def test_cancel_refused(provider, sent):
    _, replies = sent
    replies.append(respond(200, {"code": "101", "desc": "payment link already paid"}))
    with pytest.raises(PaymentGatewayError):
        provider.cancel_payment("123456789", "x")
