import json

import httpx
import pytest

from apps.orders.errors import PaymentGatewayError
from apps.payments.base import AckDecision, PaymentRequest, WebhookPayload
from apps.payments.momo import IPN_FIELDS, MomoProvider, decode_extra, encode_extra
from apps.payments.signatures import HmacSigner, canonical

CONFIG = {"partner_code": "MOMO", "access_key": "F8BBA842ECF85", "secret_key": "K951B6PE1waDMi640xX08PD3vg6EkVlz"}


def respond(status_code, body):
    return httpx.Response(status_code, json=body, request=httpx.Request("POST", "http://momo"))


@pytest.fixture
def provider():
    return MomoProvider(CONFIG, clock=lambda: 1700000000.0)


@pytest.fixture
def sent(monkeypatch):
    seen = []
    replies = []

    def fake_request(self, method, url, **kwargs):
        seen.append((method, url, kwargs))
        return replies.pop(0)

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)
    return seen, replies


def request_for(ref="o-1"):
    return PaymentRequest(
        amount=205000,
        currency="VND",
        order_ref=ref,
        description="Order o-1",
        return_url="http://shop/pages/order-success.html?ref=o-1",
        callback_url="http://api/api/payments/momo/webhook",
    )


def signed_ipn(order_ref="o-1", **overrides):
    ipn = {
        "partnerCode": "MOMO",
        "orderId": "MOMO1700000000000",
        "requestId": "MOMO1700000000000",
        "amount": 205000,
        "orderInfo": "Order o-1",
        "orderType": "momo_wallet",
        "transId": 4088878653,
        "resultCode": 0,
        "message": "Successful.",
        "payType": "qr",
        "responseTime": 1700000100000,
        "extraData": encode_extra(order_ref),
    }
    ipn.update(overrides)
    fields = {k: ipn.get(k) for k in IPN_FIELDS}
    fields["accessKey"] = CONFIG["access_key"]
    ipn["signature"] = HmacSigner(CONFIG["secret_key"]).sign(canonical(fields))
    return ipn


def as_payload(data):
    return WebhookPayload(json.dumps(data).encode("utf-8"), {"Content-Type": "application/json"})


def test_extra_data_round_trip():
    assert decode_extra(encode_extra("txn_abc")) == "txn_abc"
    assert decode_extra("not base64!") is None
    assert decode_extra("") is None


def test_create_signs_request_and_uses_request_id_as_correlation(provider, sent):
    seen, replies = sent
    replies.append(respond(200, {"resultCode": 0, "payUrl": "https://test-payment.momo.vn/pay/abc"}))

    link = provider.create_payment_request(request_for())

    method, url, kwargs = seen[0]
    body = kwargs["json"]
    assert url.endswith("/create")
    assert body["orderId"] == body["requestId"] == "MOMO1700000000000"
    assert decode_extra(body["extraData"]) == "o-1"
    unsigned = {k: v for k, v in body.items() if k not in ("signature", "lang")}
    assert body["signature"] == HmacSigner(CONFIG["secret_key"]).sign(canonical(unsigned))
    assert link.correlation_id == "MOMO1700000000000"
    assert link.checkout_url == "https://test-payment.momo.vn/pay/abc"


def test_create_refused_raises_gateway_error(provider, sent):
    _, replies = sent
    replies.append(respond(200, {"resultCode": 22, "message": "Invalid amount"}))
    with pytest.raises(PaymentGatewayError) as exc:
        provider.create_payment_request(request_for())
    assert "Invalid amount" in str(exc.value)


def test_create_5xx_raises_gateway_error(provider, sent, settings):
    settings.HTTP_RETRY_MAX = 1
    _, replies = sent
    replies.append(respond(503, {}))
    with pytest.raises(PaymentGatewayError):
        provider.create_payment_request(request_for())


def test_verify_valid_ipn(provider):
    result = provider.verify_callback(as_payload(signed_ipn()))
    assert result.valid
    assert result.succeeded
    assert result.amount == 205000
    assert result.order_ref == "o-1"
    assert result.correlation_id == "MOMO1700000000000"
    assert result.external_transaction_id == "4088878653"


def test_verify_tampered_ipn(provider):
    ipn = signed_ipn()
    ipn["amount"] = 1000
    assert provider.verify_callback(as_payload(ipn)).valid is False
    assert provider.verify_callback(WebhookPayload(b"<xml/>")).valid is False


def test_verify_failed_payment(provider):
    result = provider.verify_callback(as_payload(signed_ipn(resultCode=1006, message="Transaction denied by user.")))
    assert result.valid
    assert not result.succeeded
    assert "1006" in result.failure_reason


@pytest.mark.parametrize(
    "reply,succeeded,pending",
    [
        ({"resultCode": 0, "amount": 205000, "transId": 1}, True, False),
        ({"resultCode": 1000, "message": "initiated"}, False, True),
        ({"resultCode": 1005, "message": "expired"}, False, False),
    ],
)
def test_query_status(provider, sent, reply, succeeded, pending):
    seen, replies = sent
    replies.append(respond(200, reply))
    status = provider.query_status("MOMO1700000000000", "o-1")
    assert (status.succeeded, status.pending) == (succeeded, pending)
    body = seen[0][2]["json"]
    assert body["orderId"] == body["requestId"] == "MOMO1700000000000"


@pytest.mark.parametrize(
    "decision,expected",
    [
        (AckDecision.ACCEPTED, 204),
        (AckDecision.ALREADY_PROCESSED, 204),
        (AckDecision.UNMATCHED, 204),
        (AckDecision.REJECTED, 400),
        (AckDecision.RETRY, 500),
    ],
)
def test_acknowledge(provider, decision, expected):
    assert provider.acknowledge(decision)[0] == expected
