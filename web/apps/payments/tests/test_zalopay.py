import json

import httpx
import pytest

from apps.payments.base import AckDecision, PaymentRequest, WebhookPayload
from apps.payments.signatures import HmacSigner, pipe_joined
from apps.payments.zalopay import ZaloPayProvider

CONFIG = {"app_id": "2553", "key1": "PcY4iZIKFCIdgZvA6ueMcMHHUbRLYjPL", "key2": "kLtgPl8HHhfvMuDHPwKfgfsY4Ydm9eIz"}


def respond(body):
    return httpx.Response(200, json=body, request=httpx.Request("POST", "http://zalopay"))


@pytest.fixture
def provider():
    # 2023-11-14 22:13:20 UTC is already 2023-11-15 in Vietnam
    return ZaloPayProvider(CONFIG, clock=lambda: 1700000000.0)


@pytest.fixture
def sent(monkeypatch):
    seen = []
    replies = []

    def fake_request(self, method, url, **kwargs):
        seen.append((method, url, kwargs))
        return replies.pop(0)

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)
    return seen, replies


def callback(order_ref="o-1", key=CONFIG["key2"], cb_type=1):
    data = json.dumps(
        {
            "app_id": 2553,
            "app_trans_id": "231115_000042",
            "amount": 205000,
            "zp_trans_id": 231115000000123,
            "embed_data": json.dumps({"redirecturl": "http://shop", "orderId": order_ref}),
        }
    )
    body = {"data": data, "mac": HmacSigner(key).sign(data), "type": cb_type}
    return WebhookPayload(json.dumps(body).encode("utf-8"))


def test_create_form_is_maced_with_key1(provider, sent):
    seen, replies = sent
    replies.append(respond({"return_code": 1, "order_url": "https://qcgateway.zalopay.vn/openinapp?x"}))

    link = provider.create_payment_request(
        PaymentRequest(205000, "VND", "o-1", "Order o-1", "http://shop/ok", "http://api/webhook", buyer_id="buyer-1")
    )

    method, url, kwargs = seen[0]
    form = kwargs["data"]
    assert url.endswith("/create")
    assert form["app_trans_id"].startswith("231115_")
    assert json.loads(form["embed_data"])["orderId"] == "o-1"
    expected = HmacSigner(CONFIG["key1"]).sign(
        pipe_joined("2553", form["app_trans_id"], "buyer-1", 205000, form["app_time"], form["embed_data"], form["item"])
    )
    assert form["mac"] == expected
    assert link.correlation_id == form["app_trans_id"]


def test_verify_callback_with_key2(provider):
    result = provider.verify_callback(callback())
    assert result.valid and result.succeeded
    assert result.order_ref == "o-1"
    assert result.correlation_id == "231115_000042"
    assert result.external_transaction_id == "231115000000123"


def test_callback_signed_with_wrong_key_is_invalid(provider):
    assert provider.verify_callback(callback(key=CONFIG["key1"])).valid is False


@pytest.mark.parametrize("code,succeeded,pending", [(1, True, False), (3, False, True), (2, False, False)])
def test_query_status(provider, sent, code, succeeded, pending):
    seen, replies = sent
    replies.append(respond({"return_code": code, "amount": 205000, "zp_trans_id": 9}))
    result = provider.query_status("231115_000042")
    assert (result.succeeded, result.pending) == (succeeded, pending)
    form = seen[0][2]["data"]
    assert form["mac"] == HmacSigner(CONFIG["key1"]).sign(pipe_joined("2553", "231115_000042", CONFIG["key1"]))


def test_acknowledge_always_http_200():
    provider = ZaloPayProvider(CONFIG)
    assert provider.acknowledge(AckDecision.ACCEPTED) == (200, {"return_code": 1, "return_message": "success"})
    assert provider.acknowledge(AckDecision.ALREADY_PROCESSED)[1]["return_code"] == 2
    assert provider.acknowledge(AckDecision.UNMATCHED)[1]["return_code"] == 1
    assert provider.acknowledge(AckDecision.REJECTED) == (200, {"return_code": -1, "return_message": "mac not equal"})
    assert provider.acknowledge(AckDecision.RETRY)[1]["return_code"] == 0
