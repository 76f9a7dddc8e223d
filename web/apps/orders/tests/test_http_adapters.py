"""Unit tests for the HTTP product and cart clients.

``httpx.Client.request`` is monkeypatched so the clients run their real
retry and breaker code against canned responses.
"""

import httpx
import pytest

from apps.orders.domain import CartLine, ProductStatus
from apps.orders.http_adapters import HttpCartClient, HttpProductClient


def respond(status_code, body=None, url="http://svc"):
    return httpx.Response(status_code, json=body, request=httpx.Request("GET", url))


@pytest.fixture
def calls(monkeypatch):
    seen = []
    replies = []

    def fake_request(self, method, url, **kwargs):
        seen.append((method, url, kwargs))
        reply = replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)
    return seen, replies


def test_product_get_parses_snapshot(calls):
    seen, replies = calls
    replies.append(
        respond(200, {"id": "p-1", "name": "Lamp", "price": 100000, "seller_id": "s-1", "status": "available", "quantity": 4})
    )
    product = HttpProductClient(base_url="http://products").get("p-1")

    assert product.price == 100000
    assert product.seller_id == "s-1"
    assert product.status == ProductStatus.AVAILABLE
    assert seen[0][0] == "GET"
    assert seen[0][1] == "http://products/products/p-1"


def test_product_get_404_is_none(calls):
    _, replies = calls
    replies.append(respond(404, {"detail": "PRODUCT_NOT_FOUND"}))
    assert HttpProductClient(base_url="http://products").get("missing") is None


def test_decrement_sends_idempotency_key(calls):
    seen, replies = calls
    replies.append(
        respond(200, {"id": "p-1", "name": "Lamp", "price": 1, "seller_id": "s-1", "status": "sold", "quantity": 0})
    )
    product = HttpProductClient(base_url="http://products").decrement_quantity_and_maybe_mark_sold("p-1", 2, "order-9")

    assert product.status == ProductStatus.SOLD
    method, url, kwargs = seen[0]
    assert (method, url) == ("POST", "http://products/products/p-1/decrement")
    assert kwargs["json"] == {"amount": 2, "idempotency_key": "order-9"}
    assert kwargs["headers"]["Idempotency-Key"] == "order-9"


def test_decrement_network_error_propagates(calls, settings):
    settings.HTTP_RETRY_MAX = 2
    _, replies = calls
    replies.extend([httpx.ConnectError("boom"), httpx.ConnectError("boom")])
    with pytest.raises(httpx.ConnectError):
        HttpProductClient(base_url="http://products").decrement_quantity_and_maybe_mark_sold("p-1", 1, "k")


def test_cart_reads_items(calls):
    _, replies = calls
    replies.append(respond(200, {"items": [{"productId": "p-1", "quantity": 2}, {"productId": "p-2", "quantity": 1}]}))
    assert HttpCartClient(base_url="http://cart").get("buyer-1") == [CartLine("p-1", 2), CartLine("p-2", 1)]


def test_cart_missing_is_empty(calls):
    _, replies = calls
    replies.append(respond(404))
    assert HttpCartClient(base_url="http://cart").get("buyer-1") == []
