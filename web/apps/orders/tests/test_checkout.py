"""Tests for the checkout orchestrator (single product, cart and retry)."""

import pytest

from apps.orders.domain import CartLine, OrderStatus, Product, ProductStatus
from apps.orders.errors import (
    AuthorizationError,
    EmptyCartError,
    NoValidItemsError,
    NotFoundError,
    ProductUnavailableError,
    ValidationError,
)


def test_single_checkout_totals_and_descriptor(checkout, address):
    result = checkout.checkout_single("buyer-1", "p-lamp", 2, address)

    assert result.order.total_amount == 200000
    assert result.order.product_unit_price == 100000
    assert result.order.seller_id == "seller-1"
    assert result.order.order_status == OrderStatus.PENDING
    assert result.intent.order_ref == result.order.id
    assert result.intent.amount == 205000
    assert result.intent.currency == "VND"
    assert result.intent.buyer_name == "Nguyen Van A"


def test_single_checkout_unknown_product(checkout, address):
    with pytest.raises(NotFoundError):
        checkout.checkout_single("buyer-1", "missing", 1, address)


def test_single_checkout_short_of_stock(checkout, address):
    with pytest.raises(ProductUnavailableError) as exc:
        checkout.checkout_single("buyer-1", "p-chair", 2, address)
    assert exc.value.reason == "only 1 left in stock"


def test_single_checkout_sold_product(checkout, catalog, address):
    catalog.add(Product(id="p-sold", name="Vase", price=1000, seller_id="s", status=ProductStatus.SOLD, quantity=3))
    with pytest.raises(ProductUnavailableError):
        checkout.checkout_single("buyer-1", "p-sold", 1, address)


@pytest.mark.parametrize("quantity", [0, -1, "two", True])
def test_single_checkout_rejects_bad_quantity(checkout, address, quantity):
    with pytest.raises(ValidationError):
        checkout.checkout_single("buyer-1", "p-lamp", quantity, address)


def test_cart_checkout_skips_unavailable_lines(checkout, cart, address):
    cart.set(
        "buyer-1",
        [CartLine("p-lamp", 1), CartLine("p-chair", 1), CartLine("p-ghost", 1)],
    )
    result = checkout.checkout_from_cart("buyer-1", address)

    assert len(result.orders) == 2
    assert {o.transaction_id for o in result.orders} == {result.transaction_id}
    assert result.transaction_id.startswith("txn_")
    assert [s.as_dict() for s in result.skipped] == [{"productId": "p-ghost", "reason": "not found"}]
    assert result.intent.order_ref == result.transaction_id
    assert result.intent.amount == 100000 + 250000 + 5000


def test_cart_checkout_empty_cart(checkout, address):
    with pytest.raises(EmptyCartError):
        checkout.checkout_from_cart("buyer-1", address)


def test_cart_checkout_nothing_purchasable(checkout, cart, address):
    cart.set("buyer-1", [CartLine("p-chair", 5)])
    with pytest.raises(NoValidItemsError) as exc:
        checkout.checkout_from_cart("buyer-1", address)
    assert exc.value.skipped == [{"productId": "p-chair", "reason": "only 1 left in stock"}]


def test_cart_checkout_validates_address_first(checkout, cart, store):
    cart.set("buyer-1", [CartLine("p-lamp", 1)])
    with pytest.raises(ValidationError):
        checkout.checkout_from_cart("buyer-1", {"fullName": "A"})
    assert store.list_by_buyer("buyer-1") == []


def test_payment_intent_for_pending_transaction(checkout, cart, address):
    cart.set("buyer-1", [CartLine("p-lamp", 2), CartLine("p-chair", 1)])
    created = checkout.checkout_from_cart("buyer-1", address)

    pending = checkout.payment_intent_for(created.transaction_id, buyer_id="buyer-1")
    assert {o.id for o in pending.orders} == {o.id for o in created.orders}
    assert pending.intent.amount == created.intent.amount


def test_payment_intent_for_refuses_other_buyer(checkout, address):
    order = checkout.checkout_single("buyer-1", "p-lamp", 1, address).order
    with pytest.raises(AuthorizationError):
        checkout.payment_intent_for(order.id, buyer_id="buyer-2")


def test_payment_intent_for_paid_order(checkout, engine, address):
    from apps.orders.domain import PaymentDetails

    order = checkout.checkout_single("buyer-1", "p-lamp", 1, address).order
    engine.confirm_payment(order.id, PaymentDetails(provider="momo"))
    with pytest.raises(ValidationError):
        checkout.payment_intent_for(order.id)
