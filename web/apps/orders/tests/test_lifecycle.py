"""Unit tests for the order lifecycle engine.

They run against ``InMemoryOrderStore`` so every rule of the state machine
can be checked without a database.
"""

import itertools

import pytest

from apps.orders.domain import (
    TRANSITIONS,
    ActorRole,
    NewOrder,
    OrderStatus,
    PaymentDetails,
    PaymentStatus,
    ShippingStatus,
)
from apps.orders.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    RevertTargetMismatchError,
    ValidationError,
)


def new_order(address, **overrides):
    data = dict(
        product_id="p-lamp",
        product_name="Desk lamp",
        product_unit_price=100000,
        seller_id="seller-1",
        buyer_id="buyer-1",
        quantity=2,
        total_amount=200000,
        shipping_address=address,
    )
    data.update(overrides)
    return NewOrder(**data)


def paid_order(engine, address):
    order = engine.create_order(new_order(address))
    engine.confirm_payment(order.id, PaymentDetails(provider="momo", paid_amount=205000))
    return engine.get_order(order.id)


def force_status(store, order_id, status):
    def apply(order):
        order.order_status = status
        return True

    return store.update(order_id, apply)


def test_create_order_starts_pending_with_one_history_entry(engine, address):
    order = engine.create_order(new_order(address))
    assert order.order_status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert order.shipping_status == ShippingStatus.NOT_SHIPPED
    assert len(order.status_history) == 1
    assert order.status_history[0].changed_by == "buyer-1"


def test_create_order_reports_every_invalid_field(engine):
    with pytest.raises(ValidationError) as exc:
        engine.create_order(
            new_order({"fullName": "A"}, seller_id="", quantity=0, total_amount=None)
        )
    fields = exc.value.fields
    assert fields["sellerId"] == "required"
    assert "quantity" in fields
    assert fields["totalAmount"] == "required"
    assert fields["shippingAddress.address"] == "required"
    assert fields["shippingAddress.phone"] == "required"


def test_full_happy_path_stamps_milestones(engine, address):
    order = paid_order(engine, address)
    assert order.paid_at is not None

    order = engine.transition(order.id, OrderStatus.PROCESSING, "seller-1", ActorRole.SELLER)
    assert order.seller_confirmed_at is not None
    order = engine.transition(order.id, OrderStatus.DELIVERED, "seller-1", ActorRole.SELLER)
    assert order.delivered_at is not None
    assert order.shipping_status == ShippingStatus.DELIVERED
    order = engine.transition(order.id, OrderStatus.COMPLETED, "buyer-1", ActorRole.BUYER)
    assert order.completed_at is not None
    assert [c.status for c in order.status_history] == [
        OrderStatus.PENDING,
        OrderStatus.PAID,
        OrderStatus.PROCESSING,
        OrderStatus.DELIVERED,
        OrderStatus.COMPLETED,
    ]


def test_each_transition_appends_exactly_one_entry(engine, address):
    order = paid_order(engine, address)
    before = len(order.status_history)
    order = engine.transition(order.id, OrderStatus.PROCESSING, "admin-1", ActorRole.ADMIN, "ok")
    assert len(order.status_history) == before + 1
    assert order.status_history[-1].notes == "ok"


@pytest.mark.parametrize(
    "from_status,to_status,role",
    [
        (f, t, r)
        for f, t in itertools.product(OrderStatus, OrderStatus)
        for r in (ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN)
        if r not in TRANSITIONS.get((f, t), frozenset())
    ],
)
def test_pairs_outside_the_table_are_refused(store, engine, address, from_status, to_status, role):
    order = engine.create_order(new_order(address))
    force_status(store, order.id, from_status)
    actor = {"buyer": "buyer-1", "seller": "seller-1", "admin": "admin-1"}[role.value]
    with pytest.raises(InvalidTransitionError):
        engine.transition(order.id, to_status, actor, role)


def test_invalid_transition_message(engine, address):
    order = paid_order(engine, address)
    with pytest.raises(InvalidTransitionError) as exc:
        engine.transition(order.id, OrderStatus.DELIVERED, "seller-1", ActorRole.SELLER)
    assert str(exc.value) == "Cannot transition from 'paid' to 'delivered' as seller"


@pytest.mark.parametrize("role,actor", [(ActorRole.BUYER, "someone-else"), (ActorRole.SELLER, "other-seller")])
def test_non_owner_is_refused_before_the_table(engine, address, role, actor):
    order = engine.create_order(new_order(address))
    # pending -> completed is not even in the table; ownership is checked first
    with pytest.raises(AuthorizationError):
        engine.transition(order.id, OrderStatus.COMPLETED, actor, role)


def test_transition_unknown_order(engine):
    with pytest.raises(NotFoundError):
        engine.transition("00000000-0000-0000-0000-000000000000", OrderStatus.PAID, "system", ActorRole.SYSTEM)


def test_cancel_requires_reason_and_records_it(engine, address):
    order = paid_order(engine, address)
    with pytest.raises(ValidationError):
        engine.cancel(order.id, "buyer-1", ActorRole.BUYER, "  ")

    order = engine.cancel(order.id, "buyer-1", ActorRole.BUYER, "changed my mind")
    assert order.order_status == OrderStatus.CANCELLED
    assert order.cancelled_by == "buyer"
    assert order.cancellation_reason == "changed my mind"
    assert order.cancelled_at is not None


def test_revert_restores_last_status_from_history(engine, address):
    order = paid_order(engine, address)
    engine.transition(order.id, OrderStatus.PROCESSING, "seller-1", ActorRole.SELLER)
    engine.cancel(order.id, "seller-1", ActorRole.SELLER, "out of stock")

    restored = engine.revert_from_cancelled(order.id, "admin-1", ActorRole.ADMIN)
    assert restored.order_status == OrderStatus.PROCESSING
    assert restored.cancelled_by is None
    assert restored.cancellation_reason is None
    assert restored.status_history[-1].status == OrderStatus.PROCESSING


def test_revert_with_conflicting_target_is_refused(engine, address):
    order = paid_order(engine, address)
    engine.cancel(order.id, "buyer-1", ActorRole.BUYER, "nope")
    with pytest.raises(RevertTargetMismatchError) as exc:
        engine.revert_from_cancelled(order.id, "admin-1", ActorRole.ADMIN, OrderStatus.DELIVERED)
    assert exc.value.restorable == "paid"
    assert engine.get_order(order.id).order_status == OrderStatus.CANCELLED


def test_revert_is_admin_only(engine, address):
    order = paid_order(engine, address)
    engine.cancel(order.id, "buyer-1", ActorRole.BUYER, "nope")
    with pytest.raises(AuthorizationError):
        engine.revert_from_cancelled(order.id, "seller-1", ActorRole.SELLER)


def test_confirm_payment_is_guarded(engine, address):
    order = engine.create_order(new_order(address))
    first = engine.confirm_payment(order.id, PaymentDetails(provider="payos", paid_amount=205000))
    second = engine.confirm_payment(order.id, PaymentDetails(provider="payos", paid_amount=205000))

    assert first is not None and first.order_status == OrderStatus.PAID
    assert first.status_history[-1].changed_by == "system"
    assert second is None
    assert len(engine.get_order(order.id).status_history) == 2


def test_fail_payment_cancels_as_system(engine, address):
    order = engine.create_order(new_order(address))
    failed = engine.fail_payment(order.id, "zalopay", "card declined")
    assert failed.order_status == OrderStatus.CANCELLED
    assert failed.payment_status == PaymentStatus.FAILED
    assert failed.cancelled_by == "system"
    assert failed.payment_details.failure_reason == "card declined"


def test_late_failure_never_overrides_payment(engine, address):
    order = paid_order(engine, address)
    assert engine.fail_payment(order.id, "momo", "timeout") is None
    assert engine.get_order(order.id).payment_status == PaymentStatus.PAID


def test_attach_payment_records_correlation(engine, address):
    order = engine.create_order(new_order(address))
    order = engine.attach_payment(order.id, "stripe", "pi_123")
    assert order.payment_method == "stripe"
    assert order.payment_correlation_id == "pi_123"


def test_shipping_address_admin_only_and_locked_after_delivery(store, engine, address):
    order = paid_order(engine, address)
    with pytest.raises(AuthorizationError):
        engine.update_shipping_address(order.id, "buyer-1", ActorRole.BUYER, address)

    moved = dict(address, address="99 Nguyen Hue")
    updated = engine.update_shipping_address(order.id, "admin-1", ActorRole.ADMIN, moved)
    assert updated.shipping_address.address == "99 Nguyen Hue"

    force_status(store, order.id, OrderStatus.DELIVERED)
    with pytest.raises(ValidationError):
        engine.update_shipping_address(order.id, "admin-1", ActorRole.ADMIN, address)


def test_refund_cancels_an_order_not_yet_shipped(engine, address):
    order = paid_order(engine, address)
    refunded = engine.record_refund(order.id, "momo", "re_1", 205000, "admin-1", ActorRole.ADMIN, "damaged")

    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert refunded.is_paid
    assert refunded.order_status == OrderStatus.CANCELLED
    assert refunded.cancelled_by == "admin"
    assert refunded.payment_details.paid_amount == 205000
    assert refunded.payment_details.refunded_amount == 205000
    assert refunded.status_history[-1].notes == "Refunded: damaged"
    assert engine.record_refund(order.id, "momo", "re_1", 205000, "admin-1", ActorRole.ADMIN) is None

    with pytest.raises(InvalidTransitionError):
        engine.revert_from_cancelled(order.id, "admin-1", ActorRole.ADMIN)


def test_refund_after_delivery_keeps_status(store, engine, address):
    order = paid_order(engine, address)
    force_status(store, order.id, OrderStatus.DELIVERED)
    refunded = engine.record_refund(order.id, "momo", "re_2", 100000, "system", ActorRole.SYSTEM)
    assert refunded.order_status == OrderStatus.DELIVERED
    assert refunded.payment_status == PaymentStatus.REFUNDED


def test_refund_rules(engine, address):
    pending = engine.create_order(new_order(address))
    assert engine.record_refund(pending.id, "momo", "re_3", 1, "admin-1", ActorRole.ADMIN) is None

    order = paid_order(engine, address)
    with pytest.raises(AuthorizationError):
        engine.record_refund(order.id, "momo", "re_4", 1, "buyer-1", ActorRole.BUYER)
