from datetime import timedelta
from io import StringIO

import pytest
from django.core.management import call_command

from apps.orders import providers
from apps.orders.domain import CartLine, Product
from apps.orders.models import OrderModel
from apps.payments.base import StatusResult
from apps.payments.registry import registry

pytestmark = pytest.mark.django_db

ADDRESS = {"fullName": "Le Van C", "address": "7 Pasteur", "phone": "0987654321"}


class QueryOnlyGateway:
    supports_query = True

    def __init__(self):
        self.asked = []

    def query_status(self, correlation_id, order_ref=None):
        self.asked.append(correlation_id)
        if correlation_id == "PAID-1":
            return StatusResult(succeeded=True, pending=False, amount=355000, external_transaction_id="T1")
        return StatusResult(succeeded=False, pending=True)


def age(order_ids, minutes=30):
    for oid in order_ids:
        row = OrderModel.objects.get(pk=oid)
        OrderModel.objects.filter(pk=oid).update(created_at=row.created_at - timedelta(minutes=minutes))


def test_sweep_settles_paid_transactions_once(settings):
    settings.RECONCILE_MIN_AGE_MINUTES = 10
    gateway = QueryOnlyGateway()
    registry.override("momo", gateway)
    catalog = providers.local_catalog()
    catalog.add(Product(id="p-lamp", name="Desk lamp", price=100000, seller_id="seller-1", quantity=5))
    catalog.add(Product(id="p-chair", name="Chair", price=250000, seller_id="seller-2", quantity=1))
    engine = providers.get_engine()
    checkout = providers.get_checkout()

    providers.local_cart().set("buyer-1", [CartLine("p-lamp", 1), CartLine("p-chair", 1)])
    cart = checkout.checkout_from_cart("buyer-1", ADDRESS)
    for o in cart.orders:
        engine.attach_payment(o.id, "momo", "PAID-1")
    waiting = checkout.checkout_single("buyer-2", "p-lamp", 1, ADDRESS).order
    engine.attach_payment(waiting.id, "momo", "WAIT-1")
    fresh = checkout.checkout_single("buyer-3", "p-lamp", 1, ADDRESS).order
    engine.attach_payment(fresh.id, "momo", "FRESH-1")
    age([o.id for o in cart.orders] + [waiting.id])

    out = StringIO()
    call_command("reconcile_pending", stdout=out)

    assert out.getvalue().strip() == "checked=2 paid=1 failed=0 pending=1 errors=0"
    assert sorted(gateway.asked) == ["PAID-1", "WAIT-1"]
    assert all(engine.get_order(o.id).is_paid for o in cart.orders)
    assert not engine.get_order(fresh.id).is_paid
