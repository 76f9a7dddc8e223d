"""In-process stub adapters for the orders domain ports.

These stubs implement ``OrderStorePort``, ``ProductGatePort`` and
``CartPort`` without a database or network calls. They are intended for
unit tests and local development where deterministic behavior is useful
and external services are not required.
"""

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .domain import (
    CartLine,
    CartPort,
    IssueKind,
    LedgerEntry,
    Order,
    OrderMutator,
    OrderStatus,
    OrderStorePort,
    PaymentStatus,
    Product,
    ProductGatePort,
    ProductStatus,
)
from .errors import ConcurrentUpdateError, NotFoundError


class InMemoryOrderStore(OrderStorePort):
    """Stub implementation of ``OrderStorePort``.

    Orders are deep-copied on the way in and out so callers never hold a
    live reference to stored state. ``update`` runs the mutator under a
    lock and checks the version before writing, mirroring the ORM store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._orders: Dict[str, Order] = {}
        self.ledger: Dict[str, LedgerEntry] = {}
        self.issues: List[dict] = []

    def create(self, order: Order) -> Order:
        with self._lock:
            stored = copy.deepcopy(order)
            stored.version = 0
            self._orders[stored.id] = stored
            return copy.deepcopy(stored)

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(str(order_id))
            return copy.deepcopy(order) if order else None

    def _select(self, predicate) -> List[Order]:
        with self._lock:
            found = [copy.deepcopy(o) for o in self._orders.values() if predicate(o)]
        return sorted(found, key=lambda o: o.created_at)

    def find_by_transaction(self, transaction_id: str) -> List[Order]:
        return self._select(lambda o: o.transaction_id == transaction_id)

    def find_by_correlation(self, payment_method: str, correlation_id: str) -> List[Order]:
        return self._select(
            lambda o: o.payment_method == payment_method and o.payment_correlation_id == correlation_id
        )

    def list_by_buyer(self, buyer_id: str) -> List[Order]:
        return list(reversed(self._select(lambda o: o.buyer_id == buyer_id)))

    def list_by_seller(self, seller_id: str) -> List[Order]:
        return list(reversed(self._select(lambda o: o.seller_id == seller_id)))

    def list_pending_payments(self, older_than: datetime) -> List[Order]:
        return self._select(
            lambda o: o.order_status == OrderStatus.PENDING
            and o.payment_status == PaymentStatus.PENDING
            and o.payment_method is not None
            and o.created_at < older_than
        )

    def update(self, order_id: str, mutator: OrderMutator) -> Order:
        with self._lock:
            current = self._orders.get(str(order_id))
            if current is None:
                raise NotFoundError("order", order_id)
            working = copy.deepcopy(current)
            if mutator(working) is False:
                return working
            if self._orders[current.id].version != current.version:
                raise ConcurrentUpdateError(order_id)
            working.version = current.version + 1
            self._orders[current.id] = working
            return copy.deepcopy(working)

    def record_ledger_entry(self, entry: LedgerEntry) -> bool:
        with self._lock:
            if entry.order_id in self.ledger:
                return False
            self.ledger[entry.order_id] = entry
            return True

    def record_issue(self, kind, detail, order_id=None, provider=None, payload=None) -> None:
        with self._lock:
            self.issues.append(
                {
                    "kind": IssueKind(kind),
                    "detail": detail,
                    "order_id": order_id,
                    "provider": provider,
                    "payload": payload or {},
                }
            )


class ProductCatalogStub(ProductGatePort):
    """Stub implementation of ``ProductGatePort``.

    Decrements are remembered by idempotency key so that a replayed
    settlement decrements stock only once.
    """

    def __init__(self, products: Iterable[Product] = ()):
        self._lock = threading.Lock()
        self._products: Dict[str, Product] = {p.id: p for p in products}
        self._applied: Dict[Tuple[str, str], Product] = {}
        self.fail_decrement = False

    def add(self, product: Product) -> None:
        with self._lock:
            self._products[product.id] = product

    def get(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._products.get(product_id)

    def decrement_quantity_and_maybe_mark_sold(
        self, product_id: str, amount: int, idempotency_key: str
    ) -> Optional[Product]:
        with self._lock:
            if self.fail_decrement:
                raise RuntimeError("product store unavailable")
            applied = self._applied.get((product_id, idempotency_key))
            if applied is not None:
                return applied
            product = self._products.get(product_id)
            if product is None:
                return None
            remaining = max(product.quantity - amount, 0)
            status = ProductStatus.SOLD if remaining == 0 else product.status
            updated = replace(product, quantity=remaining, status=status)
            self._products[product_id] = updated
            self._applied[(product_id, idempotency_key)] = updated
            return updated


class CartStub(CartPort):
    """Stub implementation of ``CartPort`` keyed by buyer id."""

    def __init__(self, carts: Optional[Dict[str, List[CartLine]]] = None):
        self._carts: Dict[str, List[CartLine]] = dict(carts or {})

    def set(self, buyer_id: str, lines: List[CartLine]) -> None:
        self._carts[buyer_id] = list(lines)

    def get(self, buyer_id: str) -> List[CartLine]:
        return list(self._carts.get(buyer_id, []))
