"""Checkout orchestration.

Builds orders from a single product purchase or from the buyer's cart and
produces the ``PaymentIntentDescriptor`` later handed to a payment adapter.
Nothing in here talks to a payment gateway: link creation is a separate
step so a gateway failure never loses an order.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from .domain import (
    CartPort,
    NewOrder,
    Order,
    OrderStatus,
    Product,
    ProductGatePort,
    ProductStatus,
    ShippingAddress,
)
from .errors import (
    AuthorizationError,
    EmptyCartError,
    NoValidItemsError,
    NotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from .lifecycle import OrderLifecycleEngine

logger = logging.getLogger("orders.checkout")


@dataclass(frozen=True)
class PaymentIntentDescriptor:
    """Everything a payment adapter needs to create a payment request.

    ``amount`` already includes the shipping fee.
    """

    order_ref: str
    amount: int
    currency: str
    description: str
    buyer_name: str
    buyer_id: str


@dataclass(frozen=True)
class SkippedLine:
    product_id: str
    reason: str

    def as_dict(self) -> dict:
        return {"productId": self.product_id, "reason": self.reason}


@dataclass
class SingleCheckout:
    order: Order
    intent: PaymentIntentDescriptor


@dataclass
class CartCheckout:
    transaction_id: str
    orders: List[Order]
    intent: PaymentIntentDescriptor
    skipped: List[SkippedLine] = field(default_factory=list)


@dataclass
class PendingPayment:
    orders: List[Order]
    intent: PaymentIntentDescriptor


def _quantity(value) -> int:
    if isinstance(value, bool):
        raise ValidationError({"quantity": "must be an integer greater than 0"})
    try:
        qty = int(value)
    except (TypeError, ValueError):
        raise ValidationError({"quantity": "must be an integer greater than 0"})
    if qty <= 0 or qty != value and str(qty) != str(value):
        raise ValidationError({"quantity": "must be an integer greater than 0"})
    return qty


def unavailability(product: Optional[Product], quantity: int) -> Optional[str]:
    """Return why ``quantity`` units of ``product`` cannot be bought, or None."""
    if product is None:
        return "not found"
    if product.status != ProductStatus.AVAILABLE:
        return f"status is {product.status.value}"
    if quantity > product.quantity:
        return f"only {product.quantity} left in stock"
    return None


class CheckoutOrchestrator:
    """Turns purchases into pending orders plus a payment descriptor.

    Args:
        engine: Lifecycle engine used to create orders.
        products: Product availability gate.
        cart: Read-only cart collaborator.
        shipping_fee: Flat fee added once per payment, never to an order.
        currency: ISO currency of every amount.
    """

    def __init__(
        self,
        engine: OrderLifecycleEngine,
        products: ProductGatePort,
        cart: CartPort,
        shipping_fee: int = 5000,
        currency: str = "VND",
    ):
        self.engine = engine
        self.products = products
        self.cart = cart
        self.shipping_fee = shipping_fee
        self.currency = currency

    # ---- single product ----
    def checkout_single(self, buyer_id: str, product_id: str, quantity, shipping_address) -> SingleCheckout:
        """Create one pending order for ``quantity`` units of a product.

        Raises:
            ValidationError: Bad quantity or shipping address.
            NotFoundError: The product does not exist.
            ProductUnavailableError: The product is sold or short of stock.
        """
        if not product_id:
            raise ValidationError({"productId": "required"})
        qty = _quantity(quantity)
        product = self.products.get(str(product_id))
        if product is None:
            raise NotFoundError("product", product_id)
        reason = unavailability(product, qty)
        if reason:
            raise ProductUnavailableError(product.id, reason)

        order = self.engine.create_order(self._new_order(buyer_id, product, qty, shipping_address))
        intent = self._descriptor(order.id, [order])
        logger.info(
            "checkout created order",
            extra={"order_id": order.id, "product_id": product.id, "quantity": qty, "amount": intent.amount},
        )
        return SingleCheckout(order=order, intent=intent)

    # ---- cart ----
    def checkout_from_cart(self, buyer_id: str, shipping_address) -> CartCheckout:
        """Create one pending order per purchasable cart line.

        All created orders share one transaction id. Lines whose product is
        missing, unavailable or short of stock are skipped and reported.

        Raises:
            EmptyCartError: The cart has no lines.
            NoValidItemsError: Every line was skipped.
        """
        # Fail on a bad address before touching any line.
        ShippingAddress.from_mapping(shipping_address)
        lines = self.cart.get(buyer_id)
        if not lines:
            raise EmptyCartError(buyer_id)

        transaction_id = f"txn_{uuid.uuid4().hex}"
        orders: List[Order] = []
        skipped: List[SkippedLine] = []
        for line in lines:
            if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
                skipped.append(SkippedLine(line.product_id, "invalid quantity"))
                continue
            product = self.products.get(line.product_id)
            reason = unavailability(product, line.quantity)
            if reason:
                skipped.append(SkippedLine(line.product_id, reason))
                continue
            new_order = self._new_order(buyer_id, product, line.quantity, shipping_address)
            new_order.transaction_id = transaction_id
            orders.append(self.engine.create_order(new_order))

        if not orders:
            raise NoValidItemsError([s.as_dict() for s in skipped])

        intent = self._descriptor(transaction_id, orders)
        logger.info(
            "cart checkout created orders",
            extra={
                "transaction_id": transaction_id,
                "orders": len(orders),
                "skipped": len(skipped),
                "amount": intent.amount,
            },
        )
        return CartCheckout(transaction_id=transaction_id, orders=orders, skipped=skipped, intent=intent)

    # ---- retry of payment link creation ----
    def payment_intent_for(self, ref: str, buyer_id: Optional[str] = None) -> PendingPayment:
        """Rebuild the payment descriptor for an existing order or transaction.

        Only orders still waiting for payment are included.

        Raises:
            NotFoundError: ``ref`` matches neither an order nor a transaction.
            AuthorizationError: ``buyer_id`` given and not the buyer.
            ValidationError: Nothing left to pay under ``ref``.
        """
        order = self.engine.store.get(ref)
        orders = [order] if order else self.engine.store.find_by_transaction(ref)
        if not orders:
            raise NotFoundError("order", ref)
        if buyer_id is not None:
            for o in orders:
                if o.buyer_id != buyer_id:
                    raise AuthorizationError(buyer_id, "buyer", o.id)

        payable = [o for o in orders if o.order_status == OrderStatus.PENDING and not o.is_paid]
        if not payable:
            raise ValidationError({"orderRef": "no pending orders to pay"}, "Nothing left to pay for this reference")
        return PendingPayment(orders=payable, intent=self._descriptor(ref, payable))

    def expected_amount(self, orders: List[Order]) -> int:
        return sum(o.total_amount for o in orders) + self.shipping_fee

    # ---- helpers ----
    @staticmethod
    def _new_order(buyer_id: str, product: Product, quantity: int, shipping_address) -> NewOrder:
        return NewOrder(
            product_id=product.id,
            product_name=product.name,
            product_unit_price=product.price,
            seller_id=product.seller_id,
            buyer_id=buyer_id,
            quantity=quantity,
            total_amount=product.price * quantity,
            shipping_address=shipping_address,
        )

    def _descriptor(self, ref: str, orders: List[Order]) -> PaymentIntentDescriptor:
        first = orders[0]
        return PaymentIntentDescriptor(
            order_ref=ref,
            amount=self.expected_amount(orders),
            currency=self.currency,
            description=f"Order {ref.removeprefix('txn_')[:8]}",
            buyer_name=first.shipping_address.full_name,
            buyer_id=first.buyer_id,
        )
