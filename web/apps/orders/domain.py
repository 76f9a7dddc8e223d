"""Domain models, state machine and ports for orders.

This module contains the dataclasses used as DTOs for orders, the order
lifecycle transition table, and protocol definitions (ports) for the
external collaborators the order subsystem depends on: the order store,
the product availability gate and the shopping cart.

Nothing in here performs I/O; persistence and network access live behind
the ports.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Mapping, Optional, Protocol

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Enums ----
class OrderStatus(str, Enum):
    """Primary order lifecycle states."""

    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment sub-state. May lag or lead ``OrderStatus`` briefly while a
    payment is being reconciled."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ShippingStatus(str, Enum):
    NOT_SHIPPED = "not_shipped"
    DELIVERED = "delivered"


class ActorRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class PaymentMethod(str, Enum):
    MOMO = "momo"
    PAYOS = "payos"
    STRIPE = "stripe"
    ZALOPAY = "zalopay"


class ProductStatus(str, Enum):
    AVAILABLE = "available"
    SOLD = "sold"


SYSTEM_ACTOR = "system"


# ---- State machine ----
# (from, to) -> roles allowed to request the change through ``transition``.
TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], frozenset[ActorRole]] = {
    (OrderStatus.PENDING, OrderStatus.PAID): frozenset({ActorRole.SYSTEM}),
    (OrderStatus.PAID, OrderStatus.PROCESSING): frozenset({ActorRole.SELLER, ActorRole.ADMIN}),
    (OrderStatus.PAID, OrderStatus.CANCELLED): frozenset(
        {ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN, ActorRole.SYSTEM}
    ),
    (OrderStatus.PROCESSING, OrderStatus.DELIVERED): frozenset({ActorRole.SELLER, ActorRole.ADMIN}),
    (OrderStatus.PROCESSING, OrderStatus.CANCELLED): frozenset({ActorRole.SELLER, ActorRole.ADMIN}),
    (OrderStatus.DELIVERED, OrderStatus.COMPLETED): frozenset({ActorRole.BUYER, ActorRole.ADMIN}),
}

# States a failed payment may cancel from. Only reachable through
# ``OrderLifecycleEngine.fail_payment`` (system actor).
PAYMENT_FAILURE_SOURCES = frozenset({OrderStatus.PENDING, OrderStatus.PAID})

# Target status -> order attribute stamped when the status is reached.
MILESTONE_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.PAID: "paid_at",
    OrderStatus.PROCESSING: "seller_confirmed_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def allowed_roles(from_status: OrderStatus, to_status: OrderStatus) -> frozenset[ActorRole]:
    """Return the roles allowed to move an order between two states.

    An empty set means the transition is not part of the lifecycle graph.
    """
    return TRANSITIONS.get((OrderStatus(from_status), OrderStatus(to_status)), frozenset())


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class ShippingAddress:
    """Delivery address captured at checkout.

    ``full_name``, ``address`` and ``phone`` are required; ``city`` and
    ``postal_code`` default to empty strings.
    """

    full_name: str
    address: str
    phone: str
    city: str = ""
    postal_code: str = ""

    @classmethod
    def from_mapping(cls, data: Optional[Mapping]) -> "ShippingAddress":
        """Build an address from a camelCase or snake_case mapping.

        Raises:
            ValidationError: Listing every missing required field.
        """
        if isinstance(data, ShippingAddress):
            return data
        if not data:
            raise ValidationError({"shippingAddress": "required"})

        def pick(*keys: str) -> str:
            for k in keys:
                v = data.get(k)
                if v is not None:
                    return str(v).strip()
            return ""

        values = {
            "full_name": pick("fullName", "full_name"),
            "address": pick("address"),
            "phone": pick("phone"),
            "city": pick("city"),
            "postal_code": pick("postalCode", "postal_code"),
        }
        missing = {
            f"shippingAddress.{wire}": "required"
            for wire, attr in (("fullName", "full_name"), ("address", "address"), ("phone", "phone"))
            if not values[attr]
        }
        if missing:
            raise ValidationError(missing)
        return cls(**values)

    def as_dict(self) -> dict:
        return {
            "fullName": self.full_name,
            "address": self.address,
            "phone": self.phone,
            "city": self.city,
            "postalCode": self.postal_code,
        }


@dataclass(frozen=True)
class StatusChange:
    """One entry of an order's append-only status history."""

    status: OrderStatus
    changed_by: str
    changed_at: datetime
    notes: Optional[str] = None


@dataclass(frozen=True)
class PaymentDetails:
    """Normalized payment receipt stored on an order."""

    provider: str
    external_transaction_id: Optional[str] = None
    paid_amount: Optional[int] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failed_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    refunded_amount: Optional[int] = None
    refunded_at: Optional[datetime] = None


@dataclass
class NewOrder:
    """Input for ``OrderLifecycleEngine.create_order``.

    Every field is optional at the type level so validation can report all
    missing fields at once instead of failing on the first ``TypeError``.
    """

    product_id: Optional[str] = None
    seller_id: Optional[str] = None
    buyer_id: Optional[str] = None
    quantity: Optional[int] = None
    total_amount: Optional[int] = None
    shipping_address: Optional[Mapping] = None
    product_name: str = ""
    product_unit_price: int = 0
    transaction_id: Optional[str] = None


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Persistent identifier (UUID string).
        total_amount: Quantity times unit price, in integer currency units.
            Immutable after creation; shipping is never folded into it.
        status_history: Append-only list of ``StatusChange``; never empty.
        version: Optimistic concurrency token bumped by the store on every
            write.
    """

    id: str
    product_id: str
    product_name: str
    product_unit_price: int
    seller_id: str
    buyer_id: str
    quantity: int
    total_amount: int
    shipping_address: ShippingAddress
    order_status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    shipping_status: ShippingStatus = ShippingStatus.NOT_SHIPPED
    transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    payment_correlation_id: Optional[str] = None
    payment_details: Optional[PaymentDetails] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    status_history: List[StatusChange] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    seller_confirmed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_paid(self) -> bool:
        """True once the money was captured, including orders refunded later."""
        return self.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED)


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: int
    seller_id: str
    status: ProductStatus = ProductStatus.AVAILABLE
    quantity: int = 0

    @property
    def is_available(self) -> bool:
        return self.status == ProductStatus.AVAILABLE and self.quantity > 0


@dataclass(frozen=True)
class CartLine:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class LedgerEntry:
    """Informational payment record written once per settled order."""

    order_id: str
    amount: int
    currency: str
    payment_method: str
    payer_id: str
    payee_id: str
    external_transaction_id: Optional[str] = None


class IssueKind(str, Enum):
    STOCK_UPDATE_FAILED = "stock_update_failed"
    LEDGER_FAILED = "ledger_failed"
    AMOUNT_MISMATCH = "amount_mismatch"
    SETTLEMENT_FAILED = "settlement_failed"
    PAID_AFTER_CANCEL = "paid_after_cancel"
    UNMATCHED_PAYMENT = "unmatched_payment"
    REFUND_UNALLOCATED = "refund_unallocated"


# ---- Ports (DIP) ----
OrderMutator = Callable[[Order], Optional[bool]]


class OrderStorePort(Protocol):
    """Port describing order persistence.

    ``update`` is the only write path for existing orders: it loads the
    order under a lock, hands it to ``mutator`` and persists the result
    in the same transaction. A mutator returning ``False`` signals that
    nothing changed and no write is needed.
    """

    def create(self, order: Order) -> Order:
        raise NotImplementedError()

    def get(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError()

    def find_by_transaction(self, transaction_id: str) -> List[Order]:
        raise NotImplementedError()

    def find_by_correlation(self, payment_method: str, correlation_id: str) -> List[Order]:
        raise NotImplementedError()

    def list_by_buyer(self, buyer_id: str) -> List[Order]:
        raise NotImplementedError()

    def list_by_seller(self, seller_id: str) -> List[Order]:
        raise NotImplementedError()

    def list_pending_payments(self, older_than: datetime) -> List[Order]:
        raise NotImplementedError()

    def update(self, order_id: str, mutator: OrderMutator) -> Order:
        """Atomically read, mutate and write one order.

        Raises:
            NotFoundError: If the order does not exist.
            ConcurrentUpdateError: If the row changed between read and write.
        """
        raise NotImplementedError()

    def record_ledger_entry(self, entry: LedgerEntry) -> bool:
        """Persist a ledger entry; return False if one already exists for
        the order."""
        raise NotImplementedError()

    def record_issue(
        self,
        kind: IssueKind,
        detail: str,
        order_id: Optional[str] = None,
        provider: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> None:
        raise NotImplementedError()


class ProductGatePort(Protocol):
    """Port describing the product availability operations used by orders."""

    def get(self, product_id: str) -> Optional[Product]:
        raise NotImplementedError()

    def decrement_quantity_and_maybe_mark_sold(
        self, product_id: str, amount: int, idempotency_key: str
    ) -> Optional[Product]:
        """Decrement stock, flipping the product to ``sold`` at zero.

        Applying the same ``idempotency_key`` twice must decrement once.
        """
        raise NotImplementedError()


class CartPort(Protocol):
    def get(self, buyer_id: str) -> List[CartLine]:
        raise NotImplementedError()
