"""Order lifecycle engine.

The engine is the only component that changes ``order_status`` or appends
to ``status_history``. Every change goes through the store's atomic
``update`` so the status flip and its history entry are written together.
"""

import logging
import uuid
from dataclasses import replace
from typing import Optional

from .domain import (
    MILESTONE_FIELDS,
    PAYMENT_FAILURE_SOURCES,
    SYSTEM_ACTOR,
    ActorRole,
    NewOrder,
    Order,
    OrderStatus,
    OrderStorePort,
    PaymentDetails,
    PaymentStatus,
    ShippingAddress,
    ShippingStatus,
    StatusChange,
    allowed_roles,
    utcnow,
)
from .errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    RevertTargetMismatchError,
    ValidationError,
)

logger = logging.getLogger("orders.lifecycle")

# Shipping details are frozen once the parcel reached the buyer.
_ADDRESS_LOCKED = frozenset({OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# A refund before hand-over also ends the order.
_REFUND_CANCELS = frozenset({OrderStatus.PAID, OrderStatus.PROCESSING})


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _role(role) -> ActorRole:
    try:
        return ActorRole(role)
    except ValueError:
        raise ValidationError({"actorRole": f"unknown role '{role}'"})


def _status(status) -> OrderStatus:
    try:
        return OrderStatus(status)
    except ValueError:
        raise ValidationError({"status": f"unknown status '{status}'"})


class OrderLifecycleEngine:
    """Owns the order state machine, its history log and its access rules.

    Args:
        store: OrderStorePort used to persist orders.
    """

    def __init__(self, store: OrderStorePort):
        self.store = store

    # ---- creation ----
    def create_order(self, data: NewOrder) -> Order:
        """Validate input and persist a new ``pending`` order.

        Raises:
            ValidationError: Listing every missing or invalid field.
        """
        errors: dict[str, str] = {}
        for name, wire in (("product_id", "productId"), ("seller_id", "sellerId"), ("buyer_id", "buyerId")):
            if not getattr(data, name):
                errors[wire] = "required"

        quantity = _as_int(data.quantity)
        if data.quantity is None:
            errors["quantity"] = "required"
        elif quantity is None or quantity <= 0:
            errors["quantity"] = "must be an integer greater than 0"

        total = _as_int(data.total_amount)
        if data.total_amount is None:
            errors["totalAmount"] = "required"
        elif total is None or total <= 0:
            errors["totalAmount"] = "must be greater than 0"

        address = None
        try:
            address = ShippingAddress.from_mapping(data.shipping_address)
        except ValidationError as e:
            errors.update(e.fields)

        if errors:
            raise ValidationError(errors)

        now = utcnow()
        order = Order(
            id=str(uuid.uuid4()),
            product_id=str(data.product_id),
            product_name=data.product_name or "",
            product_unit_price=int(data.product_unit_price or 0),
            seller_id=str(data.seller_id),
            buyer_id=str(data.buyer_id),
            quantity=quantity,
            total_amount=total,
            shipping_address=address,
            transaction_id=data.transaction_id,
            status_history=[StatusChange(OrderStatus.PENDING, str(data.buyer_id), now, "Order created")],
            created_at=now,
            updated_at=now,
        )
        created = self.store.create(order)
        logger.info(
            "order created",
            extra={"order_id": created.id, "buyer_id": created.buyer_id, "transaction_id": created.transaction_id},
        )
        return created

    def get_order(self, order_id: str) -> Order:
        order = self.store.get(order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        return order

    # ---- authorization ----
    @staticmethod
    def authorize(order: Order, actor_id: str, role) -> None:
        """Check that ``actor_id`` may act on ``order`` in ``role``.

        Buyers and sellers are bound to their own orders; admin and system
        actors are not.

        Raises:
            AuthorizationError: When the actor does not own the order.
        """
        role = _role(role)
        if role == ActorRole.BUYER and order.buyer_id != actor_id:
            raise AuthorizationError(actor_id, role.value, order.id)
        if role == ActorRole.SELLER and order.seller_id != actor_id:
            raise AuthorizationError(actor_id, role.value, order.id)

    # ---- transitions ----
    def transition(
        self,
        order_id: str,
        target,
        actor_id: str,
        role,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """Move an order to ``target`` and append one history entry.

        Authorization is checked before the transition table so that a
        non-owner is refused regardless of the order's current state.

        Raises:
            NotFoundError: If the order does not exist.
            AuthorizationError: If the actor does not own the order.
            InvalidTransitionError: If the table does not allow the change
                for this role.
        """
        target = _status(target)
        role = _role(role)

        def apply(order: Order) -> bool:
            self.authorize(order, actor_id, role)
            if role not in allowed_roles(order.order_status, target):
                raise InvalidTransitionError(order.order_status.value, target.value, role.value)
            self._apply_status(order, target, actor_id, notes)
            if target == OrderStatus.CANCELLED:
                order.cancelled_by = role.value
                order.cancellation_reason = reason or notes
            return True

        updated = self.store.update(order_id, apply)
        logger.info(
            "order transitioned",
            extra={"order_id": order_id, "to": target.value, "actor": actor_id, "role": role.value},
        )
        return updated

    def cancel(self, order_id: str, actor_id: str, role, reason: str) -> Order:
        """Cancel an order. A non-empty ``reason`` is mandatory."""
        if not reason or not str(reason).strip():
            raise ValidationError({"reason": "required"})
        reason = str(reason).strip()
        return self.transition(
            order_id, OrderStatus.CANCELLED, actor_id, role, notes=f"Cancelled: {reason}", reason=reason
        )

    def revert_from_cancelled(
        self, order_id: str, actor_id: str, role=ActorRole.ADMIN, desired_status=None
    ) -> Order:
        """Restore a cancelled order to its last non-cancelled status.

        The status comes from the history log. ``desired_status`` is only
        a cross-check: when given and different from the recorded status
        the call fails instead of guessing.

        Raises:
            AuthorizationError: If the actor is not an admin.
            InvalidTransitionError: If the order is not cancelled.
            RevertTargetMismatchError: If ``desired_status`` disagrees with
                the history.
        """
        role = _role(role)
        if role != ActorRole.ADMIN:
            raise AuthorizationError(actor_id, role.value, order_id)
        desired = _status(desired_status) if desired_status else None

        def apply(order: Order) -> bool:
            if order.order_status != OrderStatus.CANCELLED:
                target = desired.value if desired else "restored"
                raise InvalidTransitionError(order.order_status.value, target, role.value)
            if order.payment_status == PaymentStatus.REFUNDED:
                # refunded orders stay cancelled
                raise InvalidTransitionError(order.order_status.value, "restored", role.value)
            restorable = next(
                (c.status for c in reversed(order.status_history) if c.status != OrderStatus.CANCELLED),
                OrderStatus.PENDING,
            )
            if desired is not None and desired != restorable:
                raise RevertTargetMismatchError(desired.value, restorable.value)
            order.order_status = restorable
            order.status_history.append(
                StatusChange(restorable, actor_id, utcnow(), "Restored from cancelled by admin")
            )
            order.cancelled_by = None
            order.cancelled_at = None
            order.cancellation_reason = None
            order.updated_at = utcnow()
            return True

        updated = self.store.update(order_id, apply)
        logger.warning(
            "order restored from cancelled",
            extra={"order_id": order_id, "to": updated.order_status.value, "actor": actor_id},
        )
        return updated

    # ---- payment driven changes (system actor) ----
    def attach_payment(self, order_id: str, payment_method: str, correlation_id: str) -> Order:
        """Record the provider and correlation id of a freshly created
        payment request. Paid orders are left untouched."""

        def apply(order: Order) -> bool:
            if order.is_paid:
                return False
            order.payment_method = payment_method
            order.payment_correlation_id = correlation_id
            order.updated_at = utcnow()
            return True

        return self.store.update(order_id, apply)

    def confirm_payment(
        self, order_id: str, details: PaymentDetails, notes: Optional[str] = None
    ) -> Optional[Order]:
        """Mark an order paid and move it ``pending -> paid``.

        This is the settlement guard: the check on ``payment_status`` and
        the write happen inside one store update, so two racing callers
        cannot both succeed.

        Returns:
            The updated order, or None if the order was already paid.
        """
        claimed = []

        def apply(order: Order) -> bool:
            if order.is_paid:
                return False
            order.payment_status = PaymentStatus.PAID
            order.payment_method = details.provider
            order.payment_details = details
            if order.order_status == OrderStatus.PENDING:
                self._apply_status(
                    order, OrderStatus.PAID, SYSTEM_ACTOR, notes or f"Payment confirmed via {details.provider}"
                )
                if details.paid_at:
                    order.paid_at = details.paid_at
            else:
                # Payment arrived for an order that already left ``pending``
                # (e.g. cancelled by the buyer); record the money only.
                order.paid_at = details.paid_at or utcnow()
                order.updated_at = utcnow()
            claimed.append(True)
            return True

        updated = self.store.update(order_id, apply)
        return updated if claimed else None

    def fail_payment(
        self, order_id: str, provider: str, reason: Optional[str], notes: Optional[str] = None
    ) -> Optional[Order]:
        """Record a failed payment and cancel the order as the system actor.

        Returns:
            The updated order, or None when nothing changed because the
            order is already paid or already cancelled.
        """
        reason = reason or "Payment failed"
        changed = []

        def apply(order: Order) -> bool:
            if order.is_paid or order.order_status not in PAYMENT_FAILURE_SOURCES:
                return False
            now = utcnow()
            order.payment_status = PaymentStatus.FAILED
            order.payment_method = order.payment_method or provider
            order.payment_details = PaymentDetails(provider=provider, failure_reason=reason, failed_at=now)
            self._apply_status(order, OrderStatus.CANCELLED, SYSTEM_ACTOR, notes or f"Payment failed: {reason}")
            order.cancelled_by = ActorRole.SYSTEM.value
            order.cancellation_reason = reason
            changed.append(True)
            return True

        updated = self.store.update(order_id, apply)
        return updated if changed else None

    def record_refund(
        self,
        order_id: str,
        provider: str,
        refund_id: Optional[str],
        amount: Optional[int],
        actor_id: str,
        role,
        reason: Optional[str] = None,
    ) -> Optional[Order]:
        """Mark a paid order refunded.

        An order that was not yet handed over (``paid`` or ``processing``)
        is cancelled in the same write; later states keep their status and
        only the payment sub-state changes.

        Returns:
            The updated order, or None when the order is not paid or was
            already refunded.

        Raises:
            AuthorizationError: ``role`` is neither admin nor system.
        """
        role = _role(role)
        if role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
            raise AuthorizationError(actor_id, role.value, order_id)
        reason = reason or "Payment refunded"
        changed = []

        def apply(order: Order) -> bool:
            if order.payment_status != PaymentStatus.PAID:
                return False
            now = utcnow()
            details = order.payment_details or PaymentDetails(provider=provider)
            order.payment_status = PaymentStatus.REFUNDED
            order.payment_details = replace(details, refund_id=refund_id, refunded_amount=amount, refunded_at=now)
            if order.order_status in _REFUND_CANCELS:
                self._apply_status(order, OrderStatus.CANCELLED, actor_id, f"Refunded: {reason}")
                order.cancelled_by = role.value
                order.cancellation_reason = reason
            else:
                order.updated_at = now
            changed.append(True)
            return True

        updated = self.store.update(order_id, apply)
        if updated is not None and changed:
            logger.info(
                "order refunded",
                extra={"order_id": order_id, "provider": provider, "refund_id": refund_id, "amount": amount},
            )
        return updated if changed else None

    # ---- other admin operations ----
    def update_shipping_address(self, order_id: str, actor_id: str, role, address) -> Order:
        role = _role(role)
        if role != ActorRole.ADMIN:
            raise AuthorizationError(actor_id, role.value, order_id)
        new_address = ShippingAddress.from_mapping(address)

        def apply(order: Order) -> bool:
            if order.order_status in _ADDRESS_LOCKED:
                raise ValidationError(
                    {"shippingAddress": f"cannot be changed once the order is {order.order_status.value}"}
                )
            order.shipping_address = new_address
            order.updated_at = utcnow()
            return True

        return self.store.update(order_id, apply)

    # ---- helpers ----
    @staticmethod
    def _apply_status(order: Order, target: OrderStatus, actor_id: str, notes: Optional[str]) -> None:
        now = utcnow()
        order.order_status = target
        order.status_history.append(StatusChange(target, actor_id, now, notes))
        order.updated_at = now
        milestone = MILESTONE_FIELDS.get(target)
        if milestone:
            setattr(order, milestone, now)
        if target == OrderStatus.DELIVERED:
            order.shipping_status = ShippingStatus.DELIVERED

