"""Repository layer for persisting orders.

``OrderRepository`` implements ``OrderStorePort`` on top of the Django
ORM. It maps between ``OrderModel`` rows and the domain ``Order``
dataclass so the lifecycle engine never sees ORM types.

Writes to existing orders go through ``update``: the row is locked with
``SELECT ... FOR UPDATE`` and written back with a version compare-and-set,
so a stale writer fails with ``ConcurrentUpdateError`` instead of silently
overwriting a newer state.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from django.db import IntegrityError, transaction
from django.db.models import F

from .domain import (
    IssueKind,
    LedgerEntry,
    Order,
    OrderMutator,
    OrderStatus,
    PaymentDetails,
    PaymentStatus,
    ShippingAddress,
    ShippingStatus,
    StatusChange,
)
from .errors import ConcurrentUpdateError, NotFoundError
from .models import OrderModel, PaymentTransaction, ReconciliationIssue

logger = logging.getLogger("orders.repository")

# Columns rewritten on every update. Identity and snapshot columns never change.
_MUTABLE_FIELDS = (
    "order_status",
    "payment_status",
    "shipping_status",
    "shipping_address",
    "transaction_id",
    "payment_method",
    "payment_correlation_id",
    "payment_details",
    "cancelled_by",
    "cancelled_at",
    "cancellation_reason",
    "status_history",
    "updated_at",
    "paid_at",
    "seller_confirmed_at",
    "delivered_at",
    "completed_at",
)


# ---- mapping helpers ----
def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _parse_id(order_id) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(order_id))
    except (TypeError, ValueError):
        return None


def history_to_json(history: List[StatusChange]) -> list:
    return [
        {
            "status": c.status.value,
            "changedBy": c.changed_by,
            "changedAt": _iso(c.changed_at),
            "notes": c.notes,
        }
        for c in history
    ]


def history_from_json(raw) -> List[StatusChange]:
    return [
        StatusChange(
            status=OrderStatus(item["status"]),
            changed_by=item.get("changedBy", ""),
            changed_at=_parse_dt(item.get("changedAt")),
            notes=item.get("notes"),
        )
        for item in raw or []
    ]


def payment_details_to_json(details: Optional[PaymentDetails]) -> Optional[dict]:
    if details is None:
        return None
    return {
        "provider": details.provider,
        "externalTransactionId": details.external_transaction_id,
        "paidAmount": details.paid_amount,
        "paidAt": _iso(details.paid_at),
        "failureReason": details.failure_reason,
        "failedAt": _iso(details.failed_at),
        "refundId": details.refund_id,
        "refundedAmount": details.refunded_amount,
        "refundedAt": _iso(details.refunded_at),
    }


def payment_details_from_json(raw: Optional[dict]) -> Optional[PaymentDetails]:
    if not raw:
        return None
    return PaymentDetails(
        provider=raw.get("provider", ""),
        external_transaction_id=raw.get("externalTransactionId"),
        paid_amount=raw.get("paidAmount"),
        paid_at=_parse_dt(raw.get("paidAt")),
        failure_reason=raw.get("failureReason"),
        failed_at=_parse_dt(raw.get("failedAt")),
        refund_id=raw.get("refundId"),
        refunded_amount=raw.get("refundedAmount"),
        refunded_at=_parse_dt(raw.get("refundedAt")),
    )


def _to_row_values(order: Order) -> dict:
    return {
        "order_status": order.order_status.value,
        "payment_status": order.payment_status.value,
        "shipping_status": order.shipping_status.value,
        "shipping_address": order.shipping_address.as_dict(),
        "transaction_id": order.transaction_id,
        "payment_method": order.payment_method,
        "payment_correlation_id": order.payment_correlation_id,
        "payment_details": payment_details_to_json(order.payment_details),
        "cancelled_by": order.cancelled_by,
        "cancelled_at": order.cancelled_at,
        "cancellation_reason": order.cancellation_reason,
        "status_history": history_to_json(order.status_history),
        "updated_at": order.updated_at,
        "paid_at": order.paid_at,
        "seller_confirmed_at": order.seller_confirmed_at,
        "delivered_at": order.delivered_at,
        "completed_at": order.completed_at,
    }


def _to_domain(row: OrderModel) -> Order:
    return Order(
        id=str(row.id),
        product_id=row.product_id,
        product_name=row.product_name,
        product_unit_price=row.product_unit_price,
        seller_id=row.seller_id,
        buyer_id=row.buyer_id,
        quantity=row.quantity,
        total_amount=row.total_amount,
        shipping_address=ShippingAddress.from_mapping(row.shipping_address),
        order_status=OrderStatus(row.order_status),
        payment_status=PaymentStatus(row.payment_status),
        shipping_status=ShippingStatus(row.shipping_status),
        transaction_id=row.transaction_id,
        payment_method=row.payment_method,
        payment_correlation_id=row.payment_correlation_id,
        payment_details=payment_details_from_json(row.payment_details),
        cancelled_by=row.cancelled_by,
        cancelled_at=row.cancelled_at,
        cancellation_reason=row.cancellation_reason,
        status_history=history_from_json(row.status_history),
        created_at=row.created_at,
        updated_at=row.updated_at,
        paid_at=row.paid_at,
        seller_confirmed_at=row.seller_confirmed_at,
        delivered_at=row.delivered_at,
        completed_at=row.completed_at,
        version=row.version,
    )


class OrderRepository:
    """Repository that persists Order domain objects using Django ORM."""

    def create(self, order: Order) -> Order:
        """Persist a new order record and return it as stored."""
        row = OrderModel.objects.create(
            id=uuid.UUID(order.id),
            product_id=order.product_id,
            product_name=order.product_name,
            product_unit_price=order.product_unit_price,
            seller_id=order.seller_id,
            buyer_id=order.buyer_id,
            quantity=order.quantity,
            total_amount=order.total_amount,
            created_at=order.created_at,
            version=0,
            **_to_row_values(order),
        )
        return _to_domain(row)

    def get(self, order_id: str) -> Optional[Order]:
        pk = _parse_id(order_id)
        if pk is None:
            return None
        row = OrderModel.objects.filter(pk=pk).first()
        return _to_domain(row) if row else None

    def find_by_transaction(self, transaction_id: str) -> List[Order]:
        rows = OrderModel.objects.filter(transaction_id=transaction_id).order_by("created_at")
        return [_to_domain(r) for r in rows]

    def find_by_correlation(self, payment_method: str, correlation_id: str) -> List[Order]:
        rows = OrderModel.objects.filter(
            payment_method=payment_method, payment_correlation_id=correlation_id
        ).order_by("created_at")
        return [_to_domain(r) for r in rows]

    def list_by_buyer(self, buyer_id: str) -> List[Order]:
        return [_to_domain(r) for r in OrderModel.objects.filter(buyer_id=buyer_id)]

    def list_by_seller(self, seller_id: str) -> List[Order]:
        return [_to_domain(r) for r in OrderModel.objects.filter(seller_id=seller_id)]

    def list_pending_payments(self, older_than: datetime) -> List[Order]:
        rows = OrderModel.objects.filter(
            order_status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_method__isnull=False,
            created_at__lt=older_than,
        ).order_by("created_at")
        return [_to_domain(r) for r in rows]

    def update(self, order_id: str, mutator: OrderMutator) -> Order:
        """Atomically read, mutate and write one order.

        The mutator receives a fresh domain ``Order``. Exceptions raised by
        the mutator roll the transaction back and propagate unchanged.

        Raises:
            NotFoundError: If the order does not exist.
            ConcurrentUpdateError: If the version moved between read and write.
        """
        pk = _parse_id(order_id)
        if pk is None:
            raise NotFoundError("order", order_id)
        with transaction.atomic():
            row = OrderModel.objects.select_for_update().filter(pk=pk).first()
            if row is None:
                raise NotFoundError("order", order_id)
            order = _to_domain(row)
            if mutator(order) is False:
                return order
            written = OrderModel.objects.filter(pk=pk, version=row.version).update(
                version=F("version") + 1, **_to_row_values(order)
            )
            if not written:
                logger.warning("order version conflict", extra={"order_id": order_id, "version": row.version})
                raise ConcurrentUpdateError(order_id)
            order.version = row.version + 1
            return order

    def record_ledger_entry(self, entry: LedgerEntry) -> bool:
        """Persist a ledger row; return False when the order already has one."""
        try:
            # Savepoint so the IntegrityError only rolls back this insert.
            with transaction.atomic():
                PaymentTransaction.objects.create(
                    order_id=uuid.UUID(entry.order_id),
                    amount=entry.amount,
                    currency=entry.currency,
                    payment_method=entry.payment_method,
                    payer_id=entry.payer_id,
                    payee_id=entry.payee_id,
                    external_transaction_id=entry.external_transaction_id,
                )
        except IntegrityError:
            return False
        return True

    def record_issue(
        self,
        kind: IssueKind,
        detail: str,
        order_id: Optional[str] = None,
        provider: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> None:
        ReconciliationIssue.objects.create(
            order_id=_parse_id(order_id) if order_id else None,
            provider=provider,
            kind=IssueKind(kind).value,
            detail=detail,
            payload=payload or {},
        )
        logger.error(
            "reconciliation issue recorded",
            extra={"order_id": order_id, "provider": provider, "kind": IssueKind(kind).value},
        )
