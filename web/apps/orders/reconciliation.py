"""Payment reconciliation.

Two entry points feed the same settlement routine:

- ``handle_webhook``: push notifications from a gateway. Always returns an
    ``AckDecision``; the caller turns it into the gateway's literal reply.
- ``verify_payment_sync``: a user (or the periodic sweep) asking "did my
    payment go through?". Polls the gateway under a short timeout and falls
    back to the stored state.

Settlement is idempotent. The paid flip is guarded inside one store update
(``OrderLifecycleEngine.confirm_payment``); stock decrement and the ledger
row follow only for the caller that won the flip, and their failures are
recorded as reconciliation issues instead of undoing the payment.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Callable, List, Optional

from apps.payments.base import AckDecision, CallbackResult, PaymentProvider, StatusResult, WebhookPayload

from .domain import (
    ActorRole,
    IssueKind,
    LedgerEntry,
    Order,
    OrderStatus,
    PaymentDetails,
    PaymentStatus,
    SYSTEM_ACTOR,
    ProductGatePort,
    utcnow,
)
from .errors import AuthorizationError, ConcurrentUpdateError, NotFoundError, PaymentGatewayError, ValidationError
from .lifecycle import OrderLifecycleEngine

logger = logging.getLogger("orders.reconciliation")
security_logger = logging.getLogger("orders.security")

ProviderLookup = Callable[[str], PaymentProvider]


@dataclass
class OrderPaymentView:
    """Answer of ``verify_payment_sync``.

    Attributes:
        status: ``refunded`` when every order was refunded, ``paid`` when
            every order is paid, ``failed`` when none is still waiting and at
            least one failed, ``pending`` otherwise.
        source: ``store`` when nothing needed asking, ``gateway`` when the
            provider answered, ``cache`` when it could not be reached in time.
    """

    ref: str
    status: str
    source: str
    orders: List[Order]


def _aggregate_status(orders: List[Order]) -> str:
    if all(o.payment_status == PaymentStatus.REFUNDED for o in orders):
        return "refunded"
    if all(o.is_paid for o in orders):
        return "paid"
    if any(o.payment_status == PaymentStatus.PENDING and o.order_status == OrderStatus.PENDING for o in orders):
        return "pending"
    if any(o.payment_status == PaymentStatus.FAILED for o in orders):
        return "failed"
    return "pending"


class ReconciliationHandler:
    """Reconciles gateway payment outcomes with the order lifecycle.

    Args:
        engine: Lifecycle engine; the only writer of payment fields.
        products: Gate used to decrement stock after settlement.
        providers: Callable returning the adapter for a payment method.
        shipping_fee: Added once per payment when computing the expected
            amount.
        currency: Ledger currency.
        query_timeout: Seconds the sync path waits for ``query_status``.
    """

    def __init__(
        self,
        engine: OrderLifecycleEngine,
        products: ProductGatePort,
        providers: ProviderLookup,
        shipping_fee: int = 5000,
        currency: str = "VND",
        query_timeout: float = 3.0,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.engine = engine
        self.store = engine.store
        self.products = products
        self.providers = providers
        self.shipping_fee = shipping_fee
        self.currency = currency
        self.query_timeout = query_timeout
        self._executor = executor or _shared_executor()

    # ---- order resolution ----
    def resolve(self, payment_method: str, result: CallbackResult) -> List[Order]:
        """Find the orders a callback refers to.

        Tries the order reference as an order id, then as a transaction id,
        then the ``(payment_method, correlation_id)`` pair.
        """
        if result.order_ref:
            order = self.store.get(result.order_ref)
            if order is not None:
                return [order]
            orders = self.store.find_by_transaction(result.order_ref)
            if orders:
                return orders
        if result.correlation_id:
            return self.store.find_by_correlation(payment_method, result.correlation_id)
        return []

    def resolve_ref(self, ref: str) -> List[Order]:
        order = self.store.get(ref)
        return [order] if order is not None else self.store.find_by_transaction(ref)

    def _reload(self, orders: List[Order]) -> List[Order]:
        return [self.store.get(o.id) or o for o in orders]

    # ---- webhook (push) ----
    def handle_webhook(self, provider_name: str, payload: WebhookPayload) -> AckDecision:
        """Process one gateway notification.

        Never raises: anything unexpected (a provider lookup, a store read,
        a settlement step) is logged and answered with ``RETRY`` so the
        gateway delivers again.
        """
        try:
            return self._process_webhook(provider_name, payload)
        except Exception:
            logger.exception("webhook processing failed", extra={"provider": provider_name})
            return AckDecision.RETRY

    def _process_webhook(self, provider_name: str, payload: WebhookPayload) -> AckDecision:
        provider = self.providers(provider_name)
        result = provider.verify_callback(payload)
        if not result.valid:
            security_logger.warning(
                "webhook signature rejected",
                extra={"provider": provider_name, "reason": result.failure_reason},
            )
            return AckDecision.REJECTED

        orders = self.resolve(provider_name, result)
        if not orders:
            self._unmatched(provider_name, result)
            return AckDecision.UNMATCHED

        if result.refund:
            return self._refund_group(provider_name, orders, result)

        if all(o.is_paid for o in orders):
            logger.info(
                "webhook already processed",
                extra={"provider": provider_name, "order_ids": [o.id for o in orders]},
            )
            return AckDecision.ALREADY_PROCESSED

        if not result.succeeded and not result.final:
            logger.warning(
                "payment attempt declined",
                extra={
                    "provider": provider_name,
                    "order_ids": [o.id for o in orders],
                    "reason": result.failure_reason,
                },
            )
            return AckDecision.ACCEPTED

        try:
            if result.succeeded:
                complete = self._settle_group(
                    provider_name, orders, result.amount, result.external_transaction_id, source="webhook"
                )
            else:
                self._fail_group(provider_name, orders, result.failure_reason, source="webhook")
                complete = True
        except ConcurrentUpdateError:
            if all(o.is_paid for o in self._reload(orders)):
                return AckDecision.ALREADY_PROCESSED
            return AckDecision.RETRY
        return AckDecision.ACCEPTED if complete else AckDecision.RETRY

    def _unmatched(self, provider_name: str, result: CallbackResult) -> None:
        extra = {"provider": provider_name, "order_ref": result.order_ref, "correlation_id": result.correlation_id}
        if not (result.succeeded or result.refund):
            logger.info("webhook matched no order", extra=extra)
            return
        # Money moved at the gateway for nothing we know about.
        logger.warning("money movement matched no order", extra=dict(extra, amount=result.amount))
        self.store.record_issue(
            IssueKind.UNMATCHED_PAYMENT,
            f"{'refund' if result.refund else 'payment'} of {result.amount} matched no order",
            provider=provider_name,
            payload={
                "correlationId": result.correlation_id,
                "orderRef": result.order_ref,
                "amount": result.amount,
                "externalTransactionId": result.external_transaction_id,
            },
        )

    def _refund_group(self, provider_name: str, orders: List[Order], result: CallbackResult) -> AckDecision:
        if all(o.payment_status == PaymentStatus.REFUNDED for o in orders):
            return AckDecision.ALREADY_PROCESSED
        paid = [o for o in orders if o.payment_status == PaymentStatus.PAID]
        covered = sum(o.total_amount for o in paid)
        if len(orders) > 1 and (result.amount is None or result.amount < covered):
            # A partial refund of a cart payment cannot be split between sellers.
            logger.warning(
                "refund not allocated", extra={"provider": provider_name, "order_ids": [o.id for o in orders]}
            )
            self.store.record_issue(
                IssueKind.REFUND_UNALLOCATED,
                f"refund of {result.amount} covers less than {covered} across {len(paid)} orders",
                order_id=orders[0].id,
                provider=provider_name,
                payload={"orderIds": [o.id for o in orders], "amount": result.amount, "refundId": result.refund_id},
            )
            return AckDecision.ACCEPTED
        try:
            for order in paid:
                self.engine.record_refund(
                    order.id,
                    provider_name,
                    result.refund_id,
                    result.amount if len(orders) == 1 else order.total_amount,
                    SYSTEM_ACTOR,
                    ActorRole.SYSTEM,
                    reason="Refunded at gateway",
                )
        except ConcurrentUpdateError:
            return AckDecision.RETRY
        return AckDecision.ACCEPTED

    # ---- refunds ----
    def refund_order(
        self, order_id: str, actor_id: str, amount: Optional[int] = None, reason: Optional[str] = None
    ) -> Order:
        """Return the money of one paid order through its gateway.

        ``amount`` defaults to the paid amount. The order is marked refunded
        right away; the gateway's own refund notification is then a no-op.

        Raises:
            ValidationError: The order is not paid, was already refunded, was
                paid through a gateway without refunds, or ``amount`` is out
                of range.
            PaymentGatewayError: The gateway refused or could not be reached.
        """
        order = self.engine.get_order(order_id)
        if order.payment_status == PaymentStatus.REFUNDED:
            raise ValidationError({"paymentStatus": "already refunded"})
        if order.payment_status != PaymentStatus.PAID or not order.payment_correlation_id:
            raise ValidationError({"paymentStatus": "order is not paid"})
        provider = self.providers(order.payment_method)
        if not getattr(provider, "supports_refund", False):
            raise ValidationError({"paymentMethod": f"{order.payment_method} does not support refunds"})
        paid = order.payment_details.paid_amount if order.payment_details else None
        paid = paid if paid is not None else order.total_amount
        amount = paid if amount is None else amount
        if amount <= 0 or amount > paid:
            raise ValidationError({"amount": f"must be between 1 and {paid}"})

        refund = provider.refund(order.payment_correlation_id, amount, order_ref=order.id, reason=reason)
        updated = self.engine.record_refund(
            order.id, order.payment_method, refund.refund_id, refund.amount, actor_id, ActorRole.ADMIN, reason=reason
        )
        # None when the gateway's notification already recorded it.
        return updated or self.engine.get_order(order.id)

    # ---- verify payment (pull) ----
    def verify_payment_sync(self, ref: str, actor_id: str, role) -> OrderPaymentView:
        """Return the payment state of an order or transaction, asking the
        gateway when it is still pending.

        Raises:
            NotFoundError: ``ref`` matches no order.
            AuthorizationError: The caller is neither buyer, seller nor admin.
        """
        orders = self.resolve_ref(ref)
        if not orders:
            raise NotFoundError("order", ref)
        role = ActorRole(role)
        if role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
            for o in orders:
                if actor_id not in (o.buyer_id, o.seller_id):
                    raise AuthorizationError(actor_id, role.value, o.id)

        waiting = [
            o
            for o in orders
            if not o.is_paid
            and o.payment_status != PaymentStatus.FAILED
            and o.payment_method
            and o.payment_correlation_id
        ]
        if not waiting:
            return OrderPaymentView(ref, _aggregate_status(orders), "store", orders)

        method = waiting[0].payment_method
        correlation_id = waiting[0].payment_correlation_id
        group = [o for o in waiting if o.payment_method == method and o.payment_correlation_id == correlation_id]
        provider = self.providers(method)
        if not getattr(provider, "supports_query", False):
            return OrderPaymentView(ref, _aggregate_status(orders), "cache", orders)

        status = self._query(provider, method, correlation_id, ref)
        if status is None:
            return OrderPaymentView(ref, _aggregate_status(orders), "cache", orders)

        try:
            if status.succeeded:
                self._settle_group(method, group, status.amount, status.external_transaction_id, source="verify")
            elif not status.pending:
                self._fail_group(method, group, status.failure_reason, source="verify")
        except ConcurrentUpdateError:
            logger.info("verify lost a race with another settlement", extra={"ref": ref})
        orders = self._reload(orders)
        return OrderPaymentView(ref, _aggregate_status(orders), "gateway", orders)

    def _query(self, provider: PaymentProvider, method: str, correlation_id: str, ref: str) -> Optional[StatusResult]:
        future = self._executor.submit(provider.query_status, correlation_id, ref)
        try:
            return future.result(timeout=self.query_timeout)
        except FuturesTimeout:
            future.cancel()
            logger.warning(
                "payment status query timed out",
                extra={"provider": method, "ref": ref, "timeout": self.query_timeout},
            )
        except PaymentGatewayError as e:
            logger.warning("payment status query failed", extra={"provider": method, "ref": ref, "error": str(e)})
        return None

    # ---- settlement ----
    def _settle_group(
        self,
        provider_name: str,
        orders: List[Order],
        amount: Optional[int],
        external_id: Optional[str],
        source: str,
    ) -> bool:
        """Settle every unpaid order of one payment.

        Returns:
            False when at least one order could not be settled and the
            payment should be retried.
        """
        unpaid = [o for o in orders if not o.is_paid]
        if not unpaid:
            return True
        expected = sum(o.total_amount for o in orders) + self.shipping_fee
        if amount is not None and amount < expected:
            self.store.record_issue(
                IssueKind.AMOUNT_MISMATCH,
                f"reported amount {amount} is lower than expected {expected}",
                order_id=unpaid[0].id,
                provider=provider_name,
                payload={"orderIds": [o.id for o in orders], "amount": amount, "expected": expected},
            )

        complete = True
        single = len(orders) == 1
        paid_at = utcnow()
        for order in unpaid:
            details = PaymentDetails(
                provider=provider_name,
                external_transaction_id=external_id,
                paid_amount=amount if single and amount is not None else order.total_amount,
                paid_at=paid_at,
            )
            try:
                self.settle(order, details, source=source)
            except ConcurrentUpdateError:
                if len(orders) == 1:
                    raise
                complete = False
            except Exception as e:
                logger.exception("settlement failed", extra={"order_id": order.id, "provider": provider_name})
                self.store.record_issue(
                    IssueKind.SETTLEMENT_FAILED,
                    f"settlement failed: {e}",
                    order_id=order.id,
                    provider=provider_name,
                )
                complete = False
        return complete

    def settle(self, order: Order, details: PaymentDetails, source: str = "webhook") -> bool:
        """Apply one payment to one order.

        Returns:
            True if this call flipped the order to paid, False if it was
            already paid.
        """
        updated = self.engine.confirm_payment(
            order.id, details, notes=f"Payment confirmed via {details.provider} ({source})"
        )
        if updated is None:
            return False
        if updated.order_status != OrderStatus.PAID:
            # Money for an order that left ``pending`` first; stock stays put.
            logger.warning(
                "payment received for a closed order",
                extra={"order_id": order.id, "provider": details.provider, "order_status": updated.order_status.value},
            )
            self.store.record_issue(
                IssueKind.PAID_AFTER_CANCEL,
                f"payment of {details.paid_amount} arrived while the order was {updated.order_status.value}",
                order_id=order.id,
                provider=details.provider,
                payload={"amount": details.paid_amount, "externalTransactionId": details.external_transaction_id},
            )
            self._record_ledger(updated, details)
            return True
        logger.info(
            "order settled",
            extra={"order_id": order.id, "provider": details.provider, "paid_amount": details.paid_amount},
        )

        try:
            self.products.decrement_quantity_and_maybe_mark_sold(order.product_id, order.quantity, order.id)
        except Exception as e:
            logger.exception("stock decrement failed", extra={"order_id": order.id, "product_id": order.product_id})
            self.store.record_issue(
                IssueKind.STOCK_UPDATE_FAILED,
                f"could not decrement product {order.product_id} by {order.quantity}: {e}",
                order_id=order.id,
                provider=details.provider,
                payload={"productId": order.product_id, "quantity": order.quantity},
            )

        self._record_ledger(updated, details)
        return True

    def _record_ledger(self, order: Order, details: PaymentDetails) -> None:
        try:
            self.store.record_ledger_entry(
                LedgerEntry(
                    order_id=order.id,
                    amount=details.paid_amount if details.paid_amount is not None else order.total_amount,
                    currency=self.currency,
                    payment_method=details.provider,
                    payer_id=order.buyer_id,
                    payee_id=order.seller_id,
                    external_transaction_id=details.external_transaction_id,
                )
            )
        except Exception as e:
            logger.exception("ledger write failed", extra={"order_id": order.id})
            self.store.record_issue(
                IssueKind.LEDGER_FAILED, f"could not record ledger entry: {e}", order_id=order.id, provider=details.provider
            )

    def _fail_group(self, provider_name: str, orders: List[Order], reason: Optional[str], source: str) -> None:
        for order in orders:
            updated = self.engine.fail_payment(
                order.id, provider_name, reason, notes=f"Payment failed via {provider_name} ({source}): {reason}"
            )
            if updated is not None:
                logger.warning(
                    "payment failed, order cancelled",
                    extra={"order_id": order.id, "provider": provider_name, "reason": reason},
                )


_executor: Optional[ThreadPoolExecutor] = None


def _shared_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="payment-query")
    return _executor
