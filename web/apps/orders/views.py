"""HTTP views for the orders app.

Views are kept intentionally small: they validate requests (via Pydantic),
delegate to the checkout orchestrator, the lifecycle engine or the
reconciliation handler obtained from ``providers``, and render the result.
Domain errors are not caught here; ``orders_exception_handler`` maps any
``OrdersError`` to its HTTP status.

Idempotency: ``POST /orders/checkout`` honours an ``Idempotency-Key``
header. The first request creates a record and stores its response;
retries with the same payload get the stored response with HTTP 200 and
``Idempotent-Replay: true``. Reusing the key with a different payload
returns HTTP 409.
"""

import logging
from typing import List

from django.conf import settings
from django.core.paginator import Paginator
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView
from rest_framework.views import exception_handler as drf_exception_handler

from apps.payments.base import PaymentRequest
from apps.payments.registry import get_provider, parse_method

from .checkout import PaymentIntentDescriptor
from .domain import ActorRole, Order, OrderStatus
from .errors import AuthorizationError, NotFoundError, OrdersError, PaymentGatewayError, RateLimitedError, ValidationError
from .idempotency import finalize, get_or_create_idempotent, release, scoped_key
from .models import ReconciliationIssue
from .providers import get_checkout, get_engine, get_reconciliation, get_verify_limiter
from .schemas import (
    AdminStatusIn,
    CancelIn,
    CartCheckoutIn,
    CheckoutIn,
    PayIn,
    ReconciliationIssueOut,
    RefundIn,
    ShippingAddressIn,
    order_json,
    parse,
)

logger = logging.getLogger("orders.api")


def orders_exception_handler(exc, context):
    """DRF exception handler turning ``OrdersError`` into JSON responses."""
    if isinstance(exc, OrdersError):
        body = {"detail": exc.code, "message": str(exc)}
        if isinstance(exc, ValidationError):
            body["fields"] = exc.fields
        skipped = getattr(exc, "skipped", None)
        if skipped is not None:
            body["skipped"] = skipped
        resp = Response(body, status=exc.http_status)
        if isinstance(exc, RateLimitedError):
            resp["Retry-After"] = str(exc.retry_after)
        if exc.http_status >= 500:
            logger.error("request failed", extra={"code": exc.code, "error": str(exc)})
        return resp
    return drf_exception_handler(exc, context)


def _paginate(request, items: list, render) -> dict:
    try:
        page = int(request.GET.get("page", 1))
        page_size = min(max(int(request.GET.get("page_size", 20)), 1), 100)
    except ValueError:
        raise ValidationError({"page": "must be an integer"})
    p = Paginator(items, page_size)
    page_obj = p.get_page(page)
    return {
        "count": p.count,
        "page": page_obj.number,
        "page_size": page_size,
        "results": [render(o) for o in page_obj.object_list],
    }


def _require_admin(principal, order_id=None):
    if not principal.is_admin:
        raise AuthorizationError(principal.uid, principal.role, order_id)


def _start_payment(method: str, intent: PaymentIntentDescriptor, orders: List[Order]):
    """Ask the gateway for a payment link and attach it to ``orders``.

    Raises:
        PaymentGatewayError: Orders stay pending; the caller may retry via
            ``POST /orders/{ref}/pay``.
    """
    public = getattr(settings, "PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    frontend = getattr(settings, "FRONTEND_URL", "http://localhost:4000").rstrip("/")
    link = get_provider(method).create_payment_request(
        PaymentRequest(
            amount=intent.amount,
            currency=intent.currency,
            order_ref=intent.order_ref,
            description=intent.description,
            return_url=f"{frontend}/pages/order-success.html?ref={intent.order_ref}",
            callback_url=f"{public}/api/payments/{method}/webhook",
            buyer_name=intent.buyer_name,
            buyer_id=intent.buyer_id,
        )
    )
    engine = get_engine()
    for order in orders:
        engine.attach_payment(order.id, method, link.correlation_id)
    return link


def _cancel_stale_links(orders: List[Order], reason: str) -> None:
    """Void earlier checkout links of ``orders`` so only the new one can be paid.

    Best effort: a gateway that refuses leaves the old link to expire.
    """
    seen = set()
    for order in orders:
        key = (order.payment_method, order.payment_correlation_id)
        if not all(key) or key in seen:
            continue
        seen.add(key)
        provider = get_provider(order.payment_method)
        if not getattr(provider, "supports_cancel", False):
            continue
        try:
            provider.cancel_payment(order.payment_correlation_id, reason)
        except PaymentGatewayError as e:
            logger.warning(
                "stale payment link not cancelled",
                extra={"order_id": order.id, "provider": e.provider, "error": e.message},
            )


def _gateway_failure(exc: PaymentGatewayError, **refs) -> Response:
    logger.warning("payment link creation failed", extra={"provider": exc.provider, "error": exc.message, **refs})
    body = {"detail": exc.code, "message": str(exc)}
    body.update(refs)
    return Response(body, status=status.HTTP_502_BAD_GATEWAY)


class ScopedAPIView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"


# ---- checkout ----
class CheckoutView(ScopedAPIView):
    """Create one order for a single product and start its payment."""

    throttle_scope = "orders_create"

    def post(self, request):
        """Create an order and return its payment link.

        Returns:
            Response: One of the following responses.
            - 201 with {orderId, checkoutUrl, paymentMethod, correlationId}.
            - 200 with the stored body when an ``Idempotency-Key`` retry
              repeats the same payload.
            - 409 when the key is reused with a different payload.
            - 502 with {orderId} when the gateway refused; the order stays
              pending.
        """
        dto = parse(CheckoutIn, request.data)
        method = parse_method(dto.payment_method).value
        principal = request.user

        rec = None
        idem_key = request.headers.get("Idempotency-Key")
        if idem_key:
            existing, rec = get_or_create_idempotent(scoped_key(principal.uid, idem_key), request.data)
            if existing:
                resp = Response(rec.response_body, status=status.HTTP_200_OK)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            result = get_checkout().checkout_single(
                principal.uid, dto.product_id, dto.quantity, dto.shipping_address
            )
        except OrdersError:
            if rec:
                release(rec)
            raise

        order = result.order
        try:
            link = _start_payment(method, result.intent, [order])
        except PaymentGatewayError as e:
            resp = _gateway_failure(e, orderId=order.id)
            if rec:
                finalize(rec, resp.status_code, resp.data, order_ref=order.id)
            return resp

        body = {
            "orderId": order.id,
            "checkoutUrl": link.checkout_url,
            "paymentMethod": method,
            "correlationId": link.correlation_id,
            "amount": result.intent.amount,
        }
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_ref=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class CartCheckoutView(ScopedAPIView):
    throttle_scope = "orders_create"

    def post(self, request):
        dto = parse(CartCheckoutIn, request.data)
        method = parse_method(dto.payment_method).value
        result = get_checkout().checkout_from_cart(request.user.uid, dto.shipping_address)
        order_ids = [o.id for o in result.orders]
        skipped = [s.as_dict() for s in result.skipped]
        try:
            link = _start_payment(method, result.intent, result.orders)
        except PaymentGatewayError as e:
            return _gateway_failure(e, transactionId=result.transaction_id, orderIds=order_ids, skipped=skipped)
        return Response(
            {
                "transactionId": result.transaction_id,
                "orderIds": order_ids,
                "skipped": skipped,
                "checkoutUrl": link.checkout_url,
                "paymentMethod": method,
                "correlationId": link.correlation_id,
                "amount": result.intent.amount,
            },
            status=status.HTTP_201_CREATED,
        )


class PayView(ScopedAPIView):
    """Create a fresh payment link for a pending order or transaction."""

    throttle_scope = "orders_create"

    def post(self, request, ref: str):
        dto = parse(PayIn, request.data)
        method = parse_method(dto.payment_method).value
        pending = get_checkout().payment_intent_for(ref, buyer_id=request.user.uid)
        order_ids = [o.id for o in pending.orders]
        _cancel_stale_links(pending.orders, "Buyer started a new payment")
        try:
            link = _start_payment(method, pending.intent, pending.orders)
        except PaymentGatewayError as e:
            return _gateway_failure(e, orderRef=ref, orderIds=order_ids)
        return Response(
            {
                "orderRef": ref,
                "orderIds": order_ids,
                "checkoutUrl": link.checkout_url,
                "paymentMethod": method,
                "correlationId": link.correlation_id,
                "amount": pending.intent.amount,
            },
            status=status.HTTP_200_OK,
        )


class VerifyPaymentView(ScopedAPIView):
    throttle_scope = "orders_verify"

    def get(self, request, ref: str):
        principal = request.user
        get_verify_limiter().hit(f"{principal.uid}:{ref}")
        role = ActorRole.ADMIN if principal.is_admin else ActorRole(principal.role)
        view = get_reconciliation().verify_payment_sync(ref, principal.uid, role)
        return Response(
            {
                "ref": view.ref,
                "status": view.status,
                "source": view.source,
                "orders": [order_json(o) for o in view.orders],
            }
        )


# ---- reads ----
class RetrieveOrderView(ScopedAPIView):
    def get(self, request, oid):
        principal = request.user
        order = get_engine().get_order(str(oid))
        if not principal.is_admin and principal.uid not in (order.buyer_id, order.seller_id):
            raise AuthorizationError(principal.uid, principal.role, str(oid))
        return Response(order_json(order))


class BuyerOrdersView(ScopedAPIView):
    throttle_scope = "orders_list"

    def get(self, request):
        orders = get_engine().store.list_by_buyer(request.user.uid)
        return Response(_paginate(request, orders, order_json))


class SellerSalesView(ScopedAPIView):
    throttle_scope = "orders_list"

    def get(self, request):
        orders = get_engine().store.list_by_seller(request.user.uid)
        return Response(_paginate(request, orders, order_json))


def _issue_json(issue: ReconciliationIssue) -> dict:
    return ReconciliationIssueOut.model_validate(issue).model_dump(mode="json", by_alias=True)


class ReconciliationIssuesView(ScopedAPIView):
    throttle_scope = "orders_list"

    def get(self, request):
        _require_admin(request.user)
        qs = ReconciliationIssue.objects.all()
        if request.GET.get("all") not in ("1", "true"):
            qs = qs.filter(resolved=False)
        return Response(_paginate(request, list(qs), _issue_json))


# ---- transitions ----
class SellerActionView(ScopedAPIView):
    throttle_scope = "orders_update"

    def put(self, request, oid, action: str):
        engine = get_engine()
        uid = request.user.uid
        if action == "accept":
            order = engine.transition(str(oid), OrderStatus.PROCESSING, uid, ActorRole.SELLER, "Seller accepted the order")
        elif action == "deliver":
            order = engine.transition(str(oid), OrderStatus.DELIVERED, uid, ActorRole.SELLER, "Marked delivered by seller")
        elif action == "cancel":
            dto = parse(CancelIn, request.data)
            order = engine.cancel(str(oid), uid, ActorRole.SELLER, dto.reason)
        else:
            raise NotFoundError("action", action)
        return Response(order_json(order))


class BuyerActionView(ScopedAPIView):
    throttle_scope = "orders_update"

    def put(self, request, oid, action: str):
        engine = get_engine()
        uid = request.user.uid
        if action == "confirm-delivery":
            order = engine.transition(str(oid), OrderStatus.COMPLETED, uid, ActorRole.BUYER, "Buyer confirmed delivery")
        elif action == "cancel":
            dto = parse(CancelIn, request.data)
            order = engine.cancel(str(oid), uid, ActorRole.BUYER, dto.reason)
        else:
            raise NotFoundError("action", action)
        return Response(order_json(order))


class AdminActionView(ScopedAPIView):
    throttle_scope = "orders_update"

    def put(self, request, oid, action: str):
        principal = request.user
        _require_admin(principal, str(oid))
        engine = get_engine()
        order_id = str(oid)
        if action == "status":
            dto = parse(AdminStatusIn, request.data)
            if dto.status == OrderStatus.CANCELLED:
                order = engine.cancel(order_id, principal.uid, ActorRole.ADMIN, dto.reason or dto.notes)
            elif engine.get_order(order_id).order_status == OrderStatus.CANCELLED:
                order = engine.revert_from_cancelled(order_id, principal.uid, ActorRole.ADMIN, dto.status)
            else:
                order = engine.transition(order_id, dto.status, principal.uid, ActorRole.ADMIN, dto.notes)
        elif action == "cancel":
            dto = parse(CancelIn, request.data)
            order = engine.cancel(order_id, principal.uid, ActorRole.ADMIN, dto.reason)
        elif action == "shipping-address":
            dto = parse(ShippingAddressIn, request.data)
            order = engine.update_shipping_address(order_id, principal.uid, ActorRole.ADMIN, dto.shipping_address)
        elif action == "refund":
            dto = parse(RefundIn, request.data)
            order = get_reconciliation().refund_order(order_id, principal.uid, amount=dto.amount, reason=dto.reason)
        else:
            raise NotFoundError("action", action)
        return Response(order_json(order))
