"""Stripe card payments through the official ``stripe`` SDK.

A payment is a PaymentIntent whose id is the correlation id; the order
reference is stored in its metadata. VND is a zero-decimal currency for
Stripe, so amounts are passed through unchanged.
"""

import json
import logging
from typing import Callable, Optional
from urllib.parse import urlencode

import stripe

from apps.orders.errors import PaymentGatewayError

from .base import (
    AckDecision,
    CallbackResult,
    PaymentLink,
    PaymentRequest,
    RefundResult,
    StatusResult,
    WebhookPayload,
    as_int,
)

_PENDING_STATES = frozenset(
    {"requires_payment_method", "requires_confirmation", "requires_action", "processing", "requires_capture"}
)
_INTENT_EVENTS = frozenset(
    {"payment_intent.succeeded", "payment_intent.payment_failed", "payment_intent.canceled"}
)


def _get(obj, key):
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def construct_event(body: bytes, signature: str, secret: str) -> dict:
    """Check the ``Stripe-Signature`` header with the SDK and decode the event.

    Raises:
        stripe.SignatureVerificationError: Bad or stale signature.
        ValueError: Undecodable body.
    """
    text = body.decode("utf-8") if isinstance(body, bytes) else body
    stripe.WebhookSignature.verify_header(text, signature, secret, stripe.Webhook.DEFAULT_TOLERANCE)
    return json.loads(text)


class StripeProvider:
    name = "stripe"
    supports_query = True
    supports_refund = True
    supports_cancel = False

    def __init__(self, config: Optional[dict] = None, event_parser: Optional[Callable] = None):
        self.config = dict(config or {})
        self.secret_key = self.config.get("secret_key", "")
        self.webhook_secret = self.config.get("webhook_secret", "")
        self.checkout_page = self.config.get("checkout_url", "")
        # Signature check lives in the SDK; tests may inject their own parser.
        self.event_parser = event_parser or construct_event
        self.logger = logging.getLogger("payments.stripe")

    def create_payment_request(self, request: PaymentRequest) -> PaymentLink:
        try:
            intent = stripe.PaymentIntent.create(
                amount=request.amount,
                currency=request.currency.lower(),
                description=request.description,
                metadata={"orderId": request.order_ref, "buyerId": request.buyer_id},
                automatic_payment_methods={"enabled": True},
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            raise PaymentGatewayError(self.name, getattr(e, "user_message", None) or str(e) or "stripe error")

        params = urlencode({"payment_intent": intent["id"], "client_secret": intent["client_secret"]})
        checkout_url = f"{self.checkout_page}?{params}" if self.checkout_page else intent["client_secret"]
        self.logger.info(
            "payment intent created",
            extra={"order_ref": request.order_ref, "correlation_id": intent["id"], "amount": request.amount},
        )
        return PaymentLink(checkout_url=checkout_url, correlation_id=intent["id"], raw={"id": intent["id"]})

    def verify_callback(self, payload: WebhookPayload) -> CallbackResult:
        signature = payload.header("Stripe-Signature")
        if not signature:
            return CallbackResult.invalid("missing signature header")
        try:
            event = self.event_parser(payload.body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            return CallbackResult.invalid("signature mismatch")
        except ValueError:
            return CallbackResult.invalid("undecodable body")

        event_type = _get(event, "type")
        obj = _get(_get(event, "data"), "object") or {}
        if event_type == "charge.refunded":
            return self._refund_result(obj)
        if event_type not in _INTENT_EVENTS:
            # Verified but irrelevant; resolves to no order and is acknowledged.
            return CallbackResult(valid=True)

        metadata = _get(obj, "metadata") or {}
        succeeded = event_type == "payment_intent.succeeded"
        failure = None
        if event_type == "payment_intent.payment_failed":
            error = _get(obj, "last_payment_error") or {}
            failure = _get(error, "message") or "card payment failed"
        elif event_type == "payment_intent.canceled":
            failure = _get(obj, "cancellation_reason") or "payment intent canceled"
        return CallbackResult(
            valid=True,
            correlation_id=_get(obj, "id"),
            succeeded=succeeded,
            amount=as_int(_get(obj, "amount_received") or _get(obj, "amount")),
            failure_reason=failure,
            order_ref=_get(metadata, "orderId"),
            external_transaction_id=_get(obj, "latest_charge") or _get(obj, "id"),
            # The intent stays open after a decline; the buyer can try another card.
            final=event_type != "payment_intent.payment_failed",
        )

    def _refund_result(self, charge) -> CallbackResult:
        refunds = _get(_get(charge, "refunds"), "data") or []
        latest = refunds[0] if refunds else {}
        order_ref = _get(_get(latest, "metadata"), "orderId") or _get(_get(charge, "metadata"), "orderId")
        return CallbackResult(
            valid=True,
            correlation_id=_get(charge, "payment_intent"),
            amount=as_int(_get(charge, "amount_refunded")),
            order_ref=order_ref,
            external_transaction_id=_get(charge, "id"),
            refund=True,
            refund_id=_get(latest, "id"),
        )

    def query_status(self, correlation_id: str, order_ref: Optional[str] = None) -> StatusResult:
        try:
            intent = stripe.PaymentIntent.retrieve(correlation_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise PaymentGatewayError(self.name, str(e) or "stripe error")
        status = intent["status"]
        if status == "succeeded":
            return StatusResult(
                succeeded=True,
                pending=False,
                amount=as_int(_get(intent, "amount_received") or _get(intent, "amount")),
                external_transaction_id=_get(intent, "latest_charge") or _get(intent, "id"),
            )
        if status in _PENDING_STATES:
            return StatusResult(succeeded=False, pending=True)
        return StatusResult(succeeded=False, pending=False, failure_reason=f"payment intent {status}")

    def refund(
        self, correlation_id: str, amount: int, order_ref: Optional[str] = None, reason: Optional[str] = None
    ) -> RefundResult:
        metadata = {"orderId": order_ref or ""}
        if reason:
            metadata["note"] = reason
        try:
            refund = stripe.Refund.create(
                payment_intent=correlation_id,
                amount=amount,
                reason="requested_by_customer",
                metadata=metadata,
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            raise PaymentGatewayError(self.name, getattr(e, "user_message", None) or str(e) or "stripe error")
        self.logger.info(
            "refund created",
            extra={"order_ref": order_ref, "correlation_id": correlation_id, "refund_id": refund["id"]},
        )
        refunded = as_int(_get(refund, "amount")) or amount
        return RefundResult(refund_id=refund["id"], amount=refunded, status=_get(refund, "status") or "pending")

    def acknowledge(self, decision: AckDecision):
        if decision == AckDecision.REJECTED:
            return 400, {"error": "Webhook signature verification failed"}
        if decision == AckDecision.RETRY:
            return 500, {"received": False}
        return 200, {"received": True}
