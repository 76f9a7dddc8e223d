"""PayOS hosted checkout adapter.

PayOS identifies a payment by a numeric ``orderCode`` chosen by the
merchant; it is the correlation id and the only link between a webhook and
our orders. Requests and webhook ``data`` are signed with the checksum key
over the sorted ``k=v`` string.
"""

import time
from typing import Optional

from apps.orders.errors import PaymentGatewayError

from .base import (
    AckDecision,
    CallbackResult,
    HttpPaymentProvider,
    PaymentLink,
    PaymentRequest,
    StatusResult,
    WebhookPayload,
    as_int,
)
from .signatures import HmacSigner, Signer, canonical

MAX_DESCRIPTION = 25
_PENDING_STATES = frozenset({"PENDING", "PROCESSING", "UNDERPAID"})


class PayOSProvider(HttpPaymentProvider):
    name = "payos"
    supports_cancel = True

    def __init__(self, config: Optional[dict] = None, signer: Optional[Signer] = None, timeout=None, clock=None):
        super().__init__(config, timeout)
        self.client_id = self.config.get("client_id", "")
        self.api_key = self.config.get("api_key", "")
        self.endpoint = self.config.get("endpoint", "https://api-merchant.payos.vn").rstrip("/")
        self.signer = signer or HmacSigner(self.config.get("checksum_key", ""))
        self._clock = clock or time.time

    def _headers(self) -> dict:
        return {"x-client-id": self.client_id, "x-api-key": self.api_key}

    def _order_code(self) -> int:
        # Last 9 digits of the millisecond clock keep the code inside int32.
        return int(str(int(self._clock() * 1000))[-9:])

    def create_payment_request(self, request: PaymentRequest) -> PaymentLink:
        order_code = self._order_code()
        description = (request.description or f"Order {request.order_ref}")[:MAX_DESCRIPTION]
        signed = {
            "amount": request.amount,
            "cancelUrl": request.return_url,
            "description": description,
            "orderCode": order_code,
            "returnUrl": request.return_url,
        }
        body = dict(
            signed,
            buyerName=request.buyer_name or "Customer",
            items=[{"name": description, "quantity": 1, "price": request.amount}],
            signature=self.signer.sign(canonical(signed)),
        )
        data = self._json(self._send("POST", f"{self.endpoint}/v2/payment-requests", json=body, headers=self._headers()))
        link = data.get("data") or {}
        if data.get("code") != "00" or not link.get("checkoutUrl"):
            raise PaymentGatewayError(self.name, f"{data.get('desc') or 'payment link refused'} (code {data.get('code')})")
        self.logger.info(
            "payment link created",
            extra={"order_ref": request.order_ref, "correlation_id": order_code, "amount": request.amount},
        )
        return PaymentLink(checkout_url=link["checkoutUrl"], correlation_id=str(order_code), raw=link)

    def verify_callback(self, payload: WebhookPayload) -> CallbackResult:
        try:
            body = payload.json()
        except ValueError:
            return CallbackResult.invalid("undecodable body")
        data = body.get("data")
        if not isinstance(data, dict):
            return CallbackResult.invalid("missing data")
        if not self.signer.verify(canonical(data), body.get("signature")):
            return CallbackResult.invalid("signature mismatch")

        code = data.get("code", body.get("code"))
        succeeded = code == "00"
        return CallbackResult(
            valid=True,
            correlation_id=str(data.get("orderCode")) if data.get("orderCode") is not None else None,
            succeeded=succeeded,
            amount=as_int(data.get("amount")),
            failure_reason=None if succeeded else (data.get("desc") or body.get("desc") or f"code {code}"),
            external_transaction_id=data.get("reference") or data.get("paymentLinkId"),
        )

    def query_status(self, correlation_id: str, order_ref: Optional[str] = None) -> StatusResult:
        resp = self._send("GET", f"{self.endpoint}/v2/payment-requests/{correlation_id}", headers=self._headers())
        data = self._json(resp)
        info = data.get("data") or {}
        if data.get("code") != "00":
            raise PaymentGatewayError(self.name, f"{data.get('desc') or 'status query refused'} (code {data.get('code')})")
        state = str(info.get("status", "")).upper()
        if state == "PAID":
            txs = info.get("transactions") or []
            reference = txs[0].get("reference") if txs else None
            return StatusResult(
                succeeded=True,
                pending=False,
                amount=as_int(info.get("amountPaid", info.get("amount"))),
                external_transaction_id=reference or info.get("id"),
            )
        if state in _PENDING_STATES:
            return StatusResult(succeeded=False, pending=True)
        return StatusResult(
            succeeded=False, pending=False, failure_reason=info.get("cancellationReason") or f"payment {state.lower()}"
        )

    def cancel_payment(self, correlation_id: str, reason: str) -> None:
        url = f"{self.endpoint}/v2/payment-requests/{correlation_id}/cancel"
        data = self._json(self._send("POST", url, json={"cancellationReason": reason}, headers=self._headers()))
        if data.get("code") != "00":
            raise PaymentGatewayError(self.name, f"{data.get('desc') or 'cancel refused'} (code {data.get('code')})")
        self.logger.info("payment link cancelled", extra={"correlation_id": correlation_id})

    def acknowledge(self, decision: AckDecision):
        if decision == AckDecision.REJECTED:
            return 400, {"success": False, "message": "Invalid webhook signature"}
        if decision == AckDecision.RETRY:
            return 500, {"success": False}
        return 200, {"success": True}
