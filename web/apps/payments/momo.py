"""MoMo wallet adapter (API v2, ``captureWallet`` redirect flow).

Each attempt gets a fresh request id, sent as both MoMo ``orderId`` and
``requestId`` (MoMo refuses a reused ``orderId``); it is the correlation id.
The order reference travels base64-encoded in ``extraData``. Every request
and IPN is signed with HMAC-SHA256 over the sorted ``k=v`` field string.
"""

import base64
import json
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

IPN_FIELDS = (
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)

# Result codes meaning "not finished yet" on the query endpoint.
PENDING_CODES = frozenset({1000, 1006, 7000, 7002, 9000})


def encode_extra(order_ref: str) -> str:
    raw = json.dumps({"orderRef": order_ref}, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_extra(value) -> Optional[str]:
    if not value:
        return None
    try:
        data = json.loads(base64.b64decode(value, validate=True).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return data.get("orderRef") if isinstance(data, dict) else None


class MomoProvider(HttpPaymentProvider):
    name = "momo"

    def __init__(self, config: Optional[dict] = None, signer: Optional[Signer] = None, timeout=None, clock=None):
        super().__init__(config, timeout)
        self.partner_code = self.config.get("partner_code", "MOMO")
        self.access_key = self.config.get("access_key", "")
        self.endpoint = self.config.get("endpoint", "https://test-payment.momo.vn/v2/gateway/api").rstrip("/")
        self.request_type = self.config.get("request_type", "captureWallet")
        self.signer = signer or HmacSigner(self.config.get("secret_key", ""))
        self._clock = clock or time.time

    def _request_id(self) -> str:
        return f"{self.partner_code}{int(self._clock() * 1000)}"

    def create_payment_request(self, request: PaymentRequest) -> PaymentLink:
        request_id = self._request_id()
        fields = {
            "accessKey": self.access_key,
            "amount": request.amount,
            "extraData": encode_extra(request.order_ref),
            "ipnUrl": request.callback_url,
            "orderId": request_id,
            "orderInfo": request.description,
            "partnerCode": self.partner_code,
            "redirectUrl": request.return_url,
            "requestId": request_id,
            "requestType": self.request_type,
        }
        body = dict(fields, amount=str(request.amount), signature=self.signer.sign(canonical(fields)), lang="en")

        resp = self._send("POST", f"{self.endpoint}/create", json=body)
        data = self._json(resp)
        if as_int(data.get("resultCode")) != 0 or not data.get("payUrl"):
            raise PaymentGatewayError(
                self.name, f"{data.get('message') or 'payment request refused'} (code {data.get('resultCode')})"
            )
        self.logger.info(
            "payment link created",
            extra={"order_ref": request.order_ref, "correlation_id": request_id, "amount": request.amount},
        )
        return PaymentLink(checkout_url=data["payUrl"], correlation_id=request_id, raw=data)

    def verify_callback(self, payload: WebhookPayload) -> CallbackResult:
        try:
            data = payload.json()
        except ValueError:
            return CallbackResult.invalid("undecodable body")

        fields = {k: data.get(k) for k in IPN_FIELDS}
        fields["accessKey"] = self.access_key
        if not self.signer.verify(canonical(fields), data.get("signature")):
            return CallbackResult.invalid("signature mismatch")

        result_code = as_int(data.get("resultCode"))
        succeeded = result_code == 0
        trans_id = data.get("transId")
        return CallbackResult(
            valid=True,
            correlation_id=str(data.get("requestId") or "") or None,
            succeeded=succeeded,
            amount=as_int(data.get("amount")),
            failure_reason=None if succeeded else f"{data.get('message') or 'payment failed'} (code {result_code})",
            order_ref=decode_extra(data.get("extraData")),
            external_transaction_id=str(trans_id) if trans_id not in (None, "") else None,
        )

    def query_status(self, correlation_id: str, order_ref: Optional[str] = None) -> StatusResult:
        fields = {
            "accessKey": self.access_key,
            "orderId": correlation_id,
            "partnerCode": self.partner_code,
            "requestId": correlation_id,
        }
        body = dict(fields, signature=self.signer.sign(canonical(fields)), lang="en")
        data = self._json(self._send("POST", f"{self.endpoint}/query", json=body))

        code = as_int(data.get("resultCode"))
        if code == 0:
            trans_id = data.get("transId")
            return StatusResult(
                succeeded=True,
                pending=False,
                amount=as_int(data.get("amount")),
                external_transaction_id=str(trans_id) if trans_id not in (None, "") else None,
            )
        if code in PENDING_CODES:
            return StatusResult(succeeded=False, pending=True)
        return StatusResult(
            succeeded=False, pending=False, failure_reason=f"{data.get('message') or 'payment failed'} (code {code})"
        )

    def acknowledge(self, decision: AckDecision):
        if decision == AckDecision.REJECTED:
            return 400, {"error": "Invalid signature", "message": "IPN signature verification failed"}
        if decision == AckDecision.RETRY:
            return 500, {"error": "Internal server error"}
        return 204, None
