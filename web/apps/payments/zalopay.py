"""ZaloPay QR wallet adapter (v2 API).

The correlation id is ZaloPay's ``app_trans_id`` (``YYMMDD_xxxxxx`` in
Vietnam time). The order reference rides along in ``embed_data`` and comes
back inside the signed callback ``data`` string. Outbound requests are
MAC'd with ``key1``; callbacks are MAC'd by ZaloPay with ``key2``.
"""

import json
import random
import time
from datetime import datetime, timedelta, timezone
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
from .signatures import HmacSigner, Signer, pipe_joined

VN_TZ = timezone(timedelta(hours=7))


class ZaloPayProvider(HttpPaymentProvider):
    name = "zalopay"

    def __init__(
        self,
        config: Optional[dict] = None,
        signer: Optional[Signer] = None,
        callback_verifier: Optional[Signer] = None,
        timeout=None,
        clock=None,
    ):
        super().__init__(config, timeout)
        self.app_id = str(self.config.get("app_id", ""))
        self.endpoint = self.config.get("endpoint", "https://sb-openapi.zalopay.vn/v2").rstrip("/")
        self.key1 = self.config.get("key1", "")
        self.signer = signer or HmacSigner(self.key1)
        self.callback_verifier = callback_verifier or HmacSigner(self.config.get("key2", ""))
        self._clock = clock or time.time

    def _app_trans_id(self) -> str:
        day = datetime.fromtimestamp(self._clock(), VN_TZ).strftime("%y%m%d")
        return f"{day}_{random.randint(0, 999999):06d}"

    def create_payment_request(self, request: PaymentRequest) -> PaymentLink:
        app_trans_id = self._app_trans_id()
        app_user = request.buyer_id or "guest"
        app_time = int(self._clock() * 1000)
        item = json.dumps(
            [{"orderRef": request.order_ref, "name": request.description, "price": request.amount, "quantity": 1}],
            separators=(",", ":"),
        )
        embed_data = json.dumps(
            {"redirecturl": request.return_url, "orderId": request.order_ref}, separators=(",", ":")
        )
        form = {
            "app_id": self.app_id,
            "app_trans_id": app_trans_id,
            "app_user": app_user,
            "app_time": app_time,
            "item": item,
            "embed_data": embed_data,
            "amount": request.amount,
            "description": request.description or f"Payment for order {request.order_ref}",
            "bank_code": "",
            "callback_url": request.callback_url,
        }
        form["mac"] = self.signer.sign(
            pipe_joined(self.app_id, app_trans_id, app_user, request.amount, app_time, embed_data, item)
        )
        data = self._json(self._send("POST", f"{self.endpoint}/create", data=form))
        if as_int(data.get("return_code")) != 1 or not data.get("order_url"):
            raise PaymentGatewayError(
                self.name,
                f"{data.get('return_message') or 'order refused'} (code {data.get('return_code')})",
            )
        self.logger.info(
            "payment link created",
            extra={"order_ref": request.order_ref, "correlation_id": app_trans_id, "amount": request.amount},
        )
        return PaymentLink(checkout_url=data["order_url"], correlation_id=app_trans_id, raw=data)

    def verify_callback(self, payload: WebhookPayload) -> CallbackResult:
        try:
            body = payload.json()
        except ValueError:
            return CallbackResult.invalid("undecodable body")
        data_str = body.get("data")
        if not isinstance(data_str, str):
            return CallbackResult.invalid("missing data")
        if not self.callback_verifier.verify(data_str, body.get("mac")):
            return CallbackResult.invalid("mac not equal")
        try:
            data = json.loads(data_str)
            embed = data.get("embed_data") or "{}"
            embed = json.loads(embed) if isinstance(embed, str) else embed
        except (ValueError, AttributeError):
            return CallbackResult.invalid("undecodable data")

        succeeded = as_int(body.get("type", 1)) == 1
        zp_trans_id = data.get("zp_trans_id")
        return CallbackResult(
            valid=True,
            correlation_id=data.get("app_trans_id"),
            succeeded=succeeded,
            amount=as_int(data.get("amount")),
            failure_reason=None if succeeded else "payment not completed",
            order_ref=embed.get("orderId") if isinstance(embed, dict) else None,
            external_transaction_id=str(zp_trans_id) if zp_trans_id not in (None, "") else None,
        )

    def query_status(self, correlation_id: str, order_ref: Optional[str] = None) -> StatusResult:
        form = {
            "app_id": self.app_id,
            "app_trans_id": correlation_id,
            "mac": self.signer.sign(pipe_joined(self.app_id, correlation_id, self.key1)),
        }
        data = self._json(self._send("POST", f"{self.endpoint}/query", data=form))
        code = as_int(data.get("return_code"))
        if code == 1:
            zp_trans_id = data.get("zp_trans_id")
            return StatusResult(
                succeeded=True,
                pending=False,
                amount=as_int(data.get("amount")),
                external_transaction_id=str(zp_trans_id) if zp_trans_id not in (None, "") else None,
            )
        if code == 3 or data.get("is_processing"):
            return StatusResult(succeeded=False, pending=True)
        return StatusResult(
            succeeded=False,
            pending=False,
            failure_reason=data.get("return_message") or data.get("sub_return_message") or "payment failed",
        )

    def acknowledge(self, decision: AckDecision):
        if decision == AckDecision.REJECTED:
            return 200, {"return_code": -1, "return_message": "mac not equal"}
        if decision == AckDecision.RETRY:
            return 200, {"return_code": 0, "return_message": "retry"}
        if decision == AckDecision.ALREADY_PROCESSED:
            return 200, {"return_code": 2, "return_message": "already processed"}
        if decision == AckDecision.UNMATCHED:
            return 200, {"return_code": 1, "return_message": "order not found"}
        return 200, {"return_code": 1, "return_message": "success"}
