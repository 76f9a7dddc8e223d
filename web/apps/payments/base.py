"""Normalized payment-provider interface.

Every gateway adapter turns its own wire format into the small set of
dataclasses defined here, so the reconciliation code never branches on the
provider name except to pick an adapter.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Protocol, Tuple

import httpx
from django.conf import settings

from apps.orders.errors import PaymentGatewayError
from gateway.resilience import CircuitOpenError, breaker_for, send_with_retry


def as_int(value) -> Optional[int]:
    """Best-effort integer coercion for gateway fields sent as strings."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class AckDecision(str, Enum):
    """Outcome of a webhook delivery, mapped by each adapter to the literal
    response its gateway expects."""

    REJECTED = "rejected"
    UNMATCHED = "unmatched"
    ALREADY_PROCESSED = "already_processed"
    ACCEPTED = "accepted"
    RETRY = "retry"


@dataclass(frozen=True)
class PaymentRequest:
    amount: int
    currency: str
    order_ref: str
    description: str
    return_url: str
    callback_url: str
    buyer_name: str = ""
    buyer_id: str = ""


@dataclass(frozen=True)
class PaymentLink:
    checkout_url: str
    correlation_id: str
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CallbackResult:
    """A verified and normalized gateway notification.

    ``valid`` is False for a bad signature or an undecodable body; the other
    fields are then meaningless.

    ``final`` is False for a failed attempt the buyer may retry on the same
    payment (a declined card); such a result never cancels an order.
    ``refund`` marks a refund notification; ``amount`` is then the total
    refunded so far.
    """

    valid: bool
    correlation_id: Optional[str] = None
    succeeded: bool = False
    amount: Optional[int] = None
    failure_reason: Optional[str] = None
    order_ref: Optional[str] = None
    external_transaction_id: Optional[str] = None
    final: bool = True
    refund: bool = False
    refund_id: Optional[str] = None

    @classmethod
    def invalid(cls, reason: str) -> "CallbackResult":
        return cls(valid=False, failure_reason=reason)


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    amount: int
    status: str


@dataclass(frozen=True)
class StatusResult:
    succeeded: bool
    pending: bool
    amount: Optional[int] = None
    external_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class WebhookPayload:
    """Raw webhook delivery: the exact body bytes plus request headers.

    Signature checks must run over ``body`` as received.
    """

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    def json(self) -> dict:
        """Decode the body as a JSON object.

        Raises:
            ValueError: If the body is not a JSON object.
        """
        data = json.loads(self.body.decode("utf-8") if isinstance(self.body, bytes) else self.body)
        if not isinstance(data, dict):
            raise ValueError("webhook body is not a JSON object")
        return data

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for k, v in self.headers.items():
            if k.lower() == wanted:
                return v
        return None


class PaymentProvider(Protocol):
    name: str
    supports_query: bool
    supports_refund: bool
    supports_cancel: bool

    def create_payment_request(self, request: PaymentRequest) -> PaymentLink:
        """Raises PaymentGatewayError on network or gateway validation failure."""
        raise NotImplementedError()

    def verify_callback(self, payload: WebhookPayload) -> CallbackResult:
        raise NotImplementedError()

    def query_status(self, correlation_id: str, order_ref: Optional[str] = None) -> StatusResult:
        raise NotImplementedError()

    def acknowledge(self, decision: AckDecision) -> Tuple[int, Optional[dict]]:
        raise NotImplementedError()

    def refund(
        self, correlation_id: str, amount: int, order_ref: Optional[str] = None, reason: Optional[str] = None
    ) -> RefundResult:
        raise NotImplementedError()

    def cancel_payment(self, correlation_id: str, reason: str) -> None:
        raise NotImplementedError()


class HttpPaymentProvider:
    """Shared plumbing for adapters that talk to their gateway over httpx.

    Outbound calls reuse the project's breaker and retry loop; any
    transport failure, open breaker or 5xx is reported as
    ``PaymentGatewayError`` so callers deal with one exception type.
    """

    name = "provider"
    supports_query = True
    supports_refund = False
    supports_cancel = False

    def __init__(self, config: Optional[dict] = None, timeout: Optional[float] = None):
        self.config = dict(config or {})
        self.timeout = timeout or getattr(settings, "HTTP_TIMEOUT_SECS", 10.0)
        self.logger = logging.getLogger(f"payments.{self.name}")
        self._cb = breaker_for(f"payments.{self.name}")

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return send_with_retry(self._cb, method, url, timeout=self.timeout, **kwargs)
        except CircuitOpenError as e:
            raise PaymentGatewayError(self.name, f"gateway circuit {e.state.lower()}")
        except httpx.HTTPStatusError as e:
            raise PaymentGatewayError(self.name, f"gateway answered {e.response.status_code}")
        except httpx.RequestError as e:
            raise PaymentGatewayError(self.name, f"gateway unreachable: {e.__class__.__name__}")

    def _json(self, resp: httpx.Response) -> dict:
        try:
            data = resp.json()
        except ValueError:
            raise PaymentGatewayError(self.name, f"undecodable gateway response ({resp.status_code})")
        if not isinstance(data, dict):
            raise PaymentGatewayError(self.name, "unexpected gateway response shape")
        return data
