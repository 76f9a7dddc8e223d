"""Pydantic schemas for the orders API.

Request schemas validate the JSON bodies accepted by the views; response
schemas render domain objects in the camelCase shape the clients use.
Shipping addresses are passed through as mappings and validated by the
domain (``ShippingAddress.from_mapping``) so every missing field is
reported at once.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .domain import OrderStatus, PaymentStatus, ShippingStatus
from .errors import ValidationError


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def parse(schema: type[BaseModel], data: Any):
    """Validate ``data`` against ``schema``.

    Raises:
        ValidationError: With one entry per offending field, keyed by the
            camelCase field path.
    """
    try:
        return schema.model_validate(data if data is not None else {})
    except PydanticValidationError as e:
        fields = {}
        for err in e.errors():
            path = ".".join(str(p) for p in err["loc"]) or "body"
            fields[path] = "required" if err["type"] == "missing" else err["msg"]
        raise ValidationError(fields)


# ---- requests ----
class CheckoutIn(CamelModel):
    """Body of ``POST /orders/checkout``."""

    product_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)
    shipping_address: dict
    payment_method: str = Field(min_length=1)

    @field_validator("payment_method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().lower()


class CartCheckoutIn(CamelModel):
    shipping_address: dict
    payment_method: str = Field(min_length=1)

    @field_validator("payment_method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().lower()


class PayIn(CamelModel):
    payment_method: str = Field(min_length=1)

    @field_validator("payment_method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().lower()


class CancelIn(CamelModel):
    reason: str = Field(min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class AdminStatusIn(CamelModel):
    """Body of ``PUT /orders/{id}/admin/status``.

    ``status`` is the target; when the order is cancelled the request is a
    restore and ``status`` only cross-checks the historical one.
    """

    status: OrderStatus
    notes: Optional[str] = Field(default=None, max_length=500)
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundIn(CamelModel):
    """Body of ``PUT /orders/{id}/admin/refund``; ``amount`` defaults to the paid amount."""

    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class ShippingAddressIn(CamelModel):
    shipping_address: dict


# ---- responses ----
class ShippingAddressOut(CamelModel):
    full_name: str
    address: str
    phone: str
    city: str = ""
    postal_code: str = ""


class StatusChangeOut(CamelModel):
    status: OrderStatus
    changed_by: str
    changed_at: Optional[datetime] = None
    notes: Optional[str] = None


class PaymentDetailsOut(CamelModel):
    provider: str
    external_transaction_id: Optional[str] = None
    paid_amount: Optional[int] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failed_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    refunded_amount: Optional[int] = None
    refunded_at: Optional[datetime] = None


class OrderOut(CamelModel):
    id: str
    product_id: str
    product_name: str = ""
    product_unit_price: int = 0
    seller_id: str
    buyer_id: str
    quantity: int
    total_amount: int
    shipping_address: ShippingAddressOut
    order_status: OrderStatus
    payment_status: PaymentStatus
    shipping_status: ShippingStatus
    transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    payment_details: Optional[PaymentDetailsOut] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    status_history: list[StatusChangeOut]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    seller_confirmed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ReconciliationIssueOut(CamelModel):
    id: int
    order_id: Optional[str] = None
    provider: Optional[str] = None
    kind: str
    detail: str
    payload: dict = Field(default_factory=dict)
    resolved: bool = False
    created_at: Optional[datetime] = None

    @field_validator("order_id", mode="before")
    @classmethod
    def uuid_to_str(cls, v):
        return str(v) if v is not None else None


def order_json(order) -> dict:
    """Render a domain ``Order`` as a JSON-ready camelCase dict."""
    return OrderOut.model_validate(order).model_dump(mode="json", by_alias=True)
