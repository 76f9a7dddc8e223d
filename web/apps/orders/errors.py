"""Exceptions raised by the orders domain.

Every error carries a short machine-readable ``code`` and the HTTP status
the API layer should answer with. Views never build error bodies by hand:
``apps.orders.views.orders_exception_handler`` turns any ``OrdersError``
into ``{"detail": code, "message": str(error)}``.
"""


class OrdersError(Exception):
    """Base exception for all order lifecycle and payment errors."""

    code = "ORDERS_ERROR"
    http_status = 400


class ValidationError(OrdersError):
    """Raised when input data is missing or invalid.

    Attributes:
        fields: Mapping of field name to a short reason, one entry per
            offending field.
    """

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, fields: dict[str, str], message: str | None = None):
        self.fields = dict(fields)
        if message is None:
            parts = [f"{name}: {reason}" for name, reason in self.fields.items()]
            message = "Invalid input (" + "; ".join(parts) + ")"
        super().__init__(message)


class NotFoundError(OrdersError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, kind: str, ref: str):
        self.kind = kind
        self.ref = ref
        super().__init__(f"{kind.capitalize()} not found: {ref}")


class AuthorizationError(OrdersError):
    """Raised when the actor does not own the order it tries to act on."""

    code = "FORBIDDEN"
    http_status = 403

    def __init__(self, actor_id: str, role: str, order_id: str | None = None):
        self.actor_id = actor_id
        self.role = role
        self.order_id = order_id
        msg = f"{role} {actor_id} is not allowed to act on this order"
        if order_id:
            msg = f"{role} {actor_id} is not allowed to act on order {order_id}"
        super().__init__(msg)


class InvalidTransitionError(OrdersError):
    """Raised when a status change is not allowed by the state machine."""

    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, from_status: str, to_status: str, role: str):
        self.from_status = from_status
        self.to_status = to_status
        self.role = role
        super().__init__(
            f"Cannot transition from '{from_status}' to '{to_status}' as {role}"
        )


class RevertTargetMismatchError(InvalidTransitionError):
    """Raised when an admin asks to restore a cancelled order to a status
    other than the one recorded in its history."""

    code = "REVERT_TARGET_MISMATCH"

    def __init__(self, requested: str, restorable: str):
        self.requested = requested
        self.restorable = restorable
        OrdersError.__init__(
            self,
            f"Cannot restore order to '{requested}': "
            f"last status before cancellation was '{restorable}'",
        )
        self.from_status = "cancelled"
        self.to_status = requested
        self.role = "admin"


class ProductUnavailableError(OrdersError):
    code = "PRODUCT_UNAVAILABLE"
    http_status = 409

    def __init__(self, product_id: str, reason: str):
        self.product_id = product_id
        self.reason = reason
        super().__init__(f"Product {product_id} is unavailable: {reason}")


class EmptyCartError(OrdersError):
    code = "EMPTY_CART"
    http_status = 400

    def __init__(self, buyer_id: str):
        self.buyer_id = buyer_id
        super().__init__("Cart is empty")


class NoValidItemsError(OrdersError):
    code = "NO_VALID_ITEMS"
    http_status = 400

    def __init__(self, skipped: list):
        self.skipped = list(skipped)
        super().__init__("None of the cart items can be purchased")


class PaymentGatewayError(OrdersError):
    """Raised by payment adapters when the remote gateway fails."""

    code = "PAYMENT_GATEWAY_ERROR"
    http_status = 502

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"[{provider}] {message}")


class SignatureInvalidError(OrdersError):
    """Internal marker for callbacks whose signature does not verify.

    Never surfaced to a gateway as anything but an opaque rejection.
    """

    code = "SIGNATURE_INVALID"
    http_status = 400


class ConcurrentUpdateError(OrdersError):
    """Raised by the order store when a row changed under a write."""

    code = "CONCURRENT_UPDATE"
    http_status = 409

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} was modified concurrently")


class AuthError(OrdersError):
    """Raised by token verifiers when a bearer token cannot be resolved."""

    code = "UNAUTHENTICATED"
    http_status = 401


class RateLimitedError(OrdersError):
    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"Too many requests, retry in {retry_after}s")
