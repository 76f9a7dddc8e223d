"""Service provider helpers for wiring the orders components with ports.

Views and management commands obtain their collaborators here. When
``settings.USE_HTTP_ADAPTERS`` is truthy the product and cart ports are
the HTTP clients; otherwise the process-wide in-memory stubs returned by
``local_catalog()`` and ``local_cart()`` are used, which is what tests and
local development seed directly.
"""

from django.conf import settings

from apps.payments.registry import get_provider

from .adapters import CartStub, ProductCatalogStub
from .checkout import CheckoutOrchestrator
from .domain import CartPort, ProductGatePort
from .http_adapters import HttpCartClient, HttpProductClient
from .lifecycle import OrderLifecycleEngine
from .ratelimit import CacheRateLimiter
from .reconciliation import ReconciliationHandler
from .repository import OrderRepository

_catalog = ProductCatalogStub()
_cart = CartStub()


def local_catalog() -> ProductCatalogStub:
    return _catalog


def local_cart() -> CartStub:
    return _cart


def reset_local_stubs() -> None:
    global _catalog, _cart
    _catalog = ProductCatalogStub()
    _cart = CartStub()


def _use_http() -> bool:
    return bool(getattr(settings, "USE_HTTP_ADAPTERS", True))


def get_product_gate() -> ProductGatePort:
    return HttpProductClient() if _use_http() else _catalog


def get_cart() -> CartPort:
    return HttpCartClient() if _use_http() else _cart


def get_engine() -> OrderLifecycleEngine:
    return OrderLifecycleEngine(OrderRepository())


def get_checkout() -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        engine=get_engine(),
        products=get_product_gate(),
        cart=get_cart(),
        shipping_fee=getattr(settings, "SHIPPING_FEE", 5000),
        currency=getattr(settings, "PAYMENT_CURRENCY", "VND"),
    )


def get_reconciliation() -> ReconciliationHandler:
    return ReconciliationHandler(
        engine=get_engine(),
        products=get_product_gate(),
        providers=get_provider,
        shipping_fee=getattr(settings, "SHIPPING_FEE", 5000),
        currency=getattr(settings, "PAYMENT_CURRENCY", "VND"),
        query_timeout=getattr(settings, "PAYMENT_QUERY_TIMEOUT_SECS", 3.0),
    )


def get_verify_limiter() -> CacheRateLimiter:
    max_hits, window_secs = getattr(settings, "VERIFY_PAYMENT_RATE", (10, 60))
    return CacheRateLimiter(max_hits=max_hits, window_secs=window_secs, prefix="verify-payment")
