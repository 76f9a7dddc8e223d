import pytest
from django.core.cache import cache

from apps.orders import providers
from apps.orders.adapters import CartStub, InMemoryOrderStore, ProductCatalogStub
from apps.orders.checkout import CheckoutOrchestrator
from apps.orders.domain import Product
from apps.orders.lifecycle import OrderLifecycleEngine
from apps.payments.registry import registry
from gateway.resilience import reset_breakers

ADDRESS = {"fullName": "Nguyen Van A", "address": "12 Le Loi, District 1", "phone": "0901234567", "city": "HCMC"}


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.AUTH_TOKEN_VERIFIER = "gateway.auth.StubTokenVerifier"
    settings.SHIPPING_FEE = 5000
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    providers.reset_local_stubs()
    registry.reset()
    reset_breakers()
    cache.clear()
    yield
    registry.reset()


@pytest.fixture
def address():
    return dict(ADDRESS)


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def engine(store):
    return OrderLifecycleEngine(store)


@pytest.fixture
def catalog():
    return ProductCatalogStub(
        [
            Product(id="p-lamp", name="Desk lamp", price=100000, seller_id="seller-1", quantity=5),
            Product(id="p-chair", name="Chair", price=250000, seller_id="seller-2", quantity=1),
        ]
    )


@pytest.fixture
def cart():
    return CartStub()


@pytest.fixture
def checkout(engine, catalog, cart):
    return CheckoutOrchestrator(engine, catalog, cart, shipping_fee=5000, currency="VND")


@pytest.fixture
def auth():
    """Django test client kwargs authenticating as ``uid`` through the stub verifier."""

    def _auth(uid: str, role: str = "buyer") -> dict:
        return {"HTTP_AUTHORIZATION": f"Bearer {uid}:{role}"}

    return _auth
