"""HTTP adapter clients for the product and cart collaborators.

Both clients go through ``gateway.resilience.send_with_retry`` so they
share the circuit breaker, retry and ``X-Request-ID`` behavior used by
every outbound call in the project. Each downstream service has its own
breaker.
"""

from typing import List, Optional
from urllib.parse import quote

from django.conf import settings

from gateway.resilience import breaker_for, send_with_retry

from .domain import CartLine, CartPort, Product, ProductGatePort, ProductStatus


def _product_from_json(data: dict) -> Product:
    return Product(
        id=str(data["id"]),
        name=data.get("name", ""),
        price=int(data.get("price", 0)),
        seller_id=str(data.get("seller_id") or data.get("sellerId") or ""),
        status=ProductStatus(data.get("status", ProductStatus.AVAILABLE.value)),
        quantity=int(data.get("quantity", 0)),
    )


# ---------------- Products Adapter ---------------- #

class HttpProductClient(ProductGatePort):
    """HTTP client for the products service with retry and circuit breaker."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.PRODUCTS_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self._cb = breaker_for("products")

    def get(self, product_id: str) -> Optional[Product]:
        """Fetch a product.

        Returns:
            The product, or None when the service answers 404.

        Raises:
            httpx.RequestError: For network/transport errors after retries.
            httpx.HTTPStatusError: For any other non-2xx response.
        """
        resp = send_with_retry(
            self._cb, "GET", f"{self.base_url}/products/{quote(str(product_id), safe='')}", timeout=self.timeout
        )
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return _product_from_json(resp.json())

    def decrement_quantity_and_maybe_mark_sold(
        self, product_id: str, amount: int, idempotency_key: str
    ) -> Optional[Product]:
        """Decrement stock once per ``idempotency_key``.

        The key is also sent as ``Idempotency-Key`` so the service can
        de-duplicate retried requests.
        """
        resp = send_with_retry(
            self._cb,
            "POST",
            f"{self.base_url}/products/{quote(str(product_id), safe='')}/decrement",
            timeout=self.timeout,
            json={"amount": amount, "idempotency_key": idempotency_key},
            headers={"Idempotency-Key": idempotency_key},
        )
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return _product_from_json(resp.json())


# ---------------- Cart Adapter ---------------- #

class HttpCartClient(CartPort):
    """Read-only HTTP client for the cart service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.CART_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self._cb = breaker_for("cart")

    def get(self, buyer_id: str) -> List[CartLine]:
        resp = send_with_retry(
            self._cb, "GET", f"{self.base_url}/carts/{quote(str(buyer_id), safe='')}", timeout=self.timeout
        )
        if resp.status_code == 404:
            return []
        resp.raise_for_status()
        items = resp.json().get("items") or []
        return [
            CartLine(product_id=str(i.get("productId") or i.get("product_id")), quantity=int(i.get("quantity", 0)))
            for i in items
        ]
