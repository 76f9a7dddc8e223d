"""Lookup of payment adapters by ``paymentMethod``.

Adapters are built lazily from ``settings.PAYMENT_PROVIDERS[name]`` and
cached per process. ``override`` swaps in another implementation (used by
tests and local sandboxes).
"""

import threading
from typing import Dict

from django.conf import settings

from apps.orders.domain import PaymentMethod
from apps.orders.errors import ValidationError

from .base import PaymentProvider
from .momo import MomoProvider
from .payos import PayOSProvider
from .stripe_provider import StripeProvider
from .zalopay import ZaloPayProvider

ADAPTERS = {
    PaymentMethod.MOMO: MomoProvider,
    PaymentMethod.PAYOS: PayOSProvider,
    PaymentMethod.STRIPE: StripeProvider,
    PaymentMethod.ZALOPAY: ZaloPayProvider,
}


def parse_method(name) -> PaymentMethod:
    try:
        return PaymentMethod(str(name).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValidationError({"paymentMethod": f"must be one of {allowed}"})


class ProviderRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._instances: Dict[PaymentMethod, PaymentProvider] = {}

    def get(self, name) -> PaymentProvider:
        """Return the adapter for ``name``.

        Raises:
            ValidationError: If ``name`` is not a supported payment method.
        """
        method = parse_method(name)
        with self._lock:
            provider = self._instances.get(method)
            if provider is None:
                config = getattr(settings, "PAYMENT_PROVIDERS", {}).get(method.value, {})
                provider = ADAPTERS[method](config)
                self._instances[method] = provider
            return provider

    def override(self, name, provider: PaymentProvider) -> None:
        with self._lock:
            self._instances[parse_method(name)] = provider

    def reset(self) -> None:
        with self._lock:
            self._instances.clear()


registry = ProviderRegistry()


def get_provider(name) -> PaymentProvider:
    return registry.get(name)
