"""HMAC signing helpers used by the gateway adapters.

Gateways sign either a canonical ``k=v&k=v`` string over sorted keys
(MoMo, PayOS) or a ``|``-joined field list (ZaloPay). Adapters receive a
signer at construction time so tests can inject a fake one.
"""

import hashlib
import hmac
import json
from typing import Iterable, Mapping, Optional, Protocol


class Signer(Protocol):
    def sign(self, message: str) -> str:
        raise NotImplementedError()

    def verify(self, message: str, signature: Optional[str]) -> bool:
        raise NotImplementedError()


def _stringify(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def canonical(fields: Mapping, keys: Optional[Iterable[str]] = None) -> str:
    """Render ``fields`` as ``k=v&k=v`` with keys in sorted order.

    Args:
        fields: Values to sign; ``None`` renders as an empty string.
        keys: Restrict to these keys (missing ones render empty).
    """
    names = sorted(keys) if keys is not None else sorted(fields)
    return "&".join(f"{k}={_stringify(fields.get(k))}" for k in names)


def pipe_joined(*values) -> str:
    return "|".join(_stringify(v) for v in values)


class HmacSigner:
    """Hex HMAC-SHA256 signer with constant-time verification."""

    def __init__(self, key: str, digestmod=hashlib.sha256):
        self._key = (key or "").encode("utf-8")
        self._digestmod = digestmod

    def sign(self, message: str) -> str:
        return hmac.new(self._key, message.encode("utf-8"), self._digestmod).hexdigest()

    def verify(self, message: str, signature: Optional[str]) -> bool:
        if not signature or not isinstance(signature, str):
            return False
        return hmac.compare_digest(self.sign(message), signature.lower())
