"""Idempotency utilities for safely handling duplicate checkout requests.

This module stores and retrieves idempotency keys so a buyer retrying
``POST /orders/checkout`` (double click, flaky network) gets the stored
response instead of a second order. Keys are scoped per caller, so two
buyers can never collide on the same client-chosen key.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .errors import OrdersError
from .models import IdempotencyKey


class IdempotencyConflictError(OrdersError):
    """Raised when a key is reused with a different payload."""

    code = "IDEMPOTENCY_CONFLICT"
    http_status = 409

    def __init__(self, key: str):
        self.key = key
        super().__init__("Idempotency-Key was already used with a different request body")


class IdempotencyInProgressError(OrdersError):
    """Raised when the first request for a key has not finished yet."""

    code = "IDEMPOTENCY_IN_PROGRESS"
    http_status = 409

    def __init__(self, key: str):
        self.key = key
        super().__init__("A request with this Idempotency-Key is still being processed")


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def scoped_key(owner: str, key: str) -> str:
    return f"{owner}:{key}"[:200]


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Get-or-create an idempotency record for the given key and payload.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``. ``existing`` is
        True when a finished response is stored under the key.

    Raises:
        IdempotencyConflictError: The key exists with a different payload.
        IdempotencyInProgressError: The key exists but has no stored
            response yet.
    """
    h = _hash(payload)

    try:
        # Nested savepoint: if IntegrityError occurs, only this block is rolled back.
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflictError(key)
        if not rec.response_status:
            raise IdempotencyInProgressError(key)
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_ref=None):
    """Persist the final response for an idempotent request."""
    rec.response_status = status_code
    rec.response_body = body
    if order_ref is not None:
        rec.order_ref = str(order_ref)
    rec.save(update_fields=["response_status", "response_body", "order_ref"])


def release(rec: IdempotencyKey):
    """Forget a key whose request failed before producing a response."""
    IdempotencyKey.objects.filter(key=rec.key, response_status=0).delete()
