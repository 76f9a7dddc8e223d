"""Outbound HTTP resilience helpers shared by every downstream client.

This module holds the pieces the product, cart, auth and payment-provider
clients have in common:

- Request correlation: ``request_headers`` propagates ``X-Request-ID`` from
    the ContextVar set by the gateway middleware.
- ``CircuitBreaker`` per downstream service to avoid hammering unhealthy
    dependencies, with HALF_OPEN probing after a timeout.
- ``send_with_retry``: a retry loop with exponential backoff for transport
    errors and 5xx responses that reports outcomes to a breaker.
"""

import threading
import time
from typing import Dict, Optional

import httpx
from django.conf import settings

from .middleware import REQUEST_ID_CTX


class CircuitOpenError(RuntimeError):
    """Raised instead of calling a dependency whose breaker is open."""

    def __init__(self, name: str, state: str):
        super().__init__(f"CIRCUIT_{state}")
        self.name = name
        self.state = state


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Raises:
            CircuitOpenError: If the circuit is OPEN or a HALF_OPEN probe is
                already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpenError(self.name, "OPEN")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise CircuitOpenError(self.name, "HALF_OPEN_BUSY")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (
                self._failures >= self.fail_threshold and self._state != "OPEN"
            ):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        """Release any HALF_OPEN probe flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False

    def reset(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._opened_at = 0.0
            self._half_open_probe_in_flight = False


_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def breaker_for(name: str) -> CircuitBreaker:
    """Return the process-wide breaker for a downstream service."""
    with _breakers_lock:
        cb = _breakers.get(name)
        if cb is None:
            cb = CircuitBreaker(
                name,
                getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
                getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
            )
            _breakers[name] = cb
        return cb


def reset_breakers():
    with _breakers_lock:
        for cb in _breakers.values():
            cb.reset()


def breaker_states() -> Dict[str, str]:
    with _breakers_lock:
        breakers = list(_breakers.values())
    return {cb.name: cb.state for cb in breakers}


# ---------------- Helpers ---------------- #

def request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def send_with_retry(
    breaker: CircuitBreaker,
    method: str,
    url: str,
    *,
    timeout: float,
    json=None,
    data=None,
    params=None,
    headers: Optional[dict] = None,
) -> httpx.Response:
    """Send one request through ``breaker`` with bounded retries.

    Any response below 500 counts as a success for the breaker and is
    returned to the caller for business mapping (a 404 or 409 is an answer,
    not an outage).

    Raises:
        CircuitOpenError: If the breaker refuses the call.
        httpx.RequestError: For transport errors after retries.
        httpx.HTTPStatusError: For 5xx responses after retries.
    """
    max_retries, backoff = retry_policy()
    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
    tries = 0

    state = breaker.before_call()
    hdrs = request_headers({"X-Circuit-State": state, "X-Retry-Count": "0"})
    if headers:
        hdrs.update(headers)

    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, json=json, data=data, params=params, headers=hdrs)
                    if not should_retry(resp, None):
                        breaker.on_success()
                        return resp
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                hdrs["X-Retry-Count"] = str(tries)

                if tries >= max_retries:
                    breaker.on_failure()
                    if exc:
                        raise exc
                    resp.raise_for_status()

                sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                if sleep_s > 0:
                    time.sleep(min(sleep_s, cap))
    finally:
        breaker.on_finish()
