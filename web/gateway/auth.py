"""Bearer-token authentication for the API.

Token verification itself is an external capability: the class named by
``settings.AUTH_TOKEN_VERIFIER`` must provide ``resolve(token)`` returning
a ``Principal`` or raising ``AuthError``. Two verifiers ship here:

- ``HttpTokenVerifier`` asks the auth service at ``AUTH_BASE_URL`` (with
    the shared breaker and retry policy).
- ``StubTokenVerifier`` accepts ``<uid>:<role>`` tokens, for local
    development and tests.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string
from rest_framework import authentication, exceptions

from apps.orders.errors import AuthError

from .middleware import PRINCIPAL_CTX
from .resilience import CircuitOpenError, breaker_for, send_with_retry

logger = logging.getLogger("gateway.auth")

ROLES = ("buyer", "seller", "admin")


@dataclass(frozen=True)
class Principal:
    """Authenticated caller. Quacks enough like a Django user for DRF."""

    uid: str
    role: str = "buyer"
    is_admin: bool = False

    is_authenticated = True
    is_anonymous = False

    @property
    def pk(self):
        return self.uid


class StubTokenVerifier:
    def resolve(self, token: str) -> Principal:
        uid, _, role = token.partition(":")
        role = (role or "buyer").lower()
        if not uid or role not in ROLES:
            raise AuthError("Invalid token")
        return Principal(uid=uid, role=role, is_admin=role == "admin")


class HttpTokenVerifier:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.AUTH_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self._cb = breaker_for("auth")

    def resolve(self, token: str) -> Principal:
        try:
            resp = send_with_retry(
                self._cb,
                "GET",
                f"{self.base_url}/verify",
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {token}"},
            )
        except (CircuitOpenError, httpx.HTTPError) as e:
            logger.error("token verification unavailable", extra={"error": str(e)})
            raise exceptions.AuthenticationFailed("Authentication service unavailable")
        if resp.status_code in (401, 403):
            raise AuthError("Invalid or expired token")
        resp.raise_for_status()
        data = resp.json()
        is_admin = bool(data.get("isAdmin"))
        role = "admin" if is_admin else str(data.get("role") or "buyer").lower()
        if role not in ROLES:
            role = "buyer"
        return Principal(uid=str(data["uid"]), role=role, is_admin=is_admin)


def get_verifier():
    return import_string(getattr(settings, "AUTH_TOKEN_VERIFIER", "gateway.auth.StubTokenVerifier"))()


class BearerTokenAuthentication(authentication.BaseAuthentication):
    keyword = "Bearer"

    def authenticate(self, request):
        header = authentication.get_authorization_header(request).decode("latin-1")
        if not header:
            return None
        parts = header.split()
        if len(parts) != 2 or parts[0] != self.keyword:
            raise exceptions.AuthenticationFailed("Malformed Authorization header")
        try:
            principal = get_verifier().resolve(parts[1])
        except AuthError as e:
            raise exceptions.AuthenticationFailed(str(e))
        PRINCIPAL_CTX.set(principal.uid)
        return principal, parts[1]

    def authenticate_header(self, request):
        return self.keyword
