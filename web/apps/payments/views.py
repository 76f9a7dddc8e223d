"""Gateway webhook endpoint.

``POST /api/payments/<provider>/webhook`` is unauthenticated: trust comes
from the provider signature, checked over the raw body bytes. The
reconciliation outcome is translated into the provider's literal reply by
``acknowledge`` so gateways that expect HTTP 200 with a code in the body
(ZaloPay) and gateways that retry on non-2xx (MoMo, PayOS, Stripe) both get
what they understand.
"""

import logging

from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.orders.domain import PaymentMethod
from apps.orders.errors import NotFoundError
from apps.orders.providers import get_reconciliation

from .base import WebhookPayload
from .registry import get_provider

logger = logging.getLogger("payments.webhook")


class WebhookView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_classes = []

    def post(self, request, provider: str):
        if provider not in {m.value for m in PaymentMethod}:
            raise NotFoundError("payment provider", provider)
        payload = WebhookPayload(body=request.body, headers=dict(request.headers))
        decision = get_reconciliation().handle_webhook(provider, payload)
        status_code, body = get_provider(provider).acknowledge(decision)
        logger.info(
            "webhook acknowledged",
            extra={"provider": provider, "decision": decision.value, "status": status_code},
        )
        return Response(body, status=status_code)
