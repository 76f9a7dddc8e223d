"""Periodic sweep for payments whose webhook never arrived.

Runs ``verify_payment_sync`` as the system actor over pending orders that
already have a payment method and are older than
``RECONCILE_MIN_AGE_MINUTES``. Orders sharing a transaction are verified
once per transaction.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand

from apps.orders.domain import SYSTEM_ACTOR, ActorRole, utcnow
from apps.orders.errors import OrdersError
from apps.orders.providers import get_reconciliation

logger = logging.getLogger("orders.reconciliation")


class Command(BaseCommand):
    help = "Ask payment gateways about pending orders and settle the ones that were paid."

    def add_arguments(self, parser):
        parser.add_argument(
            "--min-age",
            type=int,
            default=None,
            help="Only orders older than this many minutes (default: RECONCILE_MIN_AGE_MINUTES).",
        )
        parser.add_argument("--limit", type=int, default=200)

    def handle(self, *args, **options):
        min_age = options["min_age"]
        if min_age is None:
            min_age = getattr(settings, "RECONCILE_MIN_AGE_MINUTES", 10)
        handler = get_reconciliation()
        pending = handler.store.list_pending_payments(older_than=utcnow() - timedelta(minutes=min_age))

        seen = set()
        counts = {"checked": 0, "paid": 0, "failed": 0, "pending": 0, "errors": 0}
        for order in pending[: options["limit"]]:
            ref = order.transaction_id or order.id
            if ref in seen:
                continue
            seen.add(ref)
            counts["checked"] += 1
            try:
                view = handler.verify_payment_sync(ref, SYSTEM_ACTOR, ActorRole.SYSTEM)
            except OrdersError as e:
                counts["errors"] += 1
                logger.warning("pending sweep failed for ref", extra={"ref": ref, "error": str(e)})
                continue
            if view.status in counts:
                counts[view.status] += 1

        logger.info("pending sweep finished", extra=counts)
        self.stdout.write(
            "checked={checked} paid={paid} failed={failed} pending={pending} errors={errors}".format(**counts)
        )
