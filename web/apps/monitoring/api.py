import logging

from django.db import DatabaseError, connection
from django.http import JsonResponse

from gateway.resilience import breaker_states

logger = logging.getLogger("monitoring")


def health_view(_request):
    """Database liveness plus the state of every outbound circuit breaker.

    Only the database decides the status code; an open breaker is reported
    but the service keeps answering reads while a dependency recovers.
    """
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError as e:
        logger.error("health check database failure", extra={"error": str(e)})

    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                "circuits": breaker_states(),
            },
        },
        status=200 if db_ok else 503,
    )
