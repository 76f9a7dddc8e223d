"""Logging filters for enriching log records with request context.

``RequestIdFilter`` copies the current request id (set by
``RequestIdMiddleware``) and the authenticated caller's uid (set by
``BearerTokenAuthentication``) onto every record, so JSON log lines from
the lifecycle engine, reconciliation and payment adapters can be joined per
request without passing ids around.
"""

from logging import Filter, LogRecord

from .middleware import PRINCIPAL_CTX, REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` and ``uid`` attributes to log records.

    Missing values are rendered as a hyphen ("-") so formatters can always
    reference ``%(request_id)s`` and ``%(uid)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        if not hasattr(record, "uid"):
            record.uid = PRINCIPAL_CTX.get()
        return True
