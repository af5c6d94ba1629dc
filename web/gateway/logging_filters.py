"""Logging filter that stamps records with the current request id.

The id comes from the ContextVar set by ``RequestIdMiddleware``; records
emitted outside a request (management commands, the reservation sweep) get
``"-"`` so the JSON formatter can always reference ``request_id``.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
