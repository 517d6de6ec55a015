"""Logging filter adding request correlation to every log record.

Add ``RequestIdFilter`` to a handler so formatters (the JSON formatter in
``settings.LOGGING``) can reference ``request_id`` on every record,
including records emitted outside a request (``-``).
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
