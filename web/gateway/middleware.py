"""Middleware that assigns and propagates a request identifier.

Every incoming request receives a request id, reused from the client's
``X-Request-Id`` header when it is well formed, generated (UUIDv4)
otherwise. The id is stored on the request and in ``REQUEST_ID_CTX`` so the
logging filter and the gateway clients can read it without passing it
around, and it is echoed in the ``X-Request-ID`` response header.

``ApiSizeLimitMiddleware`` rejects oversized ``/api/`` bodies before any
view parses them.
"""

import contextvars
import os
import re
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(256 * 1024)))
REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestIdMiddleware(MiddlewareMixin):
    """Django middleware that sets and returns a per-request identifier.

    Attributes:
        HEADER (str): Incoming header, in ``request.META`` casing.
        RESPONSE_HEADER (str): Header added to every response.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = (request.META.get(self.HEADER) or "").strip()
        if not REQUEST_ID_RE.match(rid):
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        """Echo the request id and reset the context variable."""
        response[self.RESPONSE_HEADER] = getattr(request, "request_id", REQUEST_ID_CTX.get())
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"status": "error", "errorKind": "payload_too_large"}, status=413)
