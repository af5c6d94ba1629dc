"""Gateway middleware: request correlation and API body size limits.

``RequestIdMiddleware`` makes sure every incoming HTTP request carries a
request identifier. The identifier is read from the incoming
``X-Request-Id`` header when provided by the client (or by the payment
provider calling a webhook), or generated server-side otherwise. It is
stored on the ``request`` object and in a context variable so the log
filter and the outbound HTTP adapters can pick it up without passing it
explicitly.

Behavior contract:
- If the incoming request contains the ``X-Request-Id`` header, that value
  is reused as the request id.
- Otherwise a new UUIDv4 is generated.
- The response includes the same id in the ``X-Request-ID`` header.

``ApiSizeLimitMiddleware`` rejects ``/api/`` requests whose declared body is
larger than ``settings.API_MAX_BYTES`` with HTTP 413 before any view parses
them.
"""

import contextvars
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
DEFAULT_API_MAX_BYTES = 1 * 1024 * 1024


class RequestIdMiddleware(MiddlewareMixin):
    """Django middleware that sets and returns a per-request identifier.

    Attributes:
        HEADER (str): The name of the incoming HTTP header (in Django's
            ``request.META`` casing) that may contain a client-provided id.
        RESPONSE_HEADER (str): The name of the header returned on responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        """Attach the request id to ``request`` and to ``REQUEST_ID_CTX``.

        The context token is kept on the request so ``process_response`` can
        restore the previous value once the response leaves the gateway.
        """
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        """Echo the request id on the response and reset the context var."""
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
            request._request_id_token = None
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        limit = getattr(settings, "API_MAX_BYTES", DEFAULT_API_MAX_BYTES)
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > limit:
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None
