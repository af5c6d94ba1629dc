"""HTTP views for the checkout app.

This module contains the DRF API views of the checkout gateway. Views are
kept intentionally small: they validate requests (via Pydantic), delegate to
the domain services obtained from ``providers.get_services()`` and map
domain errors to HTTP responses.

Idempotency: when an ``Idempotency-Key`` header is provided, the checkout
endpoint stores its final response. Retries with the same payload replay it
(``Idempotent-Replay: true``); reusing the key with a different payload
returns HTTP 409. Retryable upstream failures are not stored so the client
can try again with the same key.

Payment outcomes arrive through two producers, the client confirmation
endpoint and the provider webhooks; both end in
``PaymentReconciler.report_outcome``.
"""
import logging

from django.core.paginator import Paginator
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import (
    CheckoutError,
    InventoryUnavailable,
    OrderNotFound,
    OutcomeSource,
    OutOfStock,
    PaymentAdapterError,
    PaymentIncomplete,
    PaymentOutcome,
    ValidationError,
    VerificationError,
)
from .idempotency import discard, finalize, get_or_create_idempotent
from .schemas import (
    CheckoutDTO,
    CheckoutResponseDTO,
    ErrorDTO,
    OrderReadDTO,
    PaymentConfirmDTO,
    PaymentHandleDTO,
    ShortageDTO,
)

logger = logging.getLogger("checkout")

# Domain error → HTTP status. Order matters: subclasses first.
ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (OutOfStock, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PaymentAdapterError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (InventoryUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (VerificationError, status.HTTP_400_BAD_REQUEST),
    (PaymentIncomplete, status.HTTP_409_CONFLICT),
    (OrderNotFound, status.HTTP_404_NOT_FOUND),
)


def error_response(exc: CheckoutError) -> Response:
    """Render a domain error as ``{"detail": CODE, ...}`` with its status."""
    code = next((st for cls, st in ERROR_STATUS if isinstance(exc, cls)), status.HTTP_400_BAD_REQUEST)
    retryable = getattr(exc, "retryable", False)
    dto = ErrorDTO(
        detail=str(exc),
        kind="upstream" if retryable else "client",
        retryable=retryable,
        shortages=(
            [ShortageDTO(**s.__dict__) for s in exc.shortages] if isinstance(exc, OutOfStock) else None
        ),
    )
    return Response(dto.model_dump(exclude_none=True), status=code)


def validation_error_response(exc: PydanticValidationError) -> Response:
    return Response(
        {"detail": "VALIDATION_ERROR", "errors": exc.errors(include_url=False, include_context=False)},
        status=status.HTTP_400_BAD_REQUEST,
    )


def _owner_id(request) -> str:
    return str(request.user.pk)


class OrdersPingView(APIView):
    """Simple health-check endpoint for the checkout module."""

    permission_classes = [AllowAny]

    def get(self, request):
        return Response({"ok": True})


class CheckoutView(APIView):
    """Start a checkout for the caller's cart.

    Validates the payload with a Pydantic DTO, runs
    ``CheckoutService.begin_checkout`` and returns the order together with
    the payment handle the client needs to continue.
    """

    permission_classes = [IsAuthenticated]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout"

    def post(self, request):
        """Create an order from the cart.

        Returns:
            Response: One of the following responses.
            - 201 with {order, payment} when the order is created.
            - replay of the stored response (``Idempotent-Replay: true``) when
              the same idempotency key and payload are retried.
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} when the key is reused
              with a different payload, or {detail: "REQUEST_IN_PROGRESS"}
              while the first request is still running.
            - 400 for DTO validation errors, empty carts, unknown products.
            - 422 with {detail: "INSUFFICIENT_STOCK", shortages: [...]}.
            - 503 with {detail: "PAYMENT_ADAPTER_ERROR" | "UPSTREAM_UNAVAILABLE"}
              when a dependency is unavailable; safe to retry.
        """
        owner_id = _owner_id(request)
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        try:
            dto = CheckoutDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return validation_error_response(e)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, owner_id, request.data)
            except ValueError:
                return Response({"detail": "IDEMPOTENCY_CONFLICT"}, status=status.HTTP_409_CONFLICT)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "REQUEST_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Domain
        services = providers.get_services()
        try:
            result = services.checkout.begin_checkout(
                owner_id,
                dto.shipping_address.model_dump(exclude_none=True),
                dto.payment_method,
            )
        except CheckoutError as e:
            resp = error_response(e)
            if rec:
                if getattr(e, "retryable", False):
                    discard(rec)
                else:
                    finalize(rec, resp.status_code, resp.data)
            return resp

        # 4) Response
        body = CheckoutResponseDTO(
            order=OrderReadDTO.from_order(result.order),
            payment=PaymentHandleDTO(
                method=result.handle.method.value,
                payment_ref=result.handle.payment_ref,
                redirect_url=result.handle.redirect_url,
                client_data=result.handle.client_data,
            ),
        ).model_dump(mode="json")

        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=result.order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class PaymentConfirmView(APIView):
    """Client-side report of a payment outcome (after a redirect or widget)."""

    permission_classes = [IsAuthenticated]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments"

    def post(self, request):
        try:
            dto = PaymentConfirmDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return validation_error_response(e)

        evidence = {
            k: v
            for k, v in {
                "session_id": dto.session_id,
                "provider_order_id": dto.provider_order_id,
                "signature": dto.signature,
            }.items()
            if v
        }
        outcome = PaymentOutcome(
            kind=dto.outcome,
            external_payment_id=dto.payment_id,
            source=OutcomeSource.CLIENT,
            evidence=evidence,
        )
        try:
            order = providers.get_services().reconciler.report_outcome(
                str(dto.order_id), outcome, owner_id=_owner_id(request)
            )
        except CheckoutError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_order(order).model_dump(mode="json"), status=status.HTTP_200_OK)


class PaymentWebhookView(APIView):
    """Provider webhooks. Authenticated by the provider's signature only."""

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request, method: str):
        services = providers.get_services()
        if method not in services.payment_methods:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        adapter = services.payment_methods.get(method)

        try:
            event = adapter.parse_webhook(request.body, request.headers)
        except VerificationError as e:
            logging.getLogger("checkout.security").warning(
                "webhook signature rejected", extra={"method": method, "reason": str(e)}
            )
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        if event is None:
            return Response({"received": True}, status=status.HTTP_200_OK)

        try:
            order = services.reconciler.report_outcome(event.order_ref, event.outcome)
        except (OrderNotFound, PaymentIncomplete) as e:
            # Acknowledge so the provider stops redelivering; nothing to apply.
            logger.warning("webhook not applied", extra={"event_type": event.event_type, "reason": str(e)})
            return Response({"received": True, "detail": str(e)}, status=status.HTTP_200_OK)
        except CheckoutError as e:
            return error_response(e)

        return Response(
            {"received": True, "order_id": str(order.id), "status": order.status.value},
            status=status.HTTP_200_OK,
        )


class OrdersCollectionView(APIView):
    """Paginated order history of the caller, newest first."""

    permission_classes = [IsAuthenticated]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        repo = providers.get_services().orders
        try:
            page = int(request.GET.get("page", 1))
            page_size = min(int(request.GET.get("page_size", 20)), 100)
        except ValueError:
            return Response({"detail": "VALIDATION_ERROR"}, status=status.HTTP_400_BAD_REQUEST)

        p = Paginator(repo.owner_queryset(_owner_id(request)), max(page_size, 1))
        page_obj = p.get_page(page)
        results = [
            OrderReadDTO.from_order(repo.to_domain(o)).model_dump(mode="json", exclude_none=True)
            for o in page_obj.object_list
        ]
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": results,
            },
            status=200,
        )


class RetrieveOrderView(APIView):
    permission_classes = [IsAuthenticated]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        order = providers.get_services().orders.get(oid)
        if order is None or order.owner_id != _owner_id(request):
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(OrderReadDTO.from_order(order).model_dump(mode="json", exclude_none=True), status=200)
