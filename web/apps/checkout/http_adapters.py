"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements the concrete HTTP clients behind the checkout ports
using ``httpx``:

- ``HttpInventoryClient``: catalog and stock ledger of the inventory service.
- ``HostedCheckoutClient``: hosted card checkout on a Stripe-compatible
    Checkout Sessions API.
- ``SignedProviderClient``: payment provider that confirms payments with
    HMAC-SHA256 signatures (Razorpay-style orders API).

Every client adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- A circuit breaker per client instance to avoid hammering unhealthy
    dependencies, with HALF_OPEN probing after a timeout.
- A bounded timeout on every call and a simple retry policy with exponential
    backoff for transport errors and 5xx.

Transport failures surface as the retryable domain errors
``InventoryUnavailable`` and ``PaymentAdapterError``.
"""

import hashlib
import hmac
import json
import logging
import threading
import time
from datetime import timedelta
from typing import Mapping, Optional, Sequence

import httpx
import stripe
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    InsufficientStock,
    InventoryUnavailable,
    Order,
    OutcomeKind,
    OutcomeSource,
    PaymentAdapterError,
    PaymentHandle,
    PaymentIncomplete,
    PaymentMethod,
    PaymentOutcome,
    ProductInfo,
    Reservation,
    ReservationConflict,
    ReservationNotFound,
    ReservationState,
    Shortage,
    StockRequest,
    ValidationError,
    VerificationError,
    WebhookEvent,
)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

logger = logging.getLogger("checkout.http")


# ---------------- Circuit Breaker ---------------- #

class CircuitOpenError(RuntimeError):
    """Raised instead of calling a dependency whose circuit is open."""


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @classmethod
    def from_settings(cls, name: str) -> "CircuitBreaker":
        return cls(
            name,
            getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
            getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
        )

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            CircuitOpenError: If the circuit is OPEN or a HALF_OPEN probe is
                already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpenError(f"CIRCUIT_OPEN:{self.name}")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise CircuitOpenError(f"CIRCUIT_HALF_OPEN_BUSY:{self.name}")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        """Record a successful call and close/reset the breaker."""
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        """Record a failed call and open the breaker if threshold exceeded."""
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                if self._state != "OPEN":
                    logger.warning("circuit opened", extra={"dependency": self.name, "failures": self._failures})
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        """Release any HALF_OPEN probe flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 2),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _send(
    breaker: CircuitBreaker,
    method: str,
    url: str,
    *,
    timeout: float,
    business_statuses: Sequence[int] = (),
    headers: Optional[dict] = None,
    **kwargs,
) -> httpx.Response:
    """Perform one logical HTTP call guarded by ``breaker`` with retries.

    Responses below 400 and the listed ``business_statuses`` are returned to
    the caller and count as healthy. Transport errors and 5xx are retried up
    to ``HTTP_RETRY_MAX`` extra times with exponential backoff; any other
    status raises ``httpx.HTTPStatusError`` immediately.

    Raises:
        CircuitOpenError: If the breaker refuses the call.
        httpx.RequestError: For network/transport errors after retries.
        httpx.HTTPStatusError: For non-retriable or exhausted non-2xx responses.
    """
    max_retries, backoff = _retry_policy()
    tries = 0

    state = breaker.before_call()
    extra = dict(headers or {})
    extra["X-Circuit-State"] = state
    extra["X-Retry-Count"] = "0"
    req_headers = _request_headers(extra)

    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, headers=req_headers, **kwargs)
                    if resp.status_code < 400 or resp.status_code in business_statuses:
                        breaker.on_success()
                        return resp
                    if not _should_retry(resp, None):
                        resp.raise_for_status()
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                req_headers["X-Retry-Count"] = str(tries)

                if tries > max_retries:
                    breaker.on_failure()
                    logger.warning(
                        "upstream call failed",
                        extra={"dependency": breaker.name, "url": url, "tries": tries},
                    )
                    if exc:
                        raise exc
                    resp.raise_for_status()

                sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                time.sleep(min(sleep_s, cap))
    finally:
        breaker.on_finish()


def _log_attempt_failure(method: PaymentMethod, event_type: str, payment_id: str | None) -> None:
    logger.info(
        "payment attempt failed, order left pending",
        extra={"method": method.value, "event_type": event_type, "payment_id": payment_id},
    )


def _provider_json(resp: httpx.Response) -> dict:
    """Decode a provider response body; garbage counts as a gateway failure."""
    try:
        body = resp.json()
    except ValueError as e:
        raise PaymentAdapterError() from e
    if not isinstance(body, dict):
        raise PaymentAdapterError()
    return body


def _hmac_sha256(secret: str, message: str | bytes) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _form_encode(params: dict, prefix: str = "") -> dict[str, str]:
    """Flatten nested dicts/lists into bracketed form keys (``a[0][b]``)."""
    out: dict[str, str] = {}
    items = params.items() if isinstance(params, dict) else enumerate(params)
    for key, value in items:
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, (dict, list, tuple)):
            out.update(_form_encode(value, name))
        elif value is not None:
            out[name] = str(value).lower() if isinstance(value, bool) else str(value)
    return out


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient:
    """HTTP client for the inventory service: catalog lookups and the ledger.

    Implements both ``CatalogPort`` and ``InventoryPort``. Reservation creation
    is keyed by the order id, so retrying a POST after a timeout returns the
    reservation that may already exist instead of reserving twice.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None,
                 breaker: CircuitBreaker | None = None):
        self.base_url = (base_url or settings.INVENTORY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = breaker or CircuitBreaker.from_settings("inventory")

    def _call(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return _send(self.breaker, method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except (httpx.HTTPError, CircuitOpenError) as e:
            raise InventoryUnavailable() from e

    def describe(self, product_ids: Sequence[str]) -> dict[str, ProductInfo]:
        resp = self._call("GET", "/products", params=[("ids", pid) for pid in product_ids])
        return {
            p["sku"]: ProductInfo(
                product_id=p["sku"],
                name=p["name"],
                price_cents=p["price_cents"],
                image_ref=p.get("image_ref"),
            )
            for p in resp.json()
        }

    def check_and_reserve(self, reference: str, items: Sequence[StockRequest]) -> Reservation | InsufficientStock:
        """Reserve all items or none.

        Business mappings:
        - 200/201 → the reservation
        - 422 → ``InsufficientStock`` with one shortage per short SKU; not a
          circuit failure
        - 422 without shortages (the request itself was invalid) →
          ``ValidationError``
        """
        payload = {
            "reference": reference,
            "items": [{"sku": i.product_id, "quantity": i.quantity} for i in items],
        }
        resp = self._call("POST", "/reservations", json=payload, business_statuses=(422,))
        if resp.status_code == 422:
            detail = resp.json().get("detail")
            if not isinstance(detail, dict) or "shortages" not in detail:
                # request validation failure, not a stock answer
                logger.warning(
                    "inventory rejected reservation request", extra={"reference": reference, "detail": detail}
                )
                raise ValidationError("INVALID_STOCK_REQUEST")
            return InsufficientStock(
                tuple(
                    Shortage(s["sku"], s["available"], s["requested"])
                    for s in detail.get("shortages", [])
                )
            )
        return _reservation_from_json(resp.json())

    def release(self, reservation_id: str) -> None:
        resp = self._call("POST", f"/reservations/{reservation_id}/release", business_statuses=(404,))
        if resp.status_code == 404:
            raise ReservationNotFound()

    def commit(self, reservation_id: str) -> None:
        resp = self._call("POST", f"/reservations/{reservation_id}/commit", business_statuses=(404, 409))
        if resp.status_code == 404:
            raise ReservationNotFound()
        if resp.status_code == 409:
            raise ReservationConflict()

    def held_reservations(self, older_than: timedelta) -> list[Reservation]:
        resp = self._call(
            "GET",
            "/reservations",
            params={"state": ReservationState.HELD.value, "older_than_seconds": int(older_than.total_seconds())},
        )
        return [_reservation_from_json(r) for r in resp.json()]


def _reservation_from_json(data: dict) -> Reservation:
    return Reservation(
        id=data["id"],
        reference=data["reference"],
        items=tuple(StockRequest(i["sku"], i["quantity"]) for i in data.get("items", [])),
        state=ReservationState(data.get("state", "HELD")),
    )


# ---------------- Hosted checkout Adapter ---------------- #

class HostedCheckoutClient:
    """Hosted card checkout backed by a Stripe-compatible Checkout Sessions API.

    The client is sent to the session's hosted page. Payment is only accepted
    when the session reports ``payment_status == "paid"`` and its amount,
    currency and ``order_id`` metadata match the order.
    """

    method = PaymentMethod.HOSTED_CHECKOUT
    settles_on_creation = False

    SIGNATURE_HEADER = "Stripe-Signature"
    EVENT_OUTCOMES = {
        "checkout.session.completed": OutcomeKind.PAID,
        "checkout.session.async_payment_succeeded": OutcomeKind.PAID,
        "checkout.session.async_payment_failed": OutcomeKind.FAILED,
        "checkout.session.expired": OutcomeKind.CANCELLED,
    }
    # a declined card inside an open session; the customer may still pay
    ATTEMPT_FAILURE_EVENTS = frozenset({"payment_intent.payment_failed"})

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.base_url = (base_url or settings.STRIPE_API_BASE).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = breaker or CircuitBreaker.from_settings("hosted_checkout")

    # -- network --
    def _create_session(self, order: Order) -> dict:
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "client_reference_id": str(order.id),
            "success_url": settings.CHECKOUT_SUCCESS_URL,
            "cancel_url": settings.CHECKOUT_CANCEL_URL,
            "customer_email": order.shipping_address.get("email"),
            "metadata": {"order_id": str(order.id), "owner_id": order.owner_id},
            "payment_intent_data": {"metadata": {"order_id": str(order.id)}},
            "line_items": [
                {
                    "quantity": line.quantity,
                    "price_data": {
                        "currency": order.currency.lower(),
                        "unit_amount": line.unit_price_cents,
                        "product_data": {
                            "name": line.name,
                            "images": [line.image_ref] if line.image_ref else [],
                        },
                    },
                }
                for line in order.lines
            ],
        }
        resp = self._call(
            "POST",
            "/v1/checkout/sessions",
            data=_form_encode(params),
            headers={"Idempotency-Key": f"checkout-{order.id}"},
        )
        return _provider_json(resp)

    def _fetch_session(self, session_id: str) -> dict:
        return _provider_json(self._call("GET", f"/v1/checkout/sessions/{session_id}"))

    def _call(self, method: str, path: str, headers: Optional[dict] = None, **kwargs) -> httpx.Response:
        auth_headers = {"Authorization": f"Bearer {self.api_key}"}
        if headers:
            auth_headers.update(headers)
        try:
            return _send(
                self.breaker, method, f"{self.base_url}{path}",
                timeout=self.timeout, headers=auth_headers, **kwargs,
            )
        except (httpx.HTTPError, CircuitOpenError) as e:
            raise PaymentAdapterError() from e

    # -- port --
    def create_payment_attempt(self, order: Order) -> PaymentHandle:
        session = self._create_session(order)
        if not session.get("id"):
            logger.warning("checkout session without id", extra={"order_id": str(order.id)})
            raise PaymentAdapterError()
        return PaymentHandle(
            method=self.method,
            payment_ref=session["id"],
            redirect_url=session.get("url"),
            client_data={"session_id": session["id"]},
        )

    def verify_outcome(self, order: Order, outcome: PaymentOutcome) -> None:
        session = outcome.evidence.get("session") if outcome.source is OutcomeSource.WEBHOOK else None
        if session is None:
            session_id = outcome.evidence.get("session_id") or order.attempt_ref
            if not session_id or session_id != order.attempt_ref:
                raise VerificationError("REFERENCE_MISMATCH")
            session = self._fetch_session(session_id)

        if order.attempt_ref and session.get("id") != order.attempt_ref:
            raise VerificationError("REFERENCE_MISMATCH")
        if (session.get("metadata") or {}).get("order_id") != str(order.id):
            raise VerificationError("REFERENCE_MISMATCH")
        if session.get("amount_total") != order.total_cents:
            raise VerificationError("AMOUNT_MISMATCH")
        if (session.get("currency") or "").lower() != order.currency.lower():
            raise VerificationError("CURRENCY_MISMATCH")
        if session.get("payment_status") != "paid":
            raise PaymentIncomplete()

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        body = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(
                body,
                headers.get(self.SIGNATURE_HEADER, ""),
                self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            raise VerificationError("SIGNATURE_MISMATCH") from e

        event = json.loads(body)
        if event.get("type") in self.ATTEMPT_FAILURE_EVENTS:
            _log_attempt_failure(self.method, event.get("type"), event["data"]["object"].get("id"))
            return None
        kind = self.EVENT_OUTCOMES.get(event.get("type"))
        if kind is None:
            return None
        obj = event["data"]["object"]
        order_id = (obj.get("metadata") or {}).get("order_id")
        if not order_id:
            return None
        outcome = PaymentOutcome(
            kind=kind,
            external_payment_id=obj.get("payment_intent") or obj["id"],
            source=OutcomeSource.WEBHOOK,
            evidence={"session": obj},
        )
        return WebhookEvent(order_ref=order_id, outcome=outcome, event_type=event["type"])


# ---------------- Signed provider Adapter ---------------- #

class SignedProviderClient:
    """Payment provider that proves payments with HMAC-SHA256 signatures.

    Checkout creates a provider order carrying the exact amount; the client
    pays it and sends back ``provider_order_id``, ``payment_id`` and
    ``signature = HMAC(key_secret, provider_order_id + "|" + payment_id)``.
    Webhooks are signed with ``HMAC(webhook_secret, raw_body)``.
    """

    method = PaymentMethod.SIGNED_PROVIDER
    settles_on_creation = False

    SIGNATURE_HEADER = "X-Razorpay-Signature"
    EVENT_OUTCOMES = {
        "payment.captured": OutcomeKind.PAID,
        "order.paid": OutcomeKind.PAID,
    }
    # one failed attempt; the provider order stays payable
    ATTEMPT_FAILURE_EVENTS = frozenset({"payment.failed"})

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        webhook_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.key_id = key_id if key_id is not None else settings.SIGNED_PROVIDER_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.SIGNED_PROVIDER_KEY_SECRET
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.SIGNED_PROVIDER_WEBHOOK_SECRET
        )
        self.base_url = (base_url or settings.SIGNED_PROVIDER_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = breaker or CircuitBreaker.from_settings("signed_provider")

    def _create_provider_order(self, order: Order) -> dict:
        payload = {
            "amount": order.total_cents,
            "currency": order.currency.upper(),
            "receipt": str(order.id),
            "notes": {"order_id": str(order.id)},
        }
        try:
            resp = _send(
                self.breaker, "POST", f"{self.base_url}/v1/orders",
                timeout=self.timeout, json=payload, auth=(self.key_id, self.key_secret),
            )
        except (httpx.HTTPError, CircuitOpenError) as e:
            raise PaymentAdapterError() from e
        return _provider_json(resp)

    def create_payment_attempt(self, order: Order) -> PaymentHandle:
        provider_order = self._create_provider_order(order)
        if not provider_order.get("id"):
            logger.warning("provider order without id", extra={"order_id": str(order.id)})
            raise PaymentAdapterError()
        return PaymentHandle(
            method=self.method,
            payment_ref=provider_order["id"],
            client_data={
                "key_id": self.key_id,
                "provider_order_id": provider_order["id"],
                "amount": order.total_cents,
                "currency": order.currency.upper(),
            },
        )

    def sign(self, provider_order_id: str, payment_id: str) -> str:
        return _hmac_sha256(self.key_secret, f"{provider_order_id}|{payment_id}")

    def verify_outcome(self, order: Order, outcome: PaymentOutcome) -> None:
        if outcome.source is OutcomeSource.WEBHOOK:
            payment = outcome.evidence.get("payment") or {}
            if payment.get("order_id") != order.attempt_ref:
                raise VerificationError("REFERENCE_MISMATCH")
            if payment.get("amount") != order.total_cents:
                raise VerificationError("AMOUNT_MISMATCH")
            if (payment.get("currency") or "").upper() != order.currency.upper():
                raise VerificationError("CURRENCY_MISMATCH")
            if payment.get("status") not in ("captured", "paid"):
                raise PaymentIncomplete()
            return

        provider_order_id = outcome.evidence.get("provider_order_id")
        signature = outcome.evidence.get("signature") or ""
        payment_id = outcome.external_payment_id or ""
        if not provider_order_id or provider_order_id != order.attempt_ref:
            raise VerificationError("REFERENCE_MISMATCH")
        if not payment_id or not hmac.compare_digest(self.sign(provider_order_id, payment_id), signature):
            raise VerificationError("SIGNATURE_MISMATCH")

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        expected = _hmac_sha256(self.webhook_secret, payload)
        if not hmac.compare_digest(expected, headers.get(self.SIGNATURE_HEADER, "")):
            raise VerificationError("SIGNATURE_MISMATCH")

        event = json.loads(payload)
        payment = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
        if event.get("event") in self.ATTEMPT_FAILURE_EVENTS:
            _log_attempt_failure(self.method, event.get("event"), payment.get("id"))
            return None
        kind = self.EVENT_OUTCOMES.get(event.get("event"))
        if kind is None:
            return None
        if not payment.get("order_id"):
            return None
        outcome = PaymentOutcome(
            kind=kind,
            external_payment_id=payment.get("id"),
            source=OutcomeSource.WEBHOOK,
            evidence={"payment": payment},
        )
        return WebhookEvent(order_ref=payment["order_id"], outcome=outcome, event_type=event["event"])
