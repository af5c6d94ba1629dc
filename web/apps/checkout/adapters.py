"""In-process adapters for the checkout ports.

``CashOnDelivery`` is the production adapter for the cash-on-delivery method:
it needs no external call. The other classes implement the ports without
any network or database access and are intended for unit tests and local
development where deterministic behavior is useful and external services
are not required:

- ``InMemoryInventory``: catalog + stock ledger guarded by a single lock.
- ``InMemoryOrderStore`` / ``InMemoryCart``: dict-backed order and cart stores.
- ``HostedCheckoutStub`` / ``SignedProviderStub``: the HTTP payment clients
  with their network calls replaced by in-memory provider state, so
  signature and amount checks still run for real.
"""

import copy
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Mapping, Sequence

from .domain import (
    AlreadyTerminal,
    CartSnapshot,
    InsufficientStock,
    Order,
    OrderStatus,
    PaymentHandle,
    PaymentMethod,
    PaymentOutcome,
    ProductInfo,
    Reservation,
    ReservationConflict,
    ReservationNotFound,
    ReservationState,
    Shortage,
    StockRequest,
    VerificationError,
    WebhookEvent,
)
from .http_adapters import HostedCheckoutClient, SignedProviderClient


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CashOnDelivery:
    """Cash on delivery: the order is final at creation, nothing to call."""

    method = PaymentMethod.CASH_ON_DELIVERY
    settles_on_creation = True

    def create_payment_attempt(self, order: Order) -> PaymentHandle:
        return PaymentHandle(method=self.method, client_data={"status": OrderStatus.CONFIRMED.value})

    def verify_outcome(self, order: Order, outcome: PaymentOutcome) -> None:
        raise VerificationError("NO_PAYMENT_GATEWAY")

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        raise VerificationError("WEBHOOK_NOT_SUPPORTED")


class InMemoryInventory:
    """Catalog and stock ledger kept in process memory.

    A single lock covers the whole check-and-decrement so concurrent
    reservations can never oversell.
    """

    def __init__(self, products: Sequence[tuple[ProductInfo, int]] = ()):
        self._lock = threading.Lock()
        self._products: dict[str, ProductInfo] = {}
        self._stock: dict[str, int] = {}
        self._reservations: dict[str, Reservation] = {}
        for product, quantity in products:
            self.put_product(product, quantity)

    # -- test helpers --
    def put_product(self, product: ProductInfo, quantity: int) -> None:
        with self._lock:
            self._products[product.product_id] = product
            self._stock[product.product_id] = quantity

    def stock(self, product_id: str) -> int:
        return self._stock.get(product_id, 0)

    def reservation(self, reservation_id: str) -> Reservation:
        return self._reservations[reservation_id]

    def age(self, reservation_id: str, delta: timedelta) -> None:
        r = self._reservations[reservation_id]
        self._reservations[reservation_id] = replace(r, created_at=r.created_at - delta)

    # -- CatalogPort --
    def describe(self, product_ids: Sequence[str]) -> dict[str, ProductInfo]:
        return {pid: self._products[pid] for pid in product_ids if pid in self._products}

    # -- InventoryPort --
    def check_and_reserve(self, reference: str, items: Sequence[StockRequest]) -> Reservation | InsufficientStock:
        wanted: dict[str, int] = {}
        for item in items:
            wanted[item.product_id] = wanted.get(item.product_id, 0) + item.quantity

        with self._lock:
            for existing in self._reservations.values():
                if existing.reference == reference:
                    return existing

            shortages = tuple(
                Shortage(pid, self._stock.get(pid, 0), qty)
                for pid, qty in wanted.items()
                if self._stock.get(pid, 0) < qty
            )
            if shortages:
                return InsufficientStock(shortages)

            for pid, qty in wanted.items():
                self._stock[pid] -= qty
            reservation = Reservation(
                id=str(uuid.uuid4()),
                reference=reference,
                items=tuple(StockRequest(p, q) for p, q in wanted.items()),
                created_at=_now(),
            )
            self._reservations[reservation.id] = reservation
            return reservation

    def release(self, reservation_id: str) -> None:
        with self._lock:
            r = self._reservations.get(reservation_id)
            if r is None:
                raise ReservationNotFound()
            if r.state is not ReservationState.HELD:
                return
            for item in r.items:
                self._stock[item.product_id] = self._stock.get(item.product_id, 0) + item.quantity
            self._reservations[reservation_id] = replace(r, state=ReservationState.RELEASED)

    def commit(self, reservation_id: str) -> None:
        with self._lock:
            r = self._reservations.get(reservation_id)
            if r is None:
                raise ReservationNotFound()
            if r.state is ReservationState.RELEASED:
                raise ReservationConflict()
            self._reservations[reservation_id] = replace(r, state=ReservationState.COMMITTED)

    def held_reservations(self, older_than: timedelta) -> list[Reservation]:
        cutoff = _now() - older_than
        with self._lock:
            return [
                r for r in self._reservations.values()
                if r.state is ReservationState.HELD and r.created_at <= cutoff
            ]


class InMemoryOrderStore:
    """Order store with the same guarded-transition contract as the ORM one."""

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: dict[str, Order] = {}
        self.history: dict[str, list[tuple[str | None, str, str]]] = {}

    def create(self, order: Order, reason: str = "") -> Order:
        with self._lock:
            self._orders[str(order.id)] = copy.deepcopy(order)
            self.history[str(order.id)] = [(None, order.status.value, reason)]
            return copy.deepcopy(order)

    def get(self, order_id) -> Order | None:
        found = self._orders.get(str(order_id))
        return copy.deepcopy(found) if found else None

    def find(self, order_ref: str) -> Order | None:
        found = self.get(order_ref)
        if found:
            return found
        for order in self._orders.values():
            if order_ref in (order.attempt_ref, order.payment_ref):
                return copy.deepcopy(order)
        return None

    def attach_payment_ref(self, order_id, payment_ref: str) -> Order:
        with self._lock:
            order = self._orders[str(order_id)]
            if order.attempt_ref is None:
                order.attempt_ref = payment_ref
                order.payment_ref = payment_ref
            return copy.deepcopy(order)

    def transition(self, order: Order, to_status: OrderStatus, *, payment_ref=None, paid_at=None,
                   reason: str = "") -> Order:
        with self._lock:
            stored = self._orders[str(order.id)]
            if stored.status is not OrderStatus.PENDING or stored.version != order.version:
                raise AlreadyTerminal(copy.deepcopy(stored))
            from_status = stored.status
            stored.status = to_status
            stored.version += 1
            if payment_ref is not None:
                stored.payment_ref = payment_ref
            if paid_at is not None:
                stored.paid_at = paid_at
            self.history[str(order.id)].append((from_status.value, to_status.value, reason))
            return copy.deepcopy(stored)

    def list_for_owner(self, owner_id: str) -> list[Order]:
        owned = [o for o in self._orders.values() if o.owner_id == str(owner_id)]
        return [copy.deepcopy(o) for o in sorted(owned, key=lambda o: o.created_at, reverse=True)]


class InMemoryCart:
    def __init__(self):
        self._carts: dict[str, list[tuple[str, int]]] = {}
        self.clears = 0

    def add(self, owner_id: str, product_id: str, quantity: int) -> None:
        self._carts.setdefault(str(owner_id), []).append((product_id, quantity))

    def snapshot(self, owner_id: str) -> CartSnapshot:
        return CartSnapshot.build(str(owner_id), list(self._carts.get(str(owner_id), [])))

    def clear(self, owner_id: str) -> None:
        self.clears += 1
        self._carts[str(owner_id)] = []


class HostedCheckoutStub(HostedCheckoutClient):
    """Hosted checkout with sessions kept in memory instead of the provider.

    ``complete(session_id)`` simulates the customer paying on the hosted page.
    """

    def __init__(self, **kwargs):
        kwargs.setdefault("api_key", "sk_test_stub")
        kwargs.setdefault("base_url", "http://hosted-checkout.invalid")
        super().__init__(**kwargs)
        self.sessions: dict[str, dict] = {}

    def _create_session(self, order: Order) -> dict:
        session_id = f"cs_test_{uuid.uuid4().hex}"
        self.sessions[session_id] = {
            "id": session_id,
            "object": "checkout.session",
            "url": f"https://checkout.invalid/pay/{session_id}",
            "amount_total": order.total_cents,
            "currency": order.currency.lower(),
            "payment_status": "unpaid",
            "payment_intent": None,
            "metadata": {"order_id": str(order.id), "owner_id": order.owner_id},
        }
        return dict(self.sessions[session_id])

    def _fetch_session(self, session_id: str) -> dict:
        return dict(self.sessions[session_id])

    def complete(self, session_id: str) -> dict:
        session = self.sessions[session_id]
        session["payment_status"] = "paid"
        session["payment_intent"] = f"pi_test_{uuid.uuid4().hex}"
        return dict(session)


class SignedProviderStub(SignedProviderClient):
    """Signed provider whose orders are created locally.

    ``pay(provider_order_id)`` returns ``(payment_id, signature)`` as the
    provider's client library would hand them to the browser.
    """

    def __init__(self, **kwargs):
        kwargs.setdefault("key_id", "rzp_test_stub")
        kwargs.setdefault("base_url", "http://signed-provider.invalid")
        super().__init__(**kwargs)
        self.provider_orders: dict[str, dict] = {}

    def _create_provider_order(self, order: Order) -> dict:
        provider_order_id = f"order_{uuid.uuid4().hex[:14]}"
        self.provider_orders[provider_order_id] = {
            "id": provider_order_id,
            "amount": order.total_cents,
            "currency": order.currency.upper(),
            "receipt": str(order.id),
            "status": "created",
        }
        return dict(self.provider_orders[provider_order_id])

    def pay(self, provider_order_id: str) -> tuple[str, str]:
        payment_id = f"pay_{uuid.uuid4().hex[:14]}"
        self.provider_orders[provider_order_id]["status"] = "paid"
        return payment_id, self.sign(provider_order_id, payment_id)
