"""Domain models, ports and errors for checkout.

This module contains the dataclasses that describe orders, carts, stock
reservations and payment outcomes, the protocol definitions (ports) for the
collaborators checkout depends on (catalog, inventory ledger, cart, order
store, payment methods) and the exception taxonomy shared by the services
and the HTTP layer. It does no I/O.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Mapping, Protocol, Sequence
import uuid


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle states of an order.

    ``PENDING`` is the only non-terminal state. ``CONFIRMED`` is the initial
    success state of methods that settle on creation (cash on delivery).
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class PaymentMethod(str, Enum):
    HOSTED_CHECKOUT = "hosted_checkout"
    CASH_ON_DELIVERY = "cash_on_delivery"
    SIGNED_PROVIDER = "signed_provider"


class ReservationState(str, Enum):
    HELD = "HELD"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"


class OutcomeKind(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OutcomeSource(str, Enum):
    """Who reported a payment outcome.

    Webhook outcomes carry a provider payload whose signature was already
    verified; client outcomes carry evidence that still has to be checked.
    """

    CLIENT = "client"
    WEBHOOK = "webhook"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class ProductInfo:
    """Catalog view of a product at checkout time."""

    product_id: str
    name: str
    price_cents: int
    image_ref: str | None = None


@dataclass(frozen=True)
class CartLine:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class CartSnapshot:
    """Read-only view of a user's cart at the moment checkout starts.

    Lines for the same product are merged on construction so the rest of the
    flow can assume one line per product.
    """

    owner_id: str
    lines: tuple[CartLine, ...] = ()

    @classmethod
    def build(cls, owner_id: str, pairs: Sequence[tuple[str, int]]) -> "CartSnapshot":
        merged: dict[str, int] = {}
        for product_id, quantity in pairs:
            merged[product_id] = merged.get(product_id, 0) + quantity
        return cls(owner_id, tuple(CartLine(p, q) for p, q in merged.items()))

    @property
    def is_empty(self) -> bool:
        return not self.lines


@dataclass(frozen=True)
class OrderLine:
    """A frozen line of an order, priced at purchase time.

    Attributes:
        product_id: Catalog identifier (SKU).
        name: Product name captured at checkout.
        unit_price_cents: Unit price in integer minor units captured at
            checkout. Never refreshed from the catalog afterwards.
        quantity: Units ordered.
        image_ref: Optional image reference captured at checkout.
    """

    product_id: str
    name: str
    unit_price_cents: int
    quantity: int
    image_ref: str | None = None

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass
class Order:
    """Container for order data.

    Only ``status``, ``attempt_ref``, ``payment_ref``, ``paid_at`` and
    ``version`` change after creation; ``lines`` and ``total_cents`` are
    frozen. ``attempt_ref`` is the reference of the payment attempt (set once)
    and ``payment_ref`` starts equal to it and becomes the captured payment id
    once paid.
    """

    id: uuid.UUID
    owner_id: str
    lines: tuple[OrderLine, ...]
    total_cents: int
    currency: str
    payment_method: PaymentMethod
    status: OrderStatus = OrderStatus.PENDING
    shipping_address: dict = field(default_factory=dict)
    reservation_id: str | None = None
    attempt_ref: str | None = None
    payment_ref: str | None = None
    created_at: datetime | None = None
    paid_at: datetime | None = None
    version: int = 0


@dataclass(frozen=True)
class StockRequest:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class Reservation:
    """A stock reservation held by the inventory ledger.

    ``reference`` is the id of the order the reservation was taken for.
    """

    id: str
    reference: str
    items: tuple[StockRequest, ...]
    state: ReservationState = ReservationState.HELD
    created_at: datetime | None = None


@dataclass(frozen=True)
class Shortage:
    product_id: str
    available: int
    requested: int


@dataclass(frozen=True)
class InsufficientStock:
    """Returned (not raised) by the ledger when a reservation cannot be made."""

    shortages: tuple[Shortage, ...]


@dataclass(frozen=True)
class PaymentHandle:
    """What the client needs to continue paying for an order.

    Attributes:
        method: Payment method that produced the handle.
        payment_ref: External reference of the payment attempt (checkout
            session id, provider order id) or None when no gateway is used.
        redirect_url: Hosted page the client should be sent to, if any.
        client_data: Data for client-side confirmation (provider key, amount).
    """

    method: PaymentMethod
    payment_ref: str | None = None
    redirect_url: str | None = None
    client_data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentOutcome:
    """A reported payment result, from a webhook or from the client.

    ``evidence`` holds method-specific proof: a verified provider payload for
    webhooks, or ids and signatures supplied by the client.
    """

    kind: OutcomeKind
    external_payment_id: str | None = None
    source: OutcomeSource = OutcomeSource.CLIENT
    evidence: dict = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookEvent:
    """A provider event mapped onto an order reference and an outcome."""

    order_ref: str
    outcome: PaymentOutcome
    event_type: str = ""


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    handle: PaymentHandle


# ---- Errors ----
class CheckoutError(Exception):
    """Base class for checkout failures.

    ``str(error)`` is a stable upper-case code that the HTTP layer maps to a
    status code.
    """

    code = "CHECKOUT_ERROR"

    def __init__(self, code: str | None = None):
        super().__init__(code or self.code)

    @property
    def detail(self) -> str:
        return str(self)


class ValidationError(CheckoutError):
    code = "VALIDATION_ERROR"


class EmptyCart(ValidationError):
    code = "EMPTY_CART"


class OutOfStock(CheckoutError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, result: InsufficientStock):
        super().__init__()
        self.shortages = result.shortages


class PaymentAdapterError(CheckoutError):
    """Gateway unreachable, timed out or rejected the request. Retryable."""

    code = "PAYMENT_ADAPTER_ERROR"
    retryable = True


class InventoryUnavailable(CheckoutError):
    code = "UPSTREAM_UNAVAILABLE"
    retryable = True


class VerificationError(CheckoutError):
    """Signature, amount or reference mismatch on a payment outcome."""

    code = "VERIFICATION_FAILED"


class PaymentIncomplete(CheckoutError):
    """The provider reports the payment as not (yet) completed."""

    code = "PAYMENT_NOT_COMPLETED"


class OrderNotFound(CheckoutError):
    code = "NOT_FOUND"


class AlreadyTerminal(CheckoutError):
    """Raised by the order store when a transition loses against another."""

    code = "ALREADY_TERMINAL"

    def __init__(self, order: Order):
        super().__init__()
        self.order = order


class ReservationConflict(CheckoutError):
    code = "RESERVATION_CONFLICT"


class ReservationNotFound(CheckoutError):
    code = "RESERVATION_NOT_FOUND"


# ---- Ports (DIP) ----
class CatalogPort(Protocol):
    """Live product data (price, name, image) used to price a checkout."""

    def describe(self, product_ids: Sequence[str]) -> dict[str, ProductInfo]:
        """Return catalog entries for the known ids; unknown ids are omitted."""
        raise NotImplementedError()


class InventoryPort(Protocol):
    """Port describing the stock ledger.

    Implementations must make ``check_and_reserve`` atomic across the whole
    item set: every item is decremented or none is.
    """

    def check_and_reserve(
        self, reference: str, items: Sequence[StockRequest]
    ) -> Reservation | InsufficientStock:
        raise NotImplementedError()

    def release(self, reservation_id: str) -> None:
        """Restore reserved quantities. Idempotent; no-op once committed."""
        raise NotImplementedError()

    def commit(self, reservation_id: str) -> None:
        """Make the decrement permanent. Idempotent.

        Raises:
            ReservationConflict: If the reservation was already released.
        """
        raise NotImplementedError()

    def held_reservations(self, older_than: timedelta) -> list[Reservation]:
        raise NotImplementedError()


class CartPort(Protocol):
    def snapshot(self, owner_id: str) -> CartSnapshot:
        raise NotImplementedError()

    def clear(self, owner_id: str) -> None:
        """Empty the owner's cart. Clearing an empty cart is a no-op."""
        raise NotImplementedError()


class OrderStorePort(Protocol):
    """Durable order records with guarded status transitions."""

    def create(self, order: Order, reason: str = "") -> Order:
        raise NotImplementedError()

    def get(self, order_id: uuid.UUID | str) -> Order | None:
        raise NotImplementedError()

    def find(self, order_ref: str) -> Order | None:
        """Look an order up by its id, attempt reference or payment reference."""
        raise NotImplementedError()

    def attach_payment_ref(self, order_id: uuid.UUID, payment_ref: str) -> Order:
        """Record the attempt reference once; later calls are no-ops."""
        raise NotImplementedError()

    def transition(
        self,
        order: Order,
        to_status: OrderStatus,
        *,
        payment_ref: str | None = None,
        paid_at: datetime | None = None,
        reason: str = "",
    ) -> Order:
        """Move ``order`` out of PENDING if nobody else did it first.

        The write only succeeds when the stored status is still PENDING and
        the stored version equals ``order.version``.

        Raises:
            AlreadyTerminal: Carrying the stored order when the guard fails.
        """
        raise NotImplementedError()

    def list_for_owner(self, owner_id: str) -> list[Order]:
        raise NotImplementedError()


class PaymentMethodPort(Protocol):
    """Capability every payment method adapter provides.

    Attributes:
        method: The ``PaymentMethod`` the adapter implements.
        settles_on_creation: True when the order is final as soon as it is
            created (no external payment step follows).
    """

    method: PaymentMethod
    settles_on_creation: bool

    def create_payment_attempt(self, order: Order) -> PaymentHandle:
        """Start paying for ``order``.

        Raises:
            PaymentAdapterError: When the gateway cannot be reached, times out
                or rejects the request.
        """
        raise NotImplementedError()

    def verify_outcome(self, order: Order, outcome: PaymentOutcome) -> None:
        """Check that a reported ``Paid`` outcome really pays ``order``.

        Raises:
            VerificationError: On signature, amount or reference mismatch.
            PaymentIncomplete: When the provider has not captured the payment.
        """
        raise NotImplementedError()

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        """Authenticate a provider webhook and map it to an outcome.

        Returns None for authentic events that carry no outcome.

        Raises:
            VerificationError: When the signature does not verify.
        """
        raise NotImplementedError()


class PaymentMethodRegistry:
    """Maps each ``PaymentMethod`` to the adapter that implements it."""

    def __init__(self, adapters: Sequence[PaymentMethodPort]):
        self._adapters = {a.method: a for a in adapters}

    def get(self, method: PaymentMethod | str) -> PaymentMethodPort:
        try:
            return self._adapters[PaymentMethod(method)]
        except (KeyError, ValueError):
            raise ValidationError("UNSUPPORTED_PAYMENT_METHOD") from None

    def __contains__(self, method) -> bool:
        try:
            return PaymentMethod(method) in self._adapters
        except ValueError:
            return False
