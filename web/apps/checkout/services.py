"""Domain services for checkout and payment reconciliation.

``CheckoutService`` turns a cart into an order: it prices the cart from the
catalog, reserves stock, records the order and starts a payment attempt with
the selected payment method. ``PaymentReconciler`` is the single entry point
for payment outcomes (provider webhooks and client confirmations) and owns
every status transition after creation. ``ReservationSweeper`` re-drives
reservations left behind by crashes or interrupted side effects.

The services only talk to ports from ``domain``; wiring lives in
``providers``.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from .domain import (
    AlreadyTerminal,
    CartPort,
    CatalogPort,
    CheckoutError,
    CheckoutResult,
    EmptyCart,
    InsufficientStock,
    InventoryUnavailable,
    InventoryPort,
    Order,
    OrderLine,
    OrderNotFound,
    OrderStatus,
    OrderStorePort,
    OutcomeKind,
    OutOfStock,
    PaymentMethod,
    PaymentMethodRegistry,
    PaymentOutcome,
    Reservation,
    ReservationConflict,
    ReservationNotFound,
    StockRequest,
    ValidationError,
    VerificationError,
)

logger = logging.getLogger("checkout")
security_logger = logging.getLogger("checkout.security")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# Status reached for each non-paid outcome.
_FAILURE_STATUS = {
    OutcomeKind.FAILED: OrderStatus.PAYMENT_FAILED,
    OutcomeKind.CANCELLED: OrderStatus.CANCELLED,
}


class PaymentReconciler:
    """Advance orders from PENDING to a terminal state.

    Every outcome goes through ``report_outcome`` whatever its producer, so a
    webhook and a client confirmation racing for the same order result in a
    single transition. The status write is the source of truth; the
    reservation commit/release and the cart clear that follow it are
    idempotent and are re-driven by ``ReservationSweeper`` if interrupted.
    """

    def __init__(
        self,
        orders: OrderStorePort,
        inventory: InventoryPort,
        cart: CartPort,
        payment_methods: PaymentMethodRegistry,
    ):
        self.orders = orders
        self.inventory = inventory
        self.cart = cart
        self.payment_methods = payment_methods

    def report_outcome(
        self, order_ref: str, outcome: PaymentOutcome, owner_id: str | None = None
    ) -> Order:
        """Apply a payment outcome to the referenced order.

        Args:
            order_ref: Order id or the order's payment reference.
            outcome: The reported outcome.
            owner_id: When given, the order must belong to this owner.

        Returns:
            The order after the transition, or unchanged when it was already
            terminal (repeated or late deliveries are not errors).

        Raises:
            OrderNotFound: If no matching order exists for the caller.
            VerificationError: If a ``Paid`` outcome does not verify.
            PaymentIncomplete: If the provider has not captured the payment.
        """
        order = self.orders.find(str(order_ref))
        if order is None or (owner_id is not None and order.owner_id != str(owner_id)):
            raise OrderNotFound()

        if order.status.is_terminal:
            if outcome.kind is OutcomeKind.PAID and order.status in _FAILURE_STATUS.values():
                self._flag_late_payment(order, outcome)
            else:
                logger.info(
                    "outcome ignored for terminal order",
                    extra={"order_id": str(order.id), "status": order.status.value, "outcome": outcome.kind.value},
                )
            return order

        if outcome.kind is OutcomeKind.PAID:
            return self._apply_paid(order, outcome)
        return self._apply_failure(order, outcome)

    def _apply_paid(self, order: Order, outcome: PaymentOutcome) -> Order:
        adapter = self.payment_methods.get(order.payment_method)
        try:
            adapter.verify_outcome(order, outcome)
        except VerificationError as e:
            security_logger.warning(
                "payment verification rejected",
                extra={
                    "order_id": str(order.id),
                    "reason": str(e),
                    "source": outcome.source.value,
                    "external_payment_id": outcome.external_payment_id,
                },
            )
            raise

        try:
            updated = self.orders.transition(
                order,
                OrderStatus.PAID,
                payment_ref=outcome.external_payment_id or order.payment_ref,
                paid_at=_now(),
                reason=f"{outcome.source.value}:paid",
            )
        except AlreadyTerminal as lost:
            if lost.order.status in _FAILURE_STATUS.values():
                self._log_late_payment(lost.order, outcome)
            return lost.order

        self.commit_reservation(updated)
        self.cart.clear(updated.owner_id)
        logger.info("order paid", extra={"order_id": str(updated.id), "payment_ref": updated.payment_ref})
        return updated

    def _flag_late_payment(self, order: Order, outcome: PaymentOutcome) -> None:
        """Report money captured for an order that was already closed.

        The order stays closed (its stock may be gone); a verified payment
        needs a refund or manual fulfilment.
        """
        adapter = self.payment_methods.get(order.payment_method)
        try:
            adapter.verify_outcome(order, outcome)
        except CheckoutError as e:
            logger.info(
                "unverified paid outcome for closed order ignored",
                extra={"order_id": str(order.id), "status": order.status.value, "reason": str(e)},
            )
            return
        self._log_late_payment(order, outcome)

    def _log_late_payment(self, order: Order, outcome: PaymentOutcome) -> None:
        security_logger.error(
            "payment captured for closed order",
            extra={
                "order_id": str(order.id),
                "status": order.status.value,
                "source": outcome.source.value,
                "external_payment_id": outcome.external_payment_id,
            },
        )

    def _apply_failure(self, order: Order, outcome: PaymentOutcome) -> Order:
        try:
            updated = self.orders.transition(
                order,
                _FAILURE_STATUS[outcome.kind],
                reason=f"{outcome.source.value}:{outcome.kind.value}",
            )
        except AlreadyTerminal as lost:
            return lost.order

        self.release_reservation(updated)
        logger.info("order closed", extra={"order_id": str(updated.id), "status": updated.status.value})
        return updated

    def release_reservation(self, order: Order) -> None:
        if not order.reservation_id:
            return
        try:
            self.inventory.release(order.reservation_id)
        except InventoryUnavailable:
            logger.warning("reservation release deferred to sweep", extra={"order_id": str(order.id)})

    def commit_reservation(self, order: Order) -> None:
        if not order.reservation_id:
            return
        try:
            self.inventory.commit(order.reservation_id)
        except InventoryUnavailable:
            logger.warning("reservation commit deferred to sweep", extra={"order_id": str(order.id)})
        except ReservationConflict:
            # Stock for a paid order was already given back; needs manual follow-up.
            logger.error(
                "reservation released before payment was recorded",
                extra={"order_id": str(order.id), "reservation_id": order.reservation_id},
            )


class CheckoutService:
    """Convert an owner's cart into an order and a payment attempt."""

    def __init__(
        self,
        catalog: CatalogPort,
        inventory: InventoryPort,
        cart: CartPort,
        orders: OrderStorePort,
        payment_methods: PaymentMethodRegistry,
        reconciler: PaymentReconciler,
        currency: str = "INR",
    ):
        self.catalog = catalog
        self.inventory = inventory
        self.cart = cart
        self.orders = orders
        self.payment_methods = payment_methods
        self.reconciler = reconciler
        self.currency = currency

    def begin_checkout(
        self,
        owner_id: str,
        shipping_address: dict,
        payment_method: PaymentMethod | str,
    ) -> CheckoutResult:
        """Create an order from the owner's cart and start paying for it.

        Steps: snapshot and price the cart, reserve stock (all or nothing),
        persist the order, start the payment attempt, clear the cart.

        Raises:
            EmptyCart: If the cart has no lines.
            ValidationError: For unknown products, non-positive quantities or
                unsupported payment methods.
            OutOfStock: If any product is short; nothing is reserved.
            PaymentAdapterError: If the gateway fails or answers garbage; the
                order is closed as ``payment_failed`` and its reservation
                released. Unexpected errors from the adapter get the same
                compensation before propagating.
        """
        adapter = self.payment_methods.get(payment_method)
        snapshot = self.cart.snapshot(owner_id)
        if snapshot.is_empty:
            raise EmptyCart()
        if any(line.quantity < 1 for line in snapshot.lines):
            raise ValidationError("INVALID_QUANTITY")

        # Live prices are read here and nowhere else.
        catalog = self.catalog.describe([line.product_id for line in snapshot.lines])
        lines = []
        for cart_line in snapshot.lines:
            product = catalog.get(cart_line.product_id)
            if product is None:
                raise ValidationError("UNKNOWN_PRODUCT")
            lines.append(
                OrderLine(
                    product_id=product.product_id,
                    name=product.name,
                    unit_price_cents=product.price_cents,
                    quantity=cart_line.quantity,
                    image_ref=product.image_ref,
                )
            )
        total_cents = sum(line.line_total_cents for line in lines)

        order_id = uuid.uuid4()
        reserved = self.inventory.check_and_reserve(
            str(order_id), [StockRequest(line.product_id, line.quantity) for line in lines]
        )
        if isinstance(reserved, InsufficientStock):
            logger.info(
                "checkout rejected: insufficient stock",
                extra={"owner_id": owner_id, "products": [s.product_id for s in reserved.shortages]},
            )
            raise OutOfStock(reserved)

        status = OrderStatus.CONFIRMED if adapter.settles_on_creation else OrderStatus.PENDING
        draft = Order(
            id=order_id,
            owner_id=str(owner_id),
            lines=tuple(lines),
            total_cents=total_cents,
            currency=self.currency,
            payment_method=adapter.method,
            status=status,
            shipping_address=dict(shipping_address or {}),
            reservation_id=reserved.id,
            created_at=_now(),
        )
        try:
            order = self.orders.create(draft, reason="checkout")
        except Exception:
            self.inventory.release(reserved.id)
            raise

        if adapter.settles_on_creation:
            self.reconciler.commit_reservation(order)

        try:
            handle = adapter.create_payment_attempt(order)
        except Exception:
            # no payment attempt exists: close the order and release its stock
            logger.warning(
                "payment attempt failed",
                extra={"order_id": str(order.id), "method": adapter.method.value},
                exc_info=True,
            )
            self.reconciler.report_outcome(str(order.id), PaymentOutcome(OutcomeKind.FAILED))
            raise

        if handle.payment_ref:
            order = self.orders.attach_payment_ref(order.id, handle.payment_ref)

        self.cart.clear(owner_id)
        logger.info(
            "checkout completed",
            extra={"order_id": str(order.id), "status": order.status.value, "total_cents": order.total_cents},
        )
        return CheckoutResult(order=order, handle=handle)


class ReservationSweeper:
    """Reconcile HELD reservations older than a grace period with their orders.

    No order → release (crash between reservation and order creation).
    Failed or cancelled order → release. Paid or confirmed order → commit.
    Pending order → left alone, the payment may still complete.
    """

    def __init__(self, inventory: InventoryPort, orders: OrderStorePort, grace: timedelta):
        self.inventory = inventory
        self.orders = orders
        self.grace = grace

    def sweep(self) -> dict[str, int]:
        """Handle every stale HELD reservation; one failure does not stop the batch.

        Raises:
            InventoryUnavailable: Only when the HELD list itself cannot be read.
        """
        counts = {"released": 0, "committed": 0, "kept": 0, "failed": 0}
        for reservation in self.inventory.held_reservations(self.grace):
            try:
                counts[self._settle(reservation)] += 1
            except (InventoryUnavailable, ReservationNotFound, ReservationConflict) as e:
                counts["failed"] += 1
                logger.warning(
                    "reservation sweep skipped a reservation",
                    extra={"reservation_id": reservation.id, "reference": reservation.reference, "reason": str(e)},
                )
        logger.info("reservation sweep finished", extra=counts)
        return counts

    def _settle(self, reservation: Reservation) -> str:
        order = self.orders.get(reservation.reference)
        if order is None or order.status in (OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED):
            self.inventory.release(reservation.id)
            return "released"
        if order.status in (OrderStatus.PAID, OrderStatus.CONFIRMED):
            self.inventory.commit(reservation.id)
            return "committed"
        return "kept"
