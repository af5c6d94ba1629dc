"""Repository layer for persisting orders and reading carts.

This module adapts the Django ORM to the ``OrderStorePort`` and ``CartPort``
protocols so the domain layer is not coupled to Django ORM details. The
repositories accept and return domain dataclasses only.
"""

import uuid

from django.db import transaction
from django.db.models import Q

from .domain import AlreadyTerminal, CartSnapshot, Order, OrderLine, OrderStatus, PaymentMethod
from .models import CartItemModel, OrderLineModel, OrderModel, OrderStatusChange


def _to_domain(obj: OrderModel) -> Order:
    return Order(
        id=obj.id,
        owner_id=obj.owner_id,
        lines=tuple(
            OrderLine(
                product_id=line.product_id,
                name=line.name,
                unit_price_cents=line.unit_price_cents,
                quantity=line.quantity,
                image_ref=line.image_ref,
            )
            for line in obj.lines.all()
        ),
        total_cents=obj.total_cents,
        currency=obj.currency,
        payment_method=PaymentMethod(obj.payment_method),
        status=OrderStatus(obj.status),
        shipping_address=obj.shipping_address,
        reservation_id=obj.reservation_id,
        attempt_ref=obj.attempt_ref,
        payment_ref=obj.payment_ref,
        created_at=obj.created_at,
        paid_at=obj.paid_at,
        version=obj.version,
    )


def _as_uuid(value) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class OrderRepository:
    """Persist Order domain objects using the Django ORM.

    Status transitions are conditional updates on ``(id, status=pending,
    version)``: two concurrent transitions of the same order cannot both
    succeed, whatever the database isolation level.
    """

    def _load(self, **filters) -> Order | None:
        obj = OrderModel.objects.prefetch_related("lines").filter(**filters).first()
        return _to_domain(obj) if obj else None

    @transaction.atomic
    def create(self, order: Order, reason: str = "") -> Order:
        """Persist a new order with its lines and first history entry.

        Args:
            order: Domain ``Order`` to persist. Its ``id`` is kept.
            reason: Free-form tag stored in the status history.

        Returns:
            The stored order (with database timestamps).
        """
        obj = OrderModel.objects.create(
            id=order.id,
            owner_id=order.owner_id,
            status=order.status.value,
            payment_method=order.payment_method.value,
            total_cents=order.total_cents,
            currency=order.currency,
            shipping_address=order.shipping_address,
            reservation_id=order.reservation_id,
            attempt_ref=order.attempt_ref,
            payment_ref=order.payment_ref,
        )
        OrderLineModel.objects.bulk_create(
            [
                OrderLineModel(
                    order=obj,
                    position=i,
                    product_id=line.product_id,
                    name=line.name,
                    unit_price_cents=line.unit_price_cents,
                    quantity=line.quantity,
                    image_ref=line.image_ref,
                )
                for i, line in enumerate(order.lines)
            ]
        )
        OrderStatusChange.objects.create(order=obj, from_status=None, to_status=obj.status, reason=reason)
        return self._load(pk=obj.pk)

    def get(self, order_id) -> Order | None:
        oid = _as_uuid(order_id)
        return self._load(pk=oid) if oid else None

    def find(self, order_ref: str) -> Order | None:
        cond = Q(attempt_ref=order_ref) | Q(payment_ref=order_ref)
        oid = _as_uuid(order_ref)
        if oid:
            cond |= Q(pk=oid)
        obj = OrderModel.objects.prefetch_related("lines").filter(cond).order_by("created_at").first()
        return _to_domain(obj) if obj else None

    def attach_payment_ref(self, order_id, payment_ref: str) -> Order:
        OrderModel.objects.filter(pk=order_id, attempt_ref__isnull=True).update(
            attempt_ref=payment_ref, payment_ref=payment_ref
        )
        return self.get(order_id)

    @transaction.atomic
    def transition(self, order: Order, to_status: OrderStatus, *, payment_ref=None, paid_at=None,
                   reason: str = "") -> Order:
        changes = {"status": to_status.value, "version": order.version + 1}
        if payment_ref is not None:
            changes["payment_ref"] = payment_ref
        if paid_at is not None:
            changes["paid_at"] = paid_at

        updated = OrderModel.objects.filter(
            pk=order.id, status=OrderStatus.PENDING.value, version=order.version
        ).update(**changes)
        if updated == 0:
            raise AlreadyTerminal(self.get(order.id))

        OrderStatusChange.objects.create(
            order_id=order.id, from_status=OrderStatus.PENDING.value, to_status=to_status.value, reason=reason
        )
        return self.get(order.id)

    def list_for_owner(self, owner_id: str) -> list[Order]:
        return [_to_domain(o) for o in self.owner_queryset(owner_id)]

    def owner_queryset(self, owner_id: str):
        """Newest-first queryset for paginated listings."""
        return (
            OrderModel.objects.prefetch_related("lines")
            .filter(owner_id=str(owner_id))
            .order_by("-created_at", "-internal_id")
        )

    def history(self, order_id) -> list[tuple[str | None, str, str]]:
        return [
            (c.from_status, c.to_status, c.reason)
            for c in OrderStatusChange.objects.filter(order_id=order_id)
        ]

    to_domain = staticmethod(_to_domain)


class CartRepository:
    """Cart snapshot reader backed by ``CartItemModel`` rows."""

    def snapshot(self, owner_id: str) -> CartSnapshot:
        rows = CartItemModel.objects.filter(owner_id=str(owner_id)).values_list("product_id", "quantity")
        return CartSnapshot.build(str(owner_id), list(rows))

    def clear(self, owner_id: str) -> None:
        CartItemModel.objects.filter(owner_id=str(owner_id)).delete()
