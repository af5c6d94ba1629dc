import uuid
from django.db import models, transaction


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)

    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        PAID = "paid"
        PAYMENT_FAILED = "payment_failed"
        CANCELLED = "cancelled"

    class Method(models.TextChoices):
        HOSTED_CHECKOUT = "hosted_checkout"
        CASH_ON_DELIVERY = "cash_on_delivery"
        SIGNED_PROVIDER = "signed_provider"

    owner_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING)
    payment_method = models.CharField(max_length=32, choices=Method.choices)
    total_cents = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default="INR")
    shipping_address = models.JSONField(default=dict, blank=True)
    reservation_id = models.CharField(max_length=64, null=True, blank=True)
    # set once when the payment attempt starts
    attempt_ref = models.CharField(max_length=255, null=True, blank=True, unique=True)
    # attempt_ref until paid, then the captured payment id
    payment_ref = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` only on creation
        if self.internal_id is None:
            with transaction.atomic():
                last = (
                    OrderModel.objects.select_for_update()
                    .order_by("-internal_id")
                    .first()
                )
                self.internal_id = 1 if not last or last.internal_id is None else last.internal_id + 1

        super().save(*args, **kwargs)


class OrderLineModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="lines", on_delete=models.CASCADE)
    position = models.PositiveIntegerField()
    product_id = models.CharField(max_length=64)
    name = models.CharField(max_length=255)
    unit_price_cents = models.PositiveIntegerField()
    quantity = models.PositiveIntegerField()
    image_ref = models.CharField(max_length=500, null=True, blank=True)

    class Meta:
        db_table = "order_lines"
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=["order", "position"], name="ux_order_line_position"),
        ]


class OrderStatusChange(models.Model):
    """Append-only status history of an order."""

    order = models.ForeignKey(OrderModel, related_name="status_changes", on_delete=models.CASCADE)
    from_status = models.CharField(max_length=32, null=True, blank=True)
    to_status = models.CharField(max_length=32)
    reason = models.CharField(max_length=64, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_status_changes"
        ordering = ["id"]


class CartItemModel(models.Model):
    owner_id = models.CharField(max_length=64, db_index=True)
    product_id = models.CharField(max_length=64)
    quantity = models.PositiveIntegerField()
    added_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "cart_items"
        ordering = ["added_at", "id"]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
