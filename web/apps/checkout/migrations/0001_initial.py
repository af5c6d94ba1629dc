import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="OrderModel",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("internal_id", models.BigIntegerField(editable=False, null=True, unique=True)),
                ("owner_id", models.CharField(db_index=True, max_length=64)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("confirmed", "Confirmed"),
                            ("paid", "Paid"),
                            ("payment_failed", "Payment Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="pending",
                        max_length=32,
                    ),
                ),
                (
                    "payment_method",
                    models.CharField(
                        choices=[
                            ("hosted_checkout", "Hosted Checkout"),
                            ("cash_on_delivery", "Cash On Delivery"),
                            ("signed_provider", "Signed Provider"),
                        ],
                        max_length=32,
                    ),
                ),
                ("total_cents", models.PositiveIntegerField(default=0)),
                ("currency", models.CharField(default="INR", max_length=3)),
                ("shipping_address", models.JSONField(blank=True, default=dict)),
                ("reservation_id", models.CharField(blank=True, max_length=64, null=True)),
                ("attempt_ref", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("payment_ref", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ("version", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "db_table": "orders",
                "ordering": ["-internal_id"],
            },
        ),
        migrations.CreateModel(
            name="CartItemModel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("owner_id", models.CharField(db_index=True, max_length=64)),
                ("product_id", models.CharField(max_length=64)),
                ("quantity", models.PositiveIntegerField()),
                ("added_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "cart_items",
                "ordering": ["added_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="OrderLineModel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("position", models.PositiveIntegerField()),
                ("product_id", models.CharField(max_length=64)),
                ("name", models.CharField(max_length=255)),
                ("unit_price_cents", models.PositiveIntegerField()),
                ("quantity", models.PositiveIntegerField()),
                ("image_ref", models.CharField(blank=True, max_length=500, null=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="checkout.ordermodel",
                    ),
                ),
            ],
            options={
                "db_table": "order_lines",
                "ordering": ["position"],
            },
        ),
        migrations.AddConstraint(
            model_name="orderlinemodel",
            constraint=models.UniqueConstraint(fields=("order", "position"), name="ux_order_line_position"),
        ),
        migrations.CreateModel(
            name="OrderStatusChange",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("from_status", models.CharField(blank=True, max_length=32, null=True)),
                ("to_status", models.CharField(max_length=32)),
                ("reason", models.CharField(blank=True, default="", max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="status_changes",
                        to="checkout.ordermodel",
                    ),
                ),
            ],
            options={
                "db_table": "order_status_changes",
                "ordering": ["id"],
            },
        ),
        migrations.CreateModel(
            name="IdempotencyKey",
            fields=[
                ("key", models.CharField(max_length=200, primary_key=True, serialize=False)),
                ("request_hash", models.CharField(max_length=64)),
                ("response_status", models.PositiveSmallIntegerField(default=0)),
                ("response_body", models.JSONField(default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "order",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to="checkout.ordermodel",
                    ),
                ),
            ],
            options={
                "db_table": "idempotency_keys",
            },
        ),
    ]
