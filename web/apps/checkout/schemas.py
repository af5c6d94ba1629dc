"""Pydantic schemas for the checkout API.

This module exposes the request/validation schemas used by the checkout and
payment endpoints and the read schemas used to render orders.
"""

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import OutcomeKind, PaymentMethod


class ShippingAddressIn(BaseModel):
    """Shipping address captured with the order.

    Unknown keys are kept so clients can send provider-specific details
    (landmark, state code) without a schema change.
    """

    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1, max_length=200)
    line1: str = Field(min_length=1, max_length=300)
    line2: Optional[str] = Field(default=None, max_length=300)
    city: str = Field(min_length=1, max_length=120)
    postal_code: str = Field(min_length=2, max_length=20)
    country: str = Field(min_length=2, max_length=2)
    phone: Optional[str] = Field(default=None, max_length=32)
    email: Optional[str] = Field(default=None, max_length=254)

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        """Normalize the ISO country code to uppercase."""
        v2 = v.upper()
        if not v2.isalpha():
            raise ValueError("Invalid country code")
        return v2


class CheckoutDTO(BaseModel):
    """Schema for starting a checkout.

    The cart itself is resolved server-side from the caller's identity.

    Attributes:
        shipping_address: Where to deliver the order.
        payment_method: One of ``hosted_checkout``, ``cash_on_delivery``,
            ``signed_provider``.
    """

    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod


class PaymentConfirmDTO(BaseModel):
    """Schema for a client-reported payment outcome.

    Attributes:
        order_id: The order being paid.
        outcome: ``paid``, ``failed`` or ``cancelled``.
        session_id: Hosted checkout session id (hosted checkout only).
        provider_order_id: Provider order id (signed provider only).
        payment_id: Provider payment id (signed provider only).
        signature: Provider signature over ``provider_order_id|payment_id``.
    """

    order_id: uuid.UUID
    outcome: OutcomeKind = OutcomeKind.PAID
    session_id: Optional[str] = Field(default=None, max_length=255)
    provider_order_id: Optional[str] = Field(default=None, max_length=255)
    payment_id: Optional[str] = Field(default=None, max_length=255)
    signature: Optional[str] = Field(default=None, max_length=255)


class OrderLineReadDTO(BaseModel):
    product_id: str
    name: str
    unit_price_cents: int
    quantity: int
    image_ref: Optional[str] = None


class OrderReadDTO(BaseModel):
    """Read projection of an order returned by every endpoint."""

    id: uuid.UUID
    status: str
    payment_method: str
    amount_cents: int
    currency: str
    lines: list[OrderLineReadDTO] = []
    shipping_address: dict = {}
    payment_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            status=order.status.value,
            payment_method=order.payment_method.value,
            amount_cents=order.total_cents,
            currency=order.currency,
            lines=[OrderLineReadDTO(**line.__dict__) for line in order.lines],
            shipping_address=order.shipping_address,
            payment_ref=order.payment_ref,
            created_at=order.created_at,
            paid_at=order.paid_at,
        )


class PaymentHandleDTO(BaseModel):
    method: str
    payment_ref: Optional[str] = None
    redirect_url: Optional[str] = None
    client_data: dict = {}


class ShortageDTO(BaseModel):
    product_id: str
    available: int
    requested: int


class CheckoutResponseDTO(BaseModel):
    order: OrderReadDTO
    payment: PaymentHandleDTO


class ErrorDTO(BaseModel):
    detail: str
    kind: Literal["client", "upstream"] = "client"
    retryable: bool = False
    shortages: Optional[list[ShortageDTO]] = None
