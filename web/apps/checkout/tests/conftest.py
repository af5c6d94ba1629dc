import pytest

from apps.checkout.adapters import (
    CashOnDelivery,
    HostedCheckoutStub,
    InMemoryCart,
    InMemoryInventory,
    InMemoryOrderStore,
    SignedProviderStub,
)
from apps.checkout.domain import PaymentMethodRegistry, ProductInfo
from apps.checkout.services import CheckoutService, PaymentReconciler

OWNER = "u-1"
ADDRESS = {"name": "Asha", "line1": "12 MG Road", "city": "Pune", "postal_code": "411001", "country": "IN"}


class World:
    """In-memory wiring of the checkout services, exposed for assertions."""

    def __init__(self):
        self.inventory = InMemoryInventory(
            [(ProductInfo("P1", "Ceramic mug", 100, "img/p1.png"), 5), (ProductInfo("P2", "Poster", 250), 1)]
        )
        self.orders = InMemoryOrderStore()
        self.cart = InMemoryCart()
        self.hosted = HostedCheckoutStub(webhook_secret="whsec_test")
        self.signed = SignedProviderStub(key_secret="rzp_secret_test", webhook_secret="rzp_whsec_test")
        self.registry = PaymentMethodRegistry([CashOnDelivery(), self.hosted, self.signed])
        self.reconciler = PaymentReconciler(self.orders, self.inventory, self.cart, self.registry)
        self.checkout = CheckoutService(
            catalog=self.inventory,
            inventory=self.inventory,
            cart=self.cart,
            orders=self.orders,
            payment_methods=self.registry,
            reconciler=self.reconciler,
        )


@pytest.fixture
def world():
    return World()
