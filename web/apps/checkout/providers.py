"""Service wiring for checkout.

``build_services`` constructs the object graph once: ports, payment method
adapters, ``CheckoutService``, ``PaymentReconciler`` and
``ReservationSweeper``. ``CheckoutConfig.ready()`` installs the result at
process start and views fetch it with ``get_services()``; nothing is
created lazily per request.

When ``settings.USE_HTTP_ADAPTERS`` is truthy the inventory service and the
payment providers are reached over HTTP. Otherwise in-process stubs are
used, which is what tests and local development rely on.
"""

from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings

from .adapters import CashOnDelivery, HostedCheckoutStub, InMemoryInventory, SignedProviderStub
from .domain import PaymentMethodRegistry
from .http_adapters import HostedCheckoutClient, HttpInventoryClient, SignedProviderClient
from .repository import CartRepository, OrderRepository
from .services import CheckoutService, PaymentReconciler, ReservationSweeper


@dataclass(frozen=True)
class CheckoutServices:
    checkout: CheckoutService
    reconciler: PaymentReconciler
    sweeper: ReservationSweeper
    orders: OrderRepository
    payment_methods: PaymentMethodRegistry
    inventory: object


_services: CheckoutServices | None = None


def build_services(inventory=None, payment_adapters=None) -> CheckoutServices:
    """Return a fully wired set of checkout services.

    Args:
        inventory: Optional object implementing both ``CatalogPort`` and
            ``InventoryPort``; defaults to the HTTP client or the in-memory
            stub depending on ``USE_HTTP_ADAPTERS``.
        payment_adapters: Optional list of payment method adapters replacing
            the defaults.
    """
    use_http = getattr(settings, "USE_HTTP_ADAPTERS", True)

    if inventory is None:
        inventory = HttpInventoryClient() if use_http else InMemoryInventory()
    if payment_adapters is None:
        if use_http:
            payment_adapters = [CashOnDelivery(), HostedCheckoutClient(), SignedProviderClient()]
        else:
            payment_adapters = [CashOnDelivery(), HostedCheckoutStub(), SignedProviderStub()]

    orders = OrderRepository()
    cart = CartRepository()
    registry = PaymentMethodRegistry(payment_adapters)
    reconciler = PaymentReconciler(orders=orders, inventory=inventory, cart=cart, payment_methods=registry)
    checkout = CheckoutService(
        catalog=inventory,
        inventory=inventory,
        cart=cart,
        orders=orders,
        payment_methods=registry,
        reconciler=reconciler,
        currency=settings.CHECKOUT_CURRENCY,
    )
    sweeper = ReservationSweeper(
        inventory=inventory,
        orders=orders,
        grace=timedelta(seconds=settings.RESERVATION_GRACE_SECONDS),
    )
    return CheckoutServices(
        checkout=checkout,
        reconciler=reconciler,
        sweeper=sweeper,
        orders=orders,
        payment_methods=registry,
        inventory=inventory,
    )


def install(services: CheckoutServices) -> CheckoutServices:
    global _services
    _services = services
    return services


def get_services() -> CheckoutServices:
    if _services is None:
        raise RuntimeError("checkout services are not installed; is apps.checkout in INSTALLED_APPS?")
    return _services
