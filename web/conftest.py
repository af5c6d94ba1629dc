# Make the gateway packages (config, gateway, apps) importable before collection
import sys
from pathlib import Path

import pytest

BASE_DIR = Path(__file__).resolve().parent  # .../web
p = str(BASE_DIR)
if p not in sys.path:
    sys.path.insert(0, p)


@pytest.fixture
def inventory():
    """Seeded in-memory catalog and ledger: P1 (5 in stock), P2 (1 in stock)."""
    from apps.checkout.adapters import InMemoryInventory
    from apps.checkout.domain import ProductInfo

    return InMemoryInventory(
        [
            (ProductInfo("P1", "Ceramic mug", 100, "img/p1.png"), 5),
            (ProductInfo("P2", "Poster", 250, None), 1),
        ]
    )


@pytest.fixture(autouse=True)
def checkout_services(settings, inventory):
    """Install fresh stub-backed services for every test."""
    from django.core.cache import cache

    from apps.checkout import providers

    settings.USE_HTTP_ADAPTERS = False
    settings.STRIPE_WEBHOOK_SECRET = "whsec_test"
    settings.SIGNED_PROVIDER_KEY_SECRET = "rzp_secret_test"
    settings.SIGNED_PROVIDER_WEBHOOK_SECRET = "rzp_whsec_test"
    cache.clear()  # throttle counters
    return providers.install(providers.build_services(inventory=inventory))


@pytest.fixture
def user(django_user_model):
    return django_user_model.objects.create_user(username="alice", password="pw")


@pytest.fixture
def auth_client(client, user):
    client.force_login(user)
    return client


@pytest.fixture
def add_to_cart(db):
    from apps.checkout.models import CartItemModel

    def _add(owner, product_id, quantity):
        return CartItemModel.objects.create(owner_id=str(owner.pk), product_id=product_id, quantity=quantity)

    return _add
