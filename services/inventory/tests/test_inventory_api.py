"""HTTP tests for the inventory service, run against a throwaway database.

The default database is SQLite, which ignores ``SELECT ... FOR UPDATE``, so
these tests check single-request semantics only. Point
``INVENTORY_TEST_DATABASE_URL`` at PostgreSQL to also run the concurrent
reservation test; the gateway's in-memory ledger tests cover the same rule
under threads.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

import repo


def _reserve(api, reference, *items):
    return api.post(
        "/reservations",
        json={"reference": reference, "items": [{"sku": s, "quantity": q} for s, q in items]},
    )


def _stock(sku):
    return {p.sku: p.quantity for p in repo.InventoryRepo().get_products([sku])}[sku]


def test_health(api):
    r = api.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_products_lookup(api, catalog):
    r = api.get("/products", params=[("ids", "P1"), ("ids", "NOPE")])

    assert r.status_code == 200
    assert r.json() == [
        {"sku": "P1", "name": "Ceramic mug", "price_cents": 100, "image_ref": "img/p1.png", "quantity": 5}
    ]


def test_put_product_upserts(api):
    r1 = api.put("/products/P9", json={"name": "Lamp", "price_cents": 999, "quantity": 2})
    r2 = api.put("/products/P9", json={"name": "Lamp", "price_cents": 899, "quantity": 4})

    assert r1.status_code == r2.status_code == 200
    assert r2.json()["price_cents"] == 899
    assert _stock("P9") == 4


def test_reserve_holds_stock(api, catalog):
    r = _reserve(api, "order-1", ("P1", 2), ("P2", 1))

    assert r.status_code == 201
    body = r.json()
    assert body["reference"] == "order-1"
    assert body["state"] == "HELD"
    assert body["items"] == [{"sku": "P1", "quantity": 2}, {"sku": "P2", "quantity": 1}]
    assert _stock("P1") == 3
    assert _stock("P2") == 0


def test_reserve_is_all_or_nothing(api, catalog):
    r = _reserve(api, "order-1", ("P1", 2), ("P2", 3))

    assert r.status_code == 422
    assert r.json()["detail"] == {
        "detail": "INSUFFICIENT_STOCK",
        "shortages": [{"sku": "P2", "available": 1, "requested": 3}],
    }
    assert _stock("P1") == 5
    assert _stock("P2") == 1


def test_unknown_sku_is_a_shortage(api, catalog):
    r = _reserve(api, "order-1", ("GHOST", 1))

    assert r.status_code == 422
    assert r.json()["detail"]["shortages"] == [{"sku": "GHOST", "available": 0, "requested": 1}]


def test_duplicate_skus_are_summed(api, catalog):
    r = _reserve(api, "order-1", ("P1", 2), ("P1", 3))

    assert r.status_code == 201
    assert r.json()["items"] == [{"sku": "P1", "quantity": 5}]
    assert _stock("P1") == 0


def test_same_reference_returns_existing_reservation(api, catalog):
    first = _reserve(api, "order-1", ("P1", 2)).json()
    again = _reserve(api, "order-1", ("P1", 2))

    assert again.status_code == 201
    assert again.json()["id"] == first["id"]
    assert _stock("P1") == 3


def test_release_restores_stock_once(api, catalog):
    rid = _reserve(api, "order-1", ("P1", 2)).json()["id"]

    r1 = api.post(f"/reservations/{rid}/release")
    r2 = api.post(f"/reservations/{rid}/release")

    assert r1.status_code == r2.status_code == 200
    assert r2.json()["state"] == "RELEASED"
    assert _stock("P1") == 5


def test_commit_keeps_stock_and_blocks_release(api, catalog):
    rid = _reserve(api, "order-1", ("P1", 2)).json()["id"]

    assert api.post(f"/reservations/{rid}/commit").json()["state"] == "COMMITTED"
    assert api.post(f"/reservations/{rid}/commit").status_code == 200
    assert api.post(f"/reservations/{rid}/release").json()["state"] == "COMMITTED"
    assert _stock("P1") == 3


def test_commit_after_release_conflicts(api, catalog):
    rid = _reserve(api, "order-1", ("P1", 2)).json()["id"]
    api.post(f"/reservations/{rid}/release")

    r = api.post(f"/reservations/{rid}/commit")

    assert r.status_code == 409
    assert r.json()["detail"] == "RESERVATION_RELEASED"


@pytest.mark.parametrize("action", ["commit", "release"])
def test_unknown_reservation_is_404(api, action):
    assert api.post(f"/reservations/missing/{action}").status_code == 404


def test_list_held_reservations(api, catalog):
    held = _reserve(api, "order-1", ("P1", 1)).json()["id"]
    released = _reserve(api, "order-2", ("P1", 1)).json()["id"]
    api.post(f"/reservations/{released}/release")

    r = api.get("/reservations", params={"state": "HELD", "older_than_seconds": 0})

    assert [x["id"] for x in r.json()] == [held]
    young = api.get("/reservations", params={"state": "HELD", "older_than_seconds": 3600})
    assert young.json() == []


def test_request_id_round_trip(api):
    r = api.get("/health", headers={"X-Request-ID": "req-9"})
    assert r.headers["X-Request-ID"] == "req-9"


def test_validation(api):
    r = api.post("/reservations", json={"reference": "order-1", "items": [{"sku": "P1", "quantity": 0}]})
    assert r.status_code == 422
    assert _reserve(api, "order-1").status_code == 422


@pytest.mark.skipif(not repo.DATABASE_URL.startswith("postgresql"), reason="row locks need PostgreSQL")
def test_concurrent_reservations_never_oversell(catalog):
    def attempt(i):
        try:
            repo.InventoryRepo().reserve(f"order-{i}", [("P1", 1)])
            return True
        except repo.InsufficientStock:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(8)))

    assert results.count(True) == 5
    assert _stock("P1") == 0
