"""Tests for the in-memory stock ledger contract.

The same contract is implemented by the inventory service; these tests pin
the semantics the checkout flow relies on: atomic multi-item reservations,
idempotent release/commit and safe retries keyed by reference.
"""

import threading
from datetime import timedelta

import pytest

from apps.checkout.adapters import InMemoryInventory
from apps.checkout.domain import (
    InsufficientStock,
    ProductInfo,
    Reservation,
    ReservationConflict,
    ReservationNotFound,
    ReservationState,
    StockRequest,
)


def _ledger(**stock):
    return InMemoryInventory([(ProductInfo(sku, sku.lower(), 100), qty) for sku, qty in stock.items()])


def test_n_plus_one_concurrent_reservations():
    """Stock N, N+1 concurrent single-unit reservations: exactly N succeed."""
    n = 10
    ledger = _ledger(P=n)
    barrier = threading.Barrier(n + 1)
    results = []

    def reserve(i):
        barrier.wait()
        results.append(ledger.check_and_reserve(f"order-{i}", [StockRequest("P", 1)]))

    threads = [threading.Thread(target=reserve, args=(i,)) for i in range(n + 1)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(isinstance(r, Reservation) for r in results) == n
    assert sum(isinstance(r, InsufficientStock) for r in results) == 1
    assert ledger.stock("P") == 0


def test_multi_item_reserve_is_all_or_nothing():
    ledger = _ledger(A=5, B=1)

    out = ledger.check_and_reserve("o1", [StockRequest("A", 2), StockRequest("B", 2), StockRequest("C", 1)])

    assert isinstance(out, InsufficientStock)
    assert {(s.product_id, s.available, s.requested) for s in out.shortages} == {("B", 1, 2), ("C", 0, 1)}
    assert ledger.stock("A") == 5
    assert ledger.stock("B") == 1


def test_same_reference_returns_existing_reservation():
    ledger = _ledger(A=5)

    first = ledger.check_and_reserve("o1", [StockRequest("A", 2)])
    retry = ledger.check_and_reserve("o1", [StockRequest("A", 2)])

    assert retry.id == first.id
    assert ledger.stock("A") == 3


def test_release_is_idempotent():
    ledger = _ledger(A=5)
    r = ledger.check_and_reserve("o1", [StockRequest("A", 2)])

    ledger.release(r.id)
    ledger.release(r.id)

    assert ledger.stock("A") == 5
    assert ledger.reservation(r.id).state == ReservationState.RELEASED


def test_release_after_commit_is_a_noop():
    ledger = _ledger(A=5)
    r = ledger.check_and_reserve("o1", [StockRequest("A", 2)])

    ledger.commit(r.id)
    ledger.commit(r.id)
    ledger.release(r.id)

    assert ledger.stock("A") == 3
    assert ledger.reservation(r.id).state == ReservationState.COMMITTED


def test_commit_after_release_conflicts():
    ledger = _ledger(A=5)
    r = ledger.check_and_reserve("o1", [StockRequest("A", 2)])
    ledger.release(r.id)

    with pytest.raises(ReservationConflict):
        ledger.commit(r.id)
    assert ledger.stock("A") == 5


def test_unknown_reservation():
    with pytest.raises(ReservationNotFound):
        _ledger(A=1).release("missing")


def test_held_reservations_respects_age():
    ledger = _ledger(A=5)
    old = ledger.check_and_reserve("old", [StockRequest("A", 1)])
    ledger.check_and_reserve("new", [StockRequest("A", 1)])
    done = ledger.check_and_reserve("done", [StockRequest("A", 1)])
    ledger.age(old.id, timedelta(hours=1))
    ledger.age(done.id, timedelta(hours=1))
    ledger.commit(done.id)

    held = ledger.held_reservations(timedelta(minutes=30))

    assert [r.reference for r in held] == ["old"]
