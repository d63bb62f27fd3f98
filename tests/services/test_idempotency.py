from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from threading import Barrier

import pytest

from shipfree.services.billing.errors import PersistenceError
from shipfree.services.billing.idempotency import (
    ClaimResult,
    DatabaseIdempotencyStore,
    InMemoryIdempotencyStore,
)
from tests.helpers.billing import T0


class _Clock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self):
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, clock, sqlite_engine):
    if request.param == "memory":
        return InMemoryIdempotencyStore(claim_ttl_seconds=60, clock=clock)
    return DatabaseIdempotencyStore(sqlite_engine, claim_ttl_seconds=60, clock=clock)


def test_first_claim_is_fresh_and_second_is_duplicate(store):
    assert store.try_begin("evt_1", provider="stripe") is ClaimResult.FRESH
    assert store.try_begin("evt_1", provider="stripe") is ClaimResult.DUPLICATE
    assert store.is_applied("evt_1") is False


def test_committed_claim_stays_duplicate_after_ttl(store, clock):
    store.try_begin("evt_1", provider="stripe", event_type="invoice.paid")
    store.commit("evt_1")
    clock.advance(3600)

    assert store.is_applied("evt_1") is True
    assert store.try_begin("evt_1", provider="stripe") is ClaimResult.DUPLICATE


def test_released_claim_can_be_taken_again(store):
    store.try_begin("evt_1", provider="stripe")
    store.release("evt_1")

    assert store.try_begin("evt_1", provider="stripe") is ClaimResult.FRESH


def test_release_does_not_drop_applied_claim(store):
    store.try_begin("evt_1", provider="stripe")
    store.commit("evt_1")
    store.release("evt_1")

    assert store.is_applied("evt_1") is True


def test_abandoned_claim_is_taken_over_after_ttl(store, clock):
    store.try_begin("evt_1", provider="stripe")
    clock.advance(30)
    assert store.try_begin("evt_1", provider="stripe") is ClaimResult.DUPLICATE

    clock.advance(31)
    assert store.try_begin("evt_1", provider="stripe") is ClaimResult.FRESH
    assert store.try_begin("evt_1", provider="stripe") is ClaimResult.DUPLICATE


def test_commit_without_claim_raises(store):
    with pytest.raises(PersistenceError):
        store.commit("evt_missing")


def test_concurrent_claims_have_exactly_one_winner():
    store = InMemoryIdempotencyStore()
    workers = 16
    barrier = Barrier(workers)

    def claim(_: int) -> ClaimResult:
        barrier.wait()
        return store.try_begin("evt_race", provider="lemonsqueezy")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(claim, range(workers)))

    assert results.count(ClaimResult.FRESH) == 1
    assert results.count(ClaimResult.DUPLICATE) == workers - 1
