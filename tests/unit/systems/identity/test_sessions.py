"""
Unit tests for the verification SessionStore.

Covers session creation, lazy TTL eviction, id uniqueness, and the
store's behaviour under concurrent use from several threads.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from heirloom.systems.identity.sessions import SessionStore


def _describe(request_id, nonce, wallet_address):
    return {"nonce": nonce, "walletAddress": wallet_address}


# ─── Creation ─────────────────────────────────────────────────────


class TestCreate:
    def test_returns_fresh_ids_and_descriptor(self, clock):
        store = SessionStore(ttl_s=600, clock=clock)

        session = store.create(_describe, "0xAA")

        assert session.request_id
        assert session.nonce
        assert session.request_id != session.nonce
        assert session.request == {"nonce": session.nonce, "walletAddress": "0xAA"}
        assert session.wallet_address == "0xAA"
        assert store.get(session.request_id) == session

    def test_describer_receives_ids_and_hint(self, clock):
        seen = []

        def describe(request_id, nonce, wallet_address):
            seen.append((request_id, nonce, wallet_address))
            return {}

        store = SessionStore(clock=clock)
        session = store.create(describe, None)

        assert seen == [(session.request_id, session.nonce, None)]

    def test_failed_describer_stores_nothing(self, clock):
        store = SessionStore(clock=clock)

        def explode(*_):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.create(explode)

        assert len(store) == 0

    def test_colliding_id_is_regenerated(self, clock):
        ids = iter(["dup", "n1", "dup", "other", "n2"])
        store = SessionStore(clock=clock, id_factory=lambda: next(ids))

        first = store.create(_describe)
        second = store.create(_describe)

        assert first.request_id == "dup"
        assert second.request_id == "other"

    def test_get_unknown_returns_none(self, clock):
        assert SessionStore(clock=clock).get("missing") is None


# ─── TTL eviction ─────────────────────────────────────────────────


class TestEviction:
    def test_retrievable_just_before_ttl(self, clock):
        store = SessionStore(ttl_s=600, clock=clock)
        session = store.create(_describe)

        clock.advance(599.9)
        store.create(_describe)

        assert store.get(session.request_id) is not None

    def test_evicted_by_create_after_ttl(self, clock):
        store = SessionStore(ttl_s=600, clock=clock)
        session = store.create(_describe)

        clock.advance(600.1)
        # Nothing is evicted until the next create()
        assert store.get(session.request_id) is not None

        fresh = store.create(_describe)

        assert store.get(session.request_id) is None
        assert store.get(fresh.request_id) is not None
        assert store.stats()["evicted_total"] == 1

    def test_eviction_reaps_every_expired_session(self, clock):
        store = SessionStore(ttl_s=10, clock=clock)
        old = [store.create(_describe) for _ in range(5)]
        clock.advance(5)
        young = store.create(_describe)
        clock.advance(6)

        store.create(_describe)

        assert all(store.get(s.request_id) is None for s in old)
        assert store.get(young.request_id) is not None
        assert len(store) == 2


# ─── Concurrency ──────────────────────────────────────────────────


class TestConcurrency:
    def test_parallel_creates_produce_unique_sessions(self):
        store = SessionStore(ttl_s=600)
        barrier = threading.Barrier(8)

        def worker(_):
            barrier.wait()
            return [store.create(_describe).request_id for _ in range(50)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            batches = list(pool.map(worker, range(8)))

        ids = [rid for batch in batches for rid in batch]
        assert len(ids) == 400
        assert len(set(ids)) == 400
        assert len(store) == 400
        assert all(store.get(rid) is not None for rid in ids)
