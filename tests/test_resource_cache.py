"""Tests for the bounded resource cache store and its entries."""

from __future__ import annotations

import threading

import pytest

from pagesmith.domain.resources.cache import CacheEntry, CacheStore
from pagesmith.domain.resources.fetcher import FetchResult


def _entry(data=None, *, status_code=200, fetched_at=0.0, ttl=60.0) -> CacheEntry:
    return CacheEntry(
        data=data if data is not None else {"ok": True},
        status_code=status_code,
        fetched_at=fetched_at,
        expires_at=fetched_at + ttl,
    )


class TestCacheEntry:
    def test_from_result_uses_headers_then_default(self):
        result = FetchResult(
            url="https://a.example.com",
            status_code=200,
            data={"a": 1},
            fetched_at=100.0,
            headers={"cache-control": "max-age=30"},
        )
        assert CacheEntry.from_result(result).expires_at == 130.0

        bare = FetchResult(url="https://a.example.com", status_code=200, data={}, fetched_at=100.0)
        assert CacheEntry.from_result(bare).expires_at == 160.0
        assert CacheEntry.from_result(bare, default_freshness=5).expires_at == 105.0

    def test_expired_at_deadline(self):
        entry = _entry(fetched_at=100.0, ttl=10.0)

        assert not entry.expired(109.9)
        assert entry.expired(110.0)

    def test_max_age_rounds_and_never_goes_negative(self):
        entry = _entry(fetched_at=100.0, ttl=10.0)

        assert entry.max_age(100.0) == 10
        assert entry.max_age(100.4) == 10
        assert entry.max_age(100.6) == 9
        assert entry.max_age(500.0) == 0

    def test_lock_is_a_compare_and_swap(self):
        entry = _entry()

        assert entry.lock() is True
        assert entry.refreshing
        assert entry.lock() is False
        entry.unlock()
        assert not entry.refreshing
        assert entry.lock() is True

    def test_only_one_thread_wins_the_lock(self):
        entry = _entry()
        winners = []
        barrier = threading.Barrier(8)

        def contend():
            barrier.wait()
            if entry.lock():
                winners.append(threading.get_ident())

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1


class TestCacheStore:
    def test_get_and_set(self, clock):
        store = CacheStore(clock=clock)
        entry = _entry()

        store.set("k", entry)

        assert store.get("k") is entry
        assert "k" in store
        assert len(store) == 1
        assert store.get("missing") is None

    def test_non_success_entries_are_refused(self, clock):
        store = CacheStore(clock=clock)

        with pytest.raises(ValueError):
            store.set("k", _entry(status_code=500))
        assert len(store) == 0

    def test_evicts_least_recently_used_beyond_capacity(self, clock):
        store = CacheStore(clock=clock)
        for index in range(50):
            store.set(f"k{index}", _entry({"i": index}))

        # Touch the oldest so it becomes most recently used.
        assert store.get("k0") is not None
        store.set("k50", _entry({"i": 50}))

        assert len(store) == 50
        assert "k0" in store
        assert "k1" not in store
        assert "k50" in store

    def test_age_ceiling_drops_entries_regardless_of_freshness(self, clock):
        store = CacheStore(max_age=100, clock=clock)
        store.set("k", _entry(ttl=10_000))

        clock.advance(99)
        assert store.get("k") is not None
        clock.advance(1)
        assert store.get("k") is None
        assert "k" not in store

    def test_replacing_an_entry_resets_its_age(self, clock):
        store = CacheStore(max_age=100, clock=clock)
        store.set("k", _entry({"v": 1}))
        clock.advance(90)
        store.set("k", _entry({"v": 2}))
        clock.advance(90)

        entry = store.get("k")
        assert entry is not None
        assert entry.data == {"v": 2}

    def test_pop_clear_and_keys(self, clock):
        store = CacheStore(clock=clock)
        store.set("a", _entry())
        store.set("b", _entry())

        assert store.keys() == ["a", "b"]
        assert list(store) == ["a", "b"]
        assert store.pop("a") is not None
        assert store.pop("a") is None
        store.clear()
        assert len(store) == 0

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            CacheStore(max_entries=0)
