import asyncio
import dataclasses

import pytest

from tscache.cache import CacheEntry, ExpiringCache
from tscache.errors import UpstreamFetchError, UpstreamTimeoutError

KEY = "AAPL-1min-t0-t1"


def make_cache(clock, **kw) -> ExpiringCache:
    kw.setdefault("ttl_s", 600.0)
    kw.setdefault("refresh_interval_s", 60.0)
    return ExpiringCache(clock=clock, **kw)


# --- storage & validity ---


def test_entry_is_immutable():
    entry = CacheEntry(data=[1], stored_at=0.0)
    with pytest.raises(dataclasses.FrozenInstanceError):
        entry.data = [2]


def test_get_within_ttl_then_expires_and_evicts(clock):
    cache = make_cache(clock)
    cache.set(KEY, "D1")

    clock.advance(500.0)
    assert cache.get(KEY) == "D1"

    clock.advance(100.001)  # T=600.001
    assert cache.get(KEY) is None
    assert KEY not in cache.keys()
    assert len(cache) == 0


def test_entry_is_valid_at_exactly_ttl(clock):
    cache = make_cache(clock)
    cache.set(KEY, "D1")
    clock.advance(600.0)
    assert cache.get(KEY) == "D1"


def test_get_is_idempotent_until_expiry(clock):
    cache = make_cache(clock, ttl_s=10)
    cache.set(KEY, "D1")
    assert [cache.get(KEY) for _ in range(3)] == ["D1"] * 3
    clock.advance(11)
    assert [cache.get(KEY) for _ in range(3)] == [None] * 3


def test_get_missing_key_returns_none(clock):
    assert make_cache(clock).get("nope") is None


def test_set_replaces_and_restamps(clock):
    cache = make_cache(clock, ttl_s=10)
    cache.set(KEY, "D1")
    clock.advance(8)
    cache.set(KEY, "D2")
    clock.advance(8)  # 16s after first set, 8s after second
    assert cache.get(KEY) == "D2"


def test_contains_does_not_evict(clock):
    cache = make_cache(clock, ttl_s=10)
    cache.set(KEY, "D1")
    assert KEY in cache
    clock.advance(11)
    assert KEY not in cache
    assert cache.keys() == [KEY]


def test_invalidate_and_clear(clock):
    cache = make_cache(clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.invalidate("a")
    assert cache.get("a") is None
    cache.clear()
    assert len(cache) == 0


# --- fetch_or_load ---


async def test_fetch_or_load_miss_then_hit(clock, seq_loader):
    cache = make_cache(clock)
    loader = seq_loader(["bar"])

    assert await cache.fetch_or_load(KEY, loader) == ["bar"]
    assert await cache.fetch_or_load(KEY, loader) == ["bar"]
    assert loader.calls == 1
    assert cache.get(KEY) == ["bar"]


async def test_fetch_or_load_reloads_after_expiry(clock, seq_loader):
    cache = make_cache(clock, ttl_s=10)
    loader = seq_loader("D1", "D2")
    assert await cache.fetch_or_load(KEY, loader) == "D1"
    clock.advance(11)
    assert await cache.fetch_or_load(KEY, loader) == "D2"
    assert loader.calls == 2


async def test_empty_payload_is_cached(clock, seq_loader):
    cache = make_cache(clock)
    loader = seq_loader([])
    assert await cache.fetch_or_load(KEY, loader) == []
    assert await cache.fetch_or_load(KEY, loader) == []
    assert loader.calls == 1


async def test_foreground_failure_propagates_and_caches_nothing(clock, seq_loader):
    cache = make_cache(clock)
    boom = UpstreamFetchError("Unexpected API response")
    loader = seq_loader(boom, "D1")

    with pytest.raises(UpstreamFetchError) as excinfo:
        await cache.fetch_or_load("X", loader)
    assert excinfo.value is boom
    assert cache.get("X") is None
    assert "X" not in cache.keys()

    # no negative caching: the next call goes upstream again
    assert await cache.fetch_or_load("X", loader) == "D1"
    assert loader.calls == 2


async def test_non_upstream_errors_propagate_unchanged(clock, seq_loader):
    cache = make_cache(clock)
    err = KeyError("shape")
    with pytest.raises(KeyError) as excinfo:
        await cache.fetch_or_load("X", seq_loader(err))
    assert excinfo.value is err


async def test_none_payload_is_a_failure(clock, seq_loader):
    cache = make_cache(clock)
    with pytest.raises(UpstreamFetchError):
        await cache.fetch_or_load("X", seq_loader(None))
    assert cache.get("X") is None


async def test_slow_loader_times_out_and_leaves_key_absent(clock):
    cache = make_cache(clock, fetch_timeout_s=0.05)

    async def slow():
        await asyncio.sleep(1)
        return "late"

    with pytest.raises(UpstreamTimeoutError):
        await cache.fetch_or_load("X", slow)
    assert cache.get("X") is None


async def test_concurrent_misses_share_one_loader_call(clock):
    cache = make_cache(clock)
    gate = asyncio.Event()
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        await gate.wait()
        return ["shared"]

    waiters = [asyncio.create_task(cache.fetch_or_load(KEY, loader)) for _ in range(5)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*waiters)

    assert calls == 1
    assert results == [["shared"]] * 5
    assert all(r is results[0] for r in results)


async def test_concurrent_misses_share_one_failure(clock):
    cache = make_cache(clock)
    gate = asyncio.Event()
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        await gate.wait()
        raise UpstreamFetchError("down")

    waiters = [asyncio.create_task(cache.fetch_or_load(KEY, loader)) for _ in range(3)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*waiters, return_exceptions=True)

    assert calls == 1
    assert all(isinstance(r, UpstreamFetchError) for r in results)
    assert cache.get(KEY) is None


async def test_cancelled_waiter_does_not_cancel_shared_load(clock):
    cache = make_cache(clock)
    gate = asyncio.Event()

    async def loader():
        await gate.wait()
        return "D"

    first = asyncio.create_task(cache.fetch_or_load(KEY, loader))
    second = asyncio.create_task(cache.fetch_or_load(KEY, loader))
    await asyncio.sleep(0)
    first.cancel()
    gate.set()

    assert await second == "D"
    with pytest.raises(asyncio.CancelledError):
        await first
    assert cache.get(KEY) == "D"


# --- background refresh ---


async def test_refresh_overwrites_valid_entry(clock, seq_loader):
    cache = make_cache(clock)
    loader = seq_loader("D1", "D2")
    await cache.fetch_or_load(KEY, loader)  # T=0

    clock.advance(60)  # T=60
    assert await cache.refresh_once() == 1

    clock.advance(60)  # T=120
    assert cache.get(KEY) == "D2"
    assert loader.calls == 2


async def test_refresh_resets_entry_age(clock, seq_loader):
    cache = make_cache(clock, ttl_s=100)
    await cache.fetch_or_load(KEY, seq_loader("D1", "D2"))
    clock.advance(90)
    await cache.refresh_once()
    clock.advance(90)  # 180s after first load, 90s after refresh
    assert cache.get(KEY) == "D2"


async def test_refresh_leaves_expired_entries_untouched(clock, seq_loader):
    cache = make_cache(clock)
    loader = seq_loader("D1", "D2")
    await cache.fetch_or_load(KEY, loader)

    clock.advance(600.001)
    assert await cache.refresh_once() == 0
    assert loader.calls == 1
    assert cache.keys() == [KEY]  # still there until read
    assert cache.get(KEY) is None


async def test_failed_refresh_keeps_previous_value(clock, seq_loader):
    cache = make_cache(clock)
    loader = seq_loader("D1", UpstreamFetchError("rate limited"))
    await cache.fetch_or_load("Y", loader)

    clock.advance(60)
    assert await cache.refresh_once() == 0
    assert cache.get("Y") == "D1"

    # the failed refresh did not restamp the entry: it expires 600s after the first load
    clock.advance(540)  # T=600
    assert cache.get("Y") == "D1"
    clock.advance(0.001)
    assert cache.get("Y") is None


async def test_refresh_failure_does_not_stop_the_pass(clock, seq_loader):
    cache = make_cache(clock)
    bad = seq_loader("B1", RuntimeError("boom"))
    good = seq_loader("G1", "G2")
    await cache.fetch_or_load("bad", bad)
    await cache.fetch_or_load("good", good)

    assert await cache.refresh_once() == 1
    assert cache.get("bad") == "B1"
    assert cache.get("good") == "G2"


async def test_entries_without_loader_are_not_refreshed(clock):
    cache = make_cache(clock)
    cache.set(KEY, "manual")
    assert await cache.refresh_once() == 0
    assert cache.get(KEY) == "manual"


async def test_manual_set_detaches_previous_loader(clock, seq_loader):
    cache = make_cache(clock)
    loader = seq_loader("FROM_LOADER")
    await cache.fetch_or_load(KEY, loader)

    cache.set(KEY, "MANUAL")
    assert await cache.refresh_once() == 0
    assert cache.get(KEY) == "MANUAL"
    assert loader.calls == 1


async def test_refresh_passes_do_not_overlap(clock):
    cache = make_cache(clock)
    gate = asyncio.Event()
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        if calls > 1:
            await gate.wait()
        return calls

    await cache.fetch_or_load(KEY, loader)

    first_pass = asyncio.create_task(cache.refresh_once())
    await asyncio.sleep(0)
    assert await cache.refresh_once() == 0  # skipped: previous pass in flight
    gate.set()
    assert await first_pass == 1
    assert calls == 2


async def test_refresh_with_jitter_still_refreshes(clock, seq_loader):
    cache = make_cache(clock, refresh_jitter_s=0.001)
    await cache.fetch_or_load(KEY, seq_loader("D1", "D2"))
    assert await cache.refresh_once() == 1
    assert cache.get(KEY) == "D2"


async def test_refresh_loop_runs_periodically(clock):
    cache = make_cache(clock, refresh_interval_s=0.01)
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        return calls

    await cache.fetch_or_load(KEY, loader)
    cache.start()
    assert cache.running
    cache.start()  # no-op when already running

    await asyncio.sleep(0.1)
    await cache.stop()

    assert not cache.running
    assert calls >= 2
    assert cache.get(KEY) >= 2


async def test_stop_without_start_is_noop(clock):
    cache = make_cache(clock)
    await cache.stop()
    assert not cache.running


async def test_stop_cancels_loads_in_flight(clock):
    cache = make_cache(clock)
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.Event().wait()

    cache.start()
    waiter = asyncio.create_task(cache.fetch_or_load(KEY, hang))
    await started.wait()

    await cache.stop()

    assert not cache.running
    assert cache._inflight == {}
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert cache.get(KEY) is None
