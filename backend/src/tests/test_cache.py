import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from ragrelay.cache import EmbeddingCache, cache_key
from ragrelay.models import EmbeddingVector


def _vector(*values: float) -> EmbeddingVector:
    return EmbeddingVector(values=tuple(values), model_id="m")


def test_cache_key_depends_on_model():
    assert cache_key("hello", "a") != cache_key("hello", "b")
    assert cache_key("hello", "a") == cache_key("hello", "a")


def test_lru_eviction_drops_least_recently_used():
    cache = EmbeddingCache(capacity=2)
    cache.put("a", _vector(1.0))
    cache.put("b", _vector(2.0))
    assert cache.get("a") is not None  # a is now most recent
    cache.put("c", _vector(3.0))

    assert "b" not in cache
    assert "a" in cache and "c" in cache
    assert len(cache) == 2


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        EmbeddingCache(capacity=0)


@pytest.mark.asyncio
async def test_get_or_load_calls_loader_once():
    cache = EmbeddingCache(capacity=4)
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        return _vector(0.5, 0.5)

    first = await cache.get_or_load("k", loader)
    second = await cache.get_or_load("k", loader)

    assert first == second
    assert calls == 1
    assert cache.hits == 1 and cache.misses == 1


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_load():
    cache = EmbeddingCache(capacity=4)
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.02)
        return _vector(1.0, 2.0)

    results = await asyncio.gather(*(cache.get_or_load("k", loader) for _ in range(5)))

    assert calls == 1
    assert all(result == results[0] for result in results)


@pytest.mark.asyncio
async def test_failed_load_is_not_cached():
    cache = EmbeddingCache(capacity=4)
    attempts = 0

    async def loader():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("boom")
        return _vector(1.0)

    with pytest.raises(RuntimeError):
        await cache.get_or_load("k", loader)
    assert "k" not in cache

    assert await cache.get_or_load("k", loader) == _vector(1.0)
    assert attempts == 2


@pytest.mark.asyncio
async def test_waiter_survives_cancelled_leader():
    cache = EmbeddingCache(capacity=4)
    started = asyncio.Event()
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        if calls == 1:
            started.set()
            await asyncio.sleep(3600)
        return _vector(9.0)

    leader = asyncio.create_task(cache.get_or_load("k", loader))
    await started.wait()
    waiter = asyncio.create_task(cache.get_or_load("k", loader))
    await asyncio.sleep(0)
    leader.cancel()

    assert await waiter == _vector(9.0)
    with pytest.raises(asyncio.CancelledError):
        await leader
    assert calls == 2


def test_hit_counter_stays_exact_across_threads():
    cache = EmbeddingCache(capacity=256)
    for idx in range(32):
        cache.put(f"k{idx}", _vector(float(idx)))

    async def loader():
        return _vector(1.0)

    def worker(idx: int) -> None:
        key = f"k{idx % 32}"
        asyncio.run(cache.get_or_load(key, loader))

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(worker, range(200)))

    assert cache.hits == 200
    assert cache.misses == 0
    assert len(cache) == 32
