import asyncio

import pytest

from content_identity.errors import ManifestFetchError
from content_identity.service.hashing import content_hash
from content_identity.service.manifest_builder import build_manifest
from content_identity.service.manifest_cache import ManifestCache

IDENTITY = "did:pkh:eip155:84532:0x19E7E376E7C213B7E7e7e46cc70A5dD086DAff2A"


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Fetcher:
    def __init__(self):
        self.calls = 0
        self.fail = False

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise ManifestFetchError("ipfs://bafyM", "HTTP 504")
        return build_manifest(f"bafy{self.calls}", content_hash(b"data"), IDENTITY)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cache(clock):
    return ManifestCache(max_entries=2, refresh_after=60, ttl=300, clock=clock)


@pytest.mark.asyncio
async def test_fresh_entry_is_served_without_fetch(cache, clock):
    fetch = Fetcher()
    first = await cache.get_or_fetch("ipfs://bafyM", fetch)
    clock.now = 59
    assert await cache.get_or_fetch("ipfs://bafyM", fetch) is first
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_entry_past_refresh_is_refetched(cache, clock):
    fetch = Fetcher()
    await cache.get_or_fetch("ipfs://bafyM", fetch)
    clock.now = 61
    refreshed = await cache.get_or_fetch("ipfs://bafyM", fetch)
    assert fetch.calls == 2
    assert refreshed.cid == "bafy2"


@pytest.mark.asyncio
async def test_stale_entry_served_when_refetch_fails(cache, clock):
    fetch = Fetcher()
    first = await cache.get_or_fetch("ipfs://bafyM", fetch)
    clock.now = 120
    fetch.fail = True
    assert await cache.get_or_fetch("ipfs://bafyM", fetch) is first


@pytest.mark.asyncio
async def test_expired_entry_is_evicted_and_error_propagates(cache, clock):
    fetch = Fetcher()
    await cache.get_or_fetch("ipfs://bafyM", fetch)
    clock.now = 300
    fetch.fail = True
    with pytest.raises(ManifestFetchError):
        await cache.get_or_fetch("ipfs://bafyM", fetch)
    assert cache.peek("ipfs://bafyM") is None


@pytest.mark.asyncio
async def test_least_recently_used_entry_is_evicted(cache):
    fetch = Fetcher()
    await cache.get_or_fetch("ipfs://a", fetch)
    await cache.get_or_fetch("ipfs://b", fetch)
    cache.peek("ipfs://a")
    await cache.get_or_fetch("ipfs://c", fetch)
    assert len(cache) == 2
    assert cache.peek("ipfs://a") is not None
    assert cache.peek("ipfs://b") is None


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch(cache):
    fetch = Fetcher()
    results = await asyncio.gather(*(cache.get_or_fetch("ipfs://bafyM", fetch) for _ in range(5)))
    assert fetch.calls == 1
    assert all(result is results[0] for result in results)


def test_refresh_window_must_fit_in_ttl():
    with pytest.raises(ValueError):
        ManifestCache(refresh_after=600, ttl=60)


@pytest.mark.asyncio
async def test_failed_fetches_leave_no_locks_behind(cache):
    fetch = Fetcher()
    fetch.fail = True
    for n in range(100):
        with pytest.raises(ManifestFetchError):
            await cache.get_or_fetch(f"ipfs://bafyMissing{n}", fetch)
    assert cache.in_flight == 0
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_lock_released_once_concurrent_waiters_finish(cache):
    fetch = Fetcher()
    await asyncio.gather(*(cache.get_or_fetch(f"ipfs://bafy{n % 2}", fetch) for n in range(8)))
    assert fetch.calls == 2
    assert cache.in_flight == 0
