"""Tests for the Apple JWKS cache."""

import httpx
import pytest

from identity_service.core.apple_keys import AppleKeyCache, KeySetUnavailableError

KEYS_URL = "https://appleid.apple.com/auth/keys"
KEY = {"kty": "RSA", "kid": "kid-1", "n": "AQAB", "e": "AQAB"}


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingTransport(httpx.MockTransport):
    """Serves a key set until told to fail, counting requests."""

    def __init__(self):
        self.calls = 0
        self.fail = False
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.fail:
            return httpx.Response(503)
        return httpx.Response(200, json={"keys": [KEY]})


@pytest.mark.asyncio
async def test_fresh_cache_is_served_without_refetch() -> None:
    transport = CountingTransport()
    clock = FakeClock()
    cache = AppleKeyCache(KEYS_URL, ttl_seconds=300, transport=transport, clock=clock)

    first = await cache.get_keys()
    clock.now += 299
    second = await cache.get_keys()

    assert transport.calls == 1
    assert second is first
    assert second.find("kid-1") == KEY
    assert second.stale is False


@pytest.mark.asyncio
async def test_expired_cache_is_refetched() -> None:
    transport = CountingTransport()
    clock = FakeClock()
    cache = AppleKeyCache(KEYS_URL, ttl_seconds=300, transport=transport, clock=clock)

    await cache.get_keys()
    clock.now += 300
    refreshed = await cache.get_keys()

    assert transport.calls == 2
    assert refreshed.fetched_at == clock.now


@pytest.mark.asyncio
async def test_stale_keys_served_when_refetch_fails() -> None:
    transport = CountingTransport()
    clock = FakeClock()
    cache = AppleKeyCache(KEYS_URL, ttl_seconds=300, transport=transport, clock=clock)
    original = await cache.get_keys()

    transport.fail = True
    clock.now += 3600
    stale = await cache.get_keys()

    assert stale.stale is True
    assert stale.keys == original.keys
    # The slot keeps the last good copy, so recovery refetches normally
    transport.fail = False
    recovered = await cache.get_keys()
    assert recovered.stale is False
    assert transport.calls == 3


@pytest.mark.asyncio
async def test_unavailable_without_cache_raises() -> None:
    transport = CountingTransport()
    transport.fail = True
    cache = AppleKeyCache(KEYS_URL, transport=transport)

    with pytest.raises(KeySetUnavailableError):
        await cache.get_keys()


@pytest.mark.asyncio
async def test_malformed_key_set_is_a_fetch_failure() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"nope": []}))
    cache = AppleKeyCache(KEYS_URL, transport=transport)

    with pytest.raises(KeySetUnavailableError):
        await cache.get_keys()


def test_new_cache_is_empty() -> None:
    cache = AppleKeyCache(KEYS_URL)
    assert cache.cached is None


@pytest.mark.asyncio
async def test_clear_forces_refetch() -> None:
    transport = CountingTransport()
    cache = AppleKeyCache(KEYS_URL, transport=transport)
    key_set = await cache.get_keys()

    assert key_set.find("other-kid") is None
    assert key_set.find(None) is None

    cache.clear()
    await cache.get_keys()
    assert transport.calls == 2
