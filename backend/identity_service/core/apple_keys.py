"""Process-local cache of Apple's published signing keys (JWKS)."""

import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

import httpx

from identity_service.core.logging import get_logger

logger = get_logger(__name__)


class KeySetUnavailableError(Exception):
    """Apple's key set could not be fetched and nothing is cached."""


@dataclass(frozen=True)
class KeySet:
    """A fetched JWKS. ``stale`` marks a copy served after a failed refetch."""

    keys: tuple[dict[str, Any], ...]
    fetched_at: float
    stale: bool = False

    def find(self, kid: str | None) -> dict[str, Any] | None:
        """Return the key whose ``kid`` matches, if any."""
        if not kid:
            return None
        for key in self.keys:
            if key.get("kid") == kid:
                return key
        return None


class AppleKeyCache:
    """Single-slot JWKS cache with stale-on-failure fallback.

    Constructed once per process and shared by reference. Concurrent callers
    that find the slot expired may each refetch; the last write wins.
    """

    def __init__(
        self,
        keys_url: str,
        ttl_seconds: float = 300,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.keys_url = keys_url
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._clock = clock
        self._cached: KeySet | None = None

    @property
    def cached(self) -> KeySet | None:
        return self._cached

    def clear(self) -> None:
        self._cached = None

    async def get_keys(self) -> KeySet:
        """
        Return Apple's key set, refetching when the cached copy has expired.

        Raises:
            KeySetUnavailableError: the fetch failed and there is no cached copy
        """
        now = self._clock()
        cached = self._cached
        if cached is not None and now - cached.fetched_at < self.ttl_seconds:
            return cached

        try:
            keys = await self._fetch()
        except (httpx.HTTPError, ValueError) as e:
            if cached is not None:
                logger.warning(
                    "Using stale Apple public keys after fetch failure",
                    extra={"error_type": type(e).__name__, "age_seconds": int(now - cached.fetched_at)},
                )
                return replace(cached, stale=True)
            logger.error(
                "Apple public keys unavailable",
                extra={"error_type": type(e).__name__},
            )
            raise KeySetUnavailableError("Unable to retrieve Apple public keys") from e

        self._cached = KeySet(keys=keys, fetched_at=now)
        return self._cached

    async def _fetch(self) -> tuple[dict[str, Any], ...]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.get(self.keys_url)
            response.raise_for_status()
            body = response.json()

        keys = body.get("keys") if isinstance(body, dict) else None
        if not isinstance(keys, list):
            raise ValueError("JWKS response has no 'keys' list")
        return tuple(key for key in keys if isinstance(key, dict))
