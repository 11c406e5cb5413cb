"""Caches of recent beacons and a client that serves from them."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import AsyncGenerator
from contextlib import aclosing
from typing import Protocol

from drandclient.types import Client, ChainInfo, Result, TimeLike


class Cache(Protocol):
    """Lookup of beacons by round."""

    def try_get(self, round: int) -> Result | None:
        ...

    def add(self, round: int, result: Result) -> None:
        ...


class LRUResultCache:
    """A bounded cache that evicts the least recently used round."""

    def __init__(self, size: int) -> None:
        if size <= 0:
            raise ValueError("must provide a positive size")
        self._size = size
        self._entries: OrderedDict[int, Result] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, round: int, result: Result) -> None:
        self._entries[round] = result
        self._entries.move_to_end(round)
        while len(self._entries) > self._size:
            self._entries.popitem(last=False)

    def try_get(self, round: int) -> Result | None:
        result = self._entries.get(round)
        if result is not None:
            self._entries.move_to_end(round)
        return result


class NullCache:
    """A cache that keeps nothing; it only counts what it turned away."""

    def __init__(self) -> None:
        self.dropped = 0
        self.misses = 0

    def __len__(self) -> int:
        return 0

    def add(self, round: int, result: Result) -> None:
        self.dropped += 1

    def try_get(self, round: int) -> Result | None:
        self.misses += 1
        return None


def make_cache(size: int) -> Cache:
    """Return a cache holding ``size`` rounds; size 0 disables caching."""
    if size == 0:
        return NullCache()
    return LRUResultCache(size)


class CachingClient(Client):
    """A client that remembers recently fetched or watched beacons."""

    def __init__(self, client: Client, cache: Cache) -> None:
        self._client = client
        self._cache = cache

    def __str__(self) -> str:
        if isinstance(self._cache, LRUResultCache):
            return f"{self._client}.(+{len(self._cache)} el cache)"
        return f"{self._client}.(+nil cache)"

    async def get(self, round: int) -> Result:
        cached = self._cache.try_get(round)
        if cached is not None:
            return cached
        result = await self._client.get(round)
        if result is not None:
            self._cache.add(result.round, result)
        return result

    async def watch(self) -> AsyncGenerator[Result, None]:
        async with aclosing(self._client.watch()) as results:
            async for result in results:
                self._cache.add(result.round, result)
                yield result

    async def info(self) -> ChainInfo:
        return await self._client.info()

    def round_at(self, t: TimeLike) -> int:
        return self._client.round_at(t)

    async def close(self) -> None:
        await self._client.close()