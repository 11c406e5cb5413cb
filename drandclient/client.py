"""Build a verifying-free, caching, failover client from one or more sources.

``new`` combines the given clients into a single client that races the
fastest of them, caches recent beacons and shares a single upstream
``watch`` among all local watchers. Always give a root of trust
(``chain_hash`` or ``chain_info``); ``insecure`` skips that requirement and
is not recommended.

Options worth tuning in an application:

* ``cache_size``: how many recent rounds to keep locally (default 32).
* ``auto_watch``: watch continuously in the background so that new beacons
  are already cached when ``get`` is called.
* ``watcher``: a factory for an extra, passive source of new beacons.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from typing import Protocol

from drandclient.aggregator import WatchAggregator
from drandclient.cache import Cache, CachingClient, make_cache
from drandclient.optimizing import MultiError, OptimizingClient
from drandclient.types import ChainInfo, Client, EmptyClient, Result

logger = logging.getLogger(__name__)

CLIENT_STARTUP_TIMEOUT = 5.0


class Watcher(Protocol):
    """Something that yields new beacons."""

    def watch(self) -> AsyncGenerator[Result, None]:
        ...


WatcherFactory = Callable[[ChainInfo, Cache], Watcher]


@dataclass
class ClientConfig:
    """Settings for ``new``.

    ``auto_watch_retry`` is the delay in seconds before an ended auto watch is
    re-opened; zero selects the default and a negative value disables it.
    ``setup_timeout`` bounds fetching chain information from the clients.
    """

    clients: Sequence[Client] = field(default_factory=list)
    watcher: WatcherFactory | None = None
    chain_hash: bytes | None = None
    chain_info: ChainInfo | None = None
    insecure: bool = False
    auto_watch: bool = False
    auto_watch_retry: float = 0.0
    cache_size: int = 32
    setup_timeout: float = CLIENT_STARTUP_TIMEOUT

    def __post_init__(self) -> None:
        self.clients = list(self.clients)
        if (
            self.chain_hash is not None
            and self.chain_info is not None
            and self.chain_info.hash() != bytes(self.chain_hash)
        ):
            raise ValueError("refusing to override group with non-matching hash")


class WatcherClient(EmptyClient):
    """A client that knows the chain and delegates watching to a watcher."""

    def __init__(self, info: ChainInfo, watcher: Watcher) -> None:
        super().__init__(info)
        self._watcher = watcher

    async def watch(self) -> AsyncGenerator[Result, None]:
        async with aclosing(self._watcher.watch()) as results:
            async for result in results:
                yield result


async def _populate_info(clients: Sequence[Client], timeout: float) -> ChainInfo | None:
    if not clients:
        return None
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    errors: list[Exception] = []
    for client in clients:
        try:
            return await asyncio.wait_for(client.info(), max(0.0, deadline - loop.time()))
        except Exception as err:
            errors.append(err)
    raise MultiError("failed to fetch chain info", errors)


async def new(config: ClientConfig | None = None) -> Client:
    """Create a watching, caching, speed-optimizing client.

    Needs a running event loop: background watching and speed tests start here.
    """
    cfg = config if config is not None else ClientConfig()
    if not cfg.insecure and cfg.chain_hash is None and cfg.chain_info is None:
        logger.error("no root of trust specified")
        raise ValueError("no root of trust specified")
    clients = list(cfg.clients)
    if not clients and cfg.watcher is None:
        logger.error("no points of contact specified")
        raise ValueError("no points of contact specified")

    cache = make_cache(cfg.cache_size)

    chain_info = cfg.chain_info
    if chain_info is None:
        chain_info = await _populate_info(clients, cfg.setup_timeout)

    watcher_client: WatcherClient | None = None
    if cfg.watcher is not None:
        if chain_info is None:
            raise ValueError("chain info cannot be nil")
        watcher_client = WatcherClient(chain_info, cfg.watcher(chain_info, cache))
        clients.append(watcher_client)

    optimizer = OptimizingClient(clients)
    if watcher_client is not None:
        optimizer.mark_passive(watcher_client)
    base: Client = optimizer
    if cfg.cache_size > 0:
        base = CachingClient(optimizer, cache)
    optimizer.start()

    aggregator = WatchAggregator(
        base, watcher_client, cfg.auto_watch, cfg.auto_watch_retry
    )
    aggregator.start()
    return aggregator


async def wrap(clients: Sequence[Client], config: ClientConfig | None = None) -> Client:
    """Like ``new``, with ``clients`` as the sources of randomness."""
    base = config if config is not None else ClientConfig()
    return await new(replace(base, clients=list(clients)))