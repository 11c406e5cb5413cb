"""Fan a single upstream watch out to many local watchers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing
from dataclasses import dataclass, field

from drandclient.types import ChainInfo, Client, Result, TimeLike

logger = logging.getLogger(__name__)

WATCH_BUFFER = 5
DEFAULT_AUTO_WATCH_RETRY = 30.0

_END = object()


@dataclass(eq=False)
class _Subscriber:
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)


async def _drain(results: AsyncGenerator[Result, None]) -> None:
    async with aclosing(results):
        async for _ in results:
            pass


class WatchAggregator(Client):
    """Share one ``watch`` on the wrapped client among all local watchers.

    With ``auto_watch`` a watch on the wrapped client is always kept open.
    Otherwise, given a passive client, that client is watched whenever no one
    else is watching, and watching moves to the wrapped client once someone is.
    Without either, the upstream watch runs only while someone watches.
    A negative ``auto_watch_retry`` disables re-opening an ended auto watch.
    """

    def __init__(
        self,
        client: Client,
        passive_client: Client | None = None,
        auto_watch: bool = False,
        auto_watch_retry: float = 0.0,
    ) -> None:
        self._client = client
        self._passive_client = passive_client
        self._auto_watch = auto_watch
        self._auto_watch_retry = auto_watch_retry or DEFAULT_AUTO_WATCH_RETRY
        self._subscribers: list[_Subscriber] = []
        self._distributor: asyncio.Task | None = None
        self._passive: asyncio.Task | None = None
        self._auto: asyncio.Task | None = None

    def __str__(self) -> str:
        return f"{self._client}.(+aggregator)"

    def start(self) -> None:
        """Begin automatic watching if configured; needs a running event loop."""
        if self._auto_watch:
            self._auto = asyncio.create_task(self._auto_loop(full=True))
        elif self._passive_client is not None:
            self._auto = asyncio.create_task(self._auto_loop(full=False))

    async def _auto_loop(self, full: bool) -> None:
        while True:
            if full:
                await _drain(self.watch())
            else:
                await self._passive_watch()
            logger.info("watch aggregator: auto watch ended")
            if self._auto_watch_retry < 0:
                return
            await asyncio.sleep(self._auto_watch_retry)
            logger.info("watch aggregator: retrying auto watch")

    async def _passive_watch(self) -> None:
        if self._passive_client is None or self._subscribers:
            return
        task = asyncio.create_task(_drain(self._passive_client.watch()))
        self._passive = task
        try:
            await asyncio.wait({task})
        finally:
            if not task.done():
                task.cancel()
            if self._passive is task:
                self._passive = None

    def watch(self) -> AsyncGenerator[Result, None]:
        subscriber = _Subscriber()
        self._subscribers.append(subscriber)
        if self._distributor is None:
            if self._passive is not None:
                self._passive.cancel()
                self._passive = None
            self._distributor = asyncio.create_task(self._distribute())
        return self._consume(subscriber)

    async def _consume(self, subscriber: _Subscriber) -> AsyncGenerator[Result, None]:
        try:
            while True:
                item = await subscriber.queue.get()
                if item is _END:
                    return
                yield item
        finally:
            self._unsubscribe(subscriber)

    def _unsubscribe(self, subscriber: _Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)
        if not self._subscribers and self._distributor is not None:
            logger.warning("watch aggregator: no subscribers to distribute results to")
            task, self._distributor = self._distributor, None
            task.cancel()

    async def _distribute(self) -> None:
        me = asyncio.current_task()
        try:
            async with aclosing(self._client.watch()) as results:
                async for result in results:
                    if result is None:
                        continue
                    for subscriber in self._subscribers:
                        if subscriber.queue.qsize() >= WATCH_BUFFER:
                            logger.warning(
                                "watch aggregator: dropped watch message to subscriber, full buffer"
                            )
                        else:
                            subscriber.queue.put_nowait(result)
        finally:
            if self._distributor is me:
                self._distributor = None
                ended, self._subscribers = self._subscribers, []
                for subscriber in ended:
                    subscriber.queue.put_nowait(_END)

    async def get(self, round: int) -> Result:
        return await self._client.get(round)

    async def info(self) -> ChainInfo:
        return await self._client.info()

    def round_at(self, t: TimeLike) -> int:
        return self._client.round_at(t)

    async def close(self) -> None:
        try:
            await self._client.close()
        finally:
            task, self._auto = self._auto, None
            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)