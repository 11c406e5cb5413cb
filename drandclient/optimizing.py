"""A client that races the fastest of several clients and fails over between them."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import AsyncGenerator, Sequence
from contextlib import aclosing
from dataclasses import dataclass

from drandclient.types import (
    ChainInfo,
    Client,
    ClientClosedError,
    EmptyClientUnsupportedGetError,
    Result,
    TimeLike,
    time_of_round,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 5.0
DEFAULT_SPEED_TEST_INTERVAL = 300.0
# How many clients are raced by ``get`` and how many are watched at once
# (in addition to passive clients).
DEFAULT_REQUEST_CONCURRENCY = 2
DEFAULT_WATCH_RETRY_INTERVAL = 30.0

_END = object()
_RESULT = "result"
_DONE = "done"


class MultiError(Exception):
    """Several failures reported as one."""

    def __init__(self, message: str, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        detail = "; ".join(str(err) for err in self.errors)
        super().__init__(f"{message}: {detail}" if detail else message)


@dataclass(eq=False)
class _RequestStat:
    client: Client
    rtt: float
    start_time: float


@dataclass(eq=False)
class _RequestResult:
    client: Client
    result: Result | None
    error: Exception | None
    stat: _RequestStat


async def _get(client: Client, round: int, timeout: float) -> _RequestResult | None:
    """Fetch one round; ``None`` when the request timed out."""
    start = time.time()
    began = time.perf_counter()
    try:
        result = await asyncio.wait_for(client.get(round), timeout)
    except asyncio.TimeoutError:
        return None
    except Exception as err:
        # a failing client is sent to the back of the list
        return _RequestResult(client, None, err, _RequestStat(client, math.inf, start))
    rtt = time.perf_counter() - began
    return _RequestResult(client, result, None, _RequestStat(client, rtt, start))


async def _parallel_get(
    clients: Sequence[Client], round: int, timeout: float, concurrency: int
) -> AsyncGenerator[_RequestResult, None]:
    """Query clients in order, at most ``concurrency`` at once, yielding as they finish."""
    queue: asyncio.Queue = asyncio.Queue()
    slots = asyncio.Semaphore(concurrency)

    async def run(client: Client) -> None:
        try:
            outcome = await _get(client, round, timeout)
            if outcome is not None:
                queue.put_nowait(outcome)
        finally:
            slots.release()

    async def launch() -> None:
        tasks: list[asyncio.Task] = []
        try:
            for client in clients:
                await slots.acquire()
                tasks.append(asyncio.create_task(run(client)))
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            queue.put_nowait(_END)

    launcher = asyncio.create_task(launch())
    try:
        while True:
            item = await queue.get()
            if item is _END:
                return
            yield item
    finally:
        launcher.cancel()
        await asyncio.gather(launcher, return_exceptions=True)


@dataclass(eq=False)
class _Watching:
    client: Client
    task: asyncio.Task


class _WatchState:
    """Book-keeping of which clients are being watched for one ``watch`` call."""

    def __init__(self, optimizer: OptimizingClient, queue: asyncio.Queue) -> None:
        self._optimizer = optimizer
        self._queue = queue
        self.active: list[_Watching] = []
        self.protected: list[_Watching] = []
        self.failed: list[tuple[Client, float]] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def idle(self) -> bool:
        return not self.active and not self.protected

    def _spawn(self, client: Client) -> asyncio.Task:
        task = asyncio.create_task(self._watch_next(client))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _watch_next(self, client: Client) -> None:
        task = asyncio.current_task()
        try:
            async with aclosing(client.watch()) as results:
                async for result in results:
                    self._queue.put_nowait((_RESULT, client, result))
        except Exception as err:
            logger.info("optimizing client: watch failed on %s: %s", client, err)
        finally:
            logger.info("optimizing client: watch ended on %s", client)
            self._queue.put_nowait((_DONE, client, task))

    def protect(self, client: Client) -> None:
        self.protected.append(_Watching(client, self._spawn(client)))

    def _has(self, entries: list[_Watching], client: Client) -> bool:
        return any(entry.client is client for entry in entries)

    def _clean(self) -> None:
        now = time.monotonic()
        self.failed = [(c, until) for c, until in self.failed if until > now]

    def _next_unwatched(self) -> Client | None:
        for client in self._optimizer.fastest_clients():
            if self._has(self.active, client) or self._has(self.protected, client):
                continue
            if any(c is client for c, _ in self.failed):
                continue
            return client
        return None

    def repopulate(self) -> None:
        self._clean()
        while len(self.active) < self._optimizer._request_concurrency:
            client = self._next_unwatched()
            if client is None:
                return
            self.active.append(_Watching(client, self._spawn(client)))
            logger.info("optimizing client: watching on client %s", client)

    def done(self, client: Client, task: asyncio.Task) -> None:
        for entry in self.active:
            if entry.client is client and entry.task is task:
                self.active.remove(entry)
                retry = self._optimizer._watch_retry_interval
                self.failed.append((client, time.monotonic() + retry))
                return
        for entry in self.protected:
            if entry.client is client and entry.task is task:
                self.protected.remove(entry)
                return
        # the client may already have been dropped by close_slowest

    def close_slowest(self) -> None:
        if not self.active:
            return
        ranked = [
            entry
            for client in self._optimizer.fastest_clients()
            for entry in self.active
            if entry.client is client
        ]
        if not ranked:
            return
        slowest = ranked[-1]
        slowest.task.cancel()
        self.active.remove(slowest)

    def cycle_to_fastest(self) -> None:
        clients = self._optimizer.fastest_clients()
        if not clients:
            return
        fastest = clients[0]
        if not self._has(self.active, fastest) and not self._has(self.protected, fastest):
            self.close_slowest()
            self.repopulate()

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class OptimizingClient(Client):
    """Measure the speed of several clients and use the fastest ones.

    ``get`` races the fastest clients (two by default), falling back to slower
    ones on failure; a failing client moves to the back of the list. A speed
    test runs in the background every five minutes by default; a negative
    interval disables it. Durations are in seconds; zero selects the default.
    """

    def __init__(
        self,
        clients: Sequence[Client],
        request_timeout: float = 0.0,
        request_concurrency: int = 0,
        speed_test_interval: float = 0.0,
        watch_retry_interval: float = 0.0,
    ) -> None:
        if not clients:
            raise ValueError("missing clients")
        now = time.time()
        self._clients = list(clients)
        self._passive_clients: list[Client] = []
        self._stats = [_RequestStat(c, 0.0, now) for c in self._clients]
        self._request_timeout = (
            request_timeout if request_timeout > 0 else DEFAULT_REQUEST_TIMEOUT
        )
        self._request_concurrency = (
            request_concurrency if request_concurrency > 0 else DEFAULT_REQUEST_CONCURRENCY
        )
        self._speed_test_interval = speed_test_interval or DEFAULT_SPEED_TEST_INTERVAL
        self._watch_retry_interval = watch_retry_interval or DEFAULT_WATCH_RETRY_INTERVAL
        self._closed = asyncio.Event()
        self._speed_test: asyncio.Task | None = None

    def __str__(self) -> str:
        return f"OptimizingClient({', '.join(str(c) for c in self._clients)})"

    def start(self) -> None:
        """Start the background speed tests; needs a running event loop."""
        if self._speed_test_interval > 0 and self._speed_test is None:
            self._speed_test = asyncio.create_task(self._test_speed())

    def mark_passive(self, client: Client) -> None:
        """Exclude a client from speed tests and keep it watched permanently.

        Must be called before ``start``.
        """
        self._passive_clients.append(client)
        for stat in self._stats:
            if stat.client is client:
                stat.rtt = math.inf
                stat.start_time = math.inf

    def _is_passive(self, client: Client) -> bool:
        return any(p is client for p in self._passive_clients)

    async def _test_speed(self) -> None:
        clients = [c for c in self._clients if not self._is_passive(c)]
        while True:
            stats: list[_RequestStat] = []
            async with aclosing(
                _parallel_get(
                    clients, 1, self._request_timeout, self._request_concurrency
                )
            ) as results:
                async for outcome in results:
                    if outcome.error is not None:
                        logger.info(
                            "optimizing client: endpoint down when speed tested: %s: %s",
                            outcome.client,
                            outcome.error,
                        )
                    stats.append(outcome.stat)
            self._update_stats(stats)
            await asyncio.sleep(self._speed_test_interval)

    def fastest_clients(self) -> list[Client]:
        """Return the clients ordered fastest first."""
        return [stat.client for stat in self._stats]

    def _update_stats(self, stats: Sequence[_RequestStat]) -> None:
        for sample in stats:
            for current in self._stats:
                if current.client is sample.client:
                    if current.start_time < sample.start_time:
                        current.rtt = sample.rtt
                        current.start_time = sample.start_time
                    break
        self._stats.sort(key=lambda stat: stat.rtt)

    async def _race(
        self, clients: Sequence[Client], round: int, stats: list[_RequestStat]
    ) -> Result:
        errors: list[Exception] = []
        async with aclosing(
            _parallel_get(clients, round, self._request_timeout, self._request_concurrency)
        ) as results:
            async for outcome in results:
                stats.append(outcome.stat)
                if outcome.error is None:
                    return outcome.result
                if not isinstance(outcome.error, EmptyClientUnsupportedGetError):
                    errors.append(outcome.error)
        raise MultiError("no valid clients", errors)

    async def get(self, round: int) -> Result:
        if self._closed.is_set():
            raise ClientClosedError()
        clients = self.fastest_clients()
        if len(clients) == 1:
            return await clients[0].get(round)
        stats: list[_RequestStat] = []
        race = asyncio.ensure_future(self._race(clients, round, stats))
        closing = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({race, closing}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closing.cancel()
            if not race.done():
                race.cancel()
                await asyncio.gather(race, return_exceptions=True)
            self._update_stats(stats)
        if race.cancelled():
            raise ClientClosedError()
        return race.result()

    async def watch(self) -> AsyncGenerator[Result, None]:
        try:
            info = await self.info()
        except Exception as err:
            logger.error("optimizing client: failed to learn info: %s", err)
            return

        queue: asyncio.Queue = asyncio.Queue()
        state = _WatchState(self, queue)
        loop = asyncio.get_running_loop()
        try:
            for client in self._passive_clients:
                state.protect(client)
            state.repopulate()
            latest = 0
            next_tick = loop.time() + self._watch_retry_interval
            while True:
                if queue.empty():
                    remaining = max(0.0, next_tick - loop.time())
                    try:
                        event = await asyncio.wait_for(queue.get(), remaining)
                    except asyncio.TimeoutError:
                        next_tick = loop.time() + self._watch_retry_interval
                        state.cycle_to_fastest()
                        continue
                else:
                    event = queue.get_nowait()

                kind, client, payload = event
                if kind == _RESULT:
                    round = payload.round
                    round_time = time_of_round(info.period, info.genesis_time, round)
                    self._update_stats(
                        [_RequestStat(client, time.time() - round_time, round_time)]
                    )
                    if round > latest:
                        latest = round
                        yield payload
                else:
                    state.done(client, payload)
                    state.repopulate()
                    if state.idle:
                        return
        finally:
            await state.shutdown()

    async def info(self) -> ChainInfo:
        last_error: Exception | None = None
        for client in self.fastest_clients():
            try:
                return await asyncio.wait_for(client.info(), self._request_timeout)
            except Exception as err:
                last_error = err
        assert last_error is not None
        raise last_error

    def round_at(self, t: TimeLike) -> int:
        return self._clients[0].round_at(t)

    async def close(self) -> None:
        """Stop the speed tests and close every underlying client."""
        errors: list[Exception] = []
        for client in self._clients:
            try:
                await client.close()
            except Exception as err:
                errors.append(err)
        self._closed.set()
        task, self._speed_test = self._speed_test, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if errors:
            raise MultiError("failed to close clients", errors)