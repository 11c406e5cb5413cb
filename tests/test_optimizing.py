import asyncio
import time
from contextlib import aclosing

import pytest

from drandclient.optimizing import MultiError, OptimizingClient
from drandclient.types import ChainInfo, Client, ClientClosedError, EmptyClient, RandomData


def result(n):
    return RandomData(round=n, signature=bytes([n % 256]) * 8)


class MockClient(Client):
    def __init__(
        self,
        name="mock",
        results=(),
        *,
        chain_info=None,
        delay=0.0,
        watch_queue=None,
        watch_factory=None,
        close_error=None,
    ):
        self.name = name
        self.results = list(results)
        self.chain_info = chain_info
        self.delay = delay
        self.watch_queue = watch_queue
        self.watch_factory = watch_factory
        self.close_error = close_error
        self.closed = False

    def __str__(self):
        return self.name

    async def get(self, round):
        if not self.results:
            raise LookupError("no result available")
        item = self.results.pop(0)
        await asyncio.sleep(self.delay)
        return item

    def watch(self):
        if self.watch_queue is not None:
            return self._from_queue()
        if self.watch_factory is not None:
            return self.watch_factory()
        return self._single()

    async def _from_queue(self):
        while True:
            item = await self.watch_queue.get()
            if item is None:
                return
            yield item

    async def _single(self):
        try:
            item = await self.get(0)
        except LookupError:
            return
        yield item

    async def info(self):
        if self.chain_info is None:
            raise LookupError("not supported")
        return self.chain_info

    def round_at(self, t):
        return 0

    async def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


def with_results(name, start, end, **kwargs):
    return MockClient(name, [result(i) for i in range(start, end)], **kwargs)


def fake_chain_info():
    return ChainInfo(public_key=b"\x01" * 48, period=1, genesis_time=int(time.time()))


async def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def start_collector(gen):
    out = asyncio.Queue()

    async def run():
        async with aclosing(gen):
            async for r in gen:
                await out.put(r.round)
        await out.put(None)

    return asyncio.create_task(run()), out


async def stop(task):
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


async def collect(gen):
    async with aclosing(gen):
        return [r.round async for r in gen]


async def yield_all(items):
    for item in items:
        yield item


@pytest.mark.asyncio
async def test_get_prefers_fastest_and_fails_over():
    c0 = with_results("c0", 0, 5, delay=0.1)
    c1 = with_results("c1", 5, 8, delay=0.001)
    oc = OptimizingClient([c0, c1], 5.0, 2, 300.0, 0)
    oc.start()
    try:
        await wait_until(lambda: oc.fastest_clients()[0] is c1)
        # speed test consumed round 0 from c0 and 5 from c1
        assert (await oc.get(0)).round == 6
        assert (await oc.get(0)).round == 7
        assert (await oc.get(0)).round == 3  # c1 exhausted
        assert (await oc.get(0)).round == 4
    finally:
        await oc.close()


@pytest.mark.asyncio
async def test_watch_switches_between_clients():
    c0 = with_results("c0", 0, 5, delay=0.001)
    wc1 = asyncio.Queue()
    c1 = with_results("c1", 5, 8, watch_queue=wc1)
    c2 = MockClient("c2", chain_info=fake_chain_info())
    oc = OptimizingClient([c0, c1, c2], 5.0, 2, 300.0, 0)
    oc.start()
    try:
        await wait_until(lambda: oc.fastest_clients()[0] is c1)
        task, out = start_collector(oc.watch())
        try:
            assert await asyncio.wait_for(out.get(), 2) == 1
            await wc1.put(result(2))
            assert await asyncio.wait_for(out.get(), 2) == 2
            await asyncio.sleep(0.05)
            assert out.empty()
            await wc1.put(result(6))
            assert await asyncio.wait_for(out.get(), 2) == 6
        finally:
            await stop(task)
    finally:
        await oc.close()


@pytest.mark.asyncio
async def test_watch_without_info_ends_immediately():
    calls = []

    def factory():
        calls.append(1)
        return MockClient("x", [result(len(calls) - 1)])._single()

    c = MockClient("c", [result(0)], watch_factory=factory)
    oc = OptimizingClient([c], 0, 0, 0, 0.05)
    rounds = await asyncio.wait_for(collect(oc.watch()), 2)
    assert rounds == []
    assert calls == []
    await oc.close()


@pytest.mark.asyncio
async def test_watch_retry_on_close_suppresses_round_zero():
    calls = []

    def factory():
        calls.append(1)
        return MockClient("x", [result(len(calls) - 1)])._single()

    c = MockClient("c", [result(0)], watch_factory=factory, chain_info=fake_chain_info())
    oc = OptimizingClient([c], 0, 0, 0, 0.05)
    rounds = await asyncio.wait_for(collect(oc.watch()), 2)
    assert rounds == []
    assert len(calls) == 1
    await oc.close()


@pytest.mark.asyncio
async def test_watch_fails_over_between_clients():
    counter = {"rnd": 1}

    def factory():
        r = counter["rnd"]
        counter["rnd"] += 1
        items = [result(r)] if counter["rnd"] < 5 else []
        return yield_all(items)

    info_client = MockClient("info", chain_info=fake_chain_info())
    c1 = MockClient("c1", [result(0)], watch_factory=factory)
    c2 = MockClient("c2", [result(0)], watch_factory=factory)
    oc = OptimizingClient([info_client, c1, c2], 0, 0, 0, 0.05)
    oc.start()
    try:
        await wait_until(lambda: oc.fastest_clients()[-1] is info_client)
        rounds = await asyncio.wait_for(collect(oc.watch()), 5)
        assert rounds[:2] == [1, 2]
        assert rounds == list(range(1, len(rounds) + 1))
        assert len(rounds) <= 4
    finally:
        await oc.close()


@pytest.mark.asyncio
async def test_watch_keeps_passive_client():
    passive_queue = asyncio.Queue()
    a = MockClient("a", watch_queue=passive_queue)
    b = MockClient("b", [result(5)], chain_info=fake_chain_info())
    oc = OptimizingClient([a, b], 0, 0, -1, 0)
    oc.mark_passive(a)
    task, out = start_collector(oc.watch())
    try:
        assert await asyncio.wait_for(out.get(), 2) == 5
        await passive_queue.put(result(7))
        assert await asyncio.wait_for(out.get(), 2) == 7
        await passive_queue.put(None)
        assert await asyncio.wait_for(out.get(), 2) is None
    finally:
        await stop(task)
        await oc.close()


@pytest.mark.asyncio
async def test_mark_passive_moves_client_back():
    a = with_results("a", 0, 3)
    b = with_results("b", 0, 3)
    oc = OptimizingClient([a, b], 0, 0, 0, 0)
    oc.mark_passive(a)
    oc.start()
    try:
        await wait_until(lambda: oc.fastest_clients()[0] is b)
        assert oc.fastest_clients() == [b, a]
        assert len(a.results) == 3  # never speed tested
    finally:
        await oc.close()


def test_requires_clients():
    with pytest.raises(ValueError, match="missing clients"):
        OptimizingClient([], 0, 0, 0, 0)


@pytest.mark.asyncio
async def test_close_after_start_closes_client():
    c = MockClient("c")
    oc = OptimizingClient([c], 0, 0, 0, 0)
    oc.start()
    await oc.close()
    assert c.closed is True


@pytest.mark.asyncio
async def test_info_returns_chain_info():
    chain_info = fake_chain_info()
    oc = OptimizingClient([MockClient("c", chain_info=chain_info)], 0, 0, 0, 0)
    oc.start()
    try:
        assert await oc.info() is chain_info
    finally:
        await oc.close()


@pytest.mark.asyncio
async def test_info_raises_when_no_client_knows():
    oc = OptimizingClient([MockClient("a"), MockClient("b")], 0, 0, -1, 0)
    with pytest.raises(LookupError, match="not supported"):
        await oc.info()


def test_round_at_uses_first_client():
    oc = OptimizingClient([MockClient("c")], 0, 0, 0, 0)
    assert oc.round_at(time.time()) == 0


@pytest.mark.asyncio
async def test_close_closes_all_clients():
    clients = [MockClient("a", watch_queue=asyncio.Queue()), MockClient("b", watch_queue=asyncio.Queue())]
    oc = OptimizingClient(clients, 0, 0, 0, 0)
    await oc.close()
    assert [c.closed for c in clients] == [True, True]


@pytest.mark.asyncio
async def test_close_reports_errors():
    failing = MockClient("a", close_error=RuntimeError("boom"))
    fine = MockClient("b")
    oc = OptimizingClient([failing, fine], 0, 0, 0, 0)
    with pytest.raises(MultiError) as info:
        await oc.close()
    assert [str(e) for e in info.value.errors] == ["boom"]
    assert fine.closed is True


@pytest.mark.asyncio
async def test_get_after_close_raises():
    oc = OptimizingClient([with_results("a", 0, 2), with_results("b", 0, 2)], 0, 0, -1, 0)
    await oc.close()
    with pytest.raises(ClientClosedError):
        await oc.get(1)


@pytest.mark.asyncio
async def test_get_collects_errors_but_not_empty_client():
    oc = OptimizingClient(
        [EmptyClient(fake_chain_info()), MockClient("a")], 0, 0, -1, 0
    )
    with pytest.raises(MultiError) as info:
        await oc.get(1)
    assert str(info.value).startswith("no valid clients")
    assert len(info.value.errors) == 1
    assert isinstance(info.value.errors[0], LookupError)


@pytest.mark.asyncio
async def test_get_ignores_timed_out_clients():
    slow = with_results("slow", 0, 2, delay=1.0)
    broken = MockClient("broken")
    oc = OptimizingClient([slow, broken], 0.05, 0, -1, 0)
    with pytest.raises(MultiError) as info:
        await oc.get(1)
    assert len(info.value.errors) == 1
    assert oc.fastest_clients()[-1] is broken


@pytest.mark.asyncio
async def test_get_single_client_passes_through():
    oc = OptimizingClient([with_results("a", 3, 4)], 0, 0, -1, 0)
    assert (await oc.get(3)).round == 3


def test_str_lists_clients():
    oc = OptimizingClient([MockClient("a"), MockClient("b")], 0, 0, 0, 0)
    assert str(oc) == "OptimizingClient(a, b)"