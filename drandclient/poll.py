"""Watching by polling a client once per chain period."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncGenerator

from drandclient.types import ChainInfo, Client, Result, next_round

logger = logging.getLogger(__name__)


async def _poll(client: Client, what: str) -> Result | None:
    try:
        return await client.get(client.round_at(time.time()))
    except Exception as err:  # any transport failure is only logged
        logger.error("polling client: %s from %s: %s", what, client, err)
        return None


async def polling_watcher(
    client: Client, chain_info: ChainInfo
) -> AsyncGenerator[Result, None]:
    """Yield the current beacon, then a new one at each round boundary."""
    try:
        first = await client.get(client.round_at(time.time()))
    except Exception as err:
        logger.error("polling client: failed synchronous get from %s: %s", client, err)
        return
    yield first

    _, next_time = next_round(int(time.time()), chain_info.period, chain_info.genesis_time)
    await asyncio.sleep(max(0.0, next_time - time.time()))

    result = await _poll(client, "failed first async get")
    if result is not None:
        yield result

    loop = asyncio.get_running_loop()
    deadline = loop.time()
    while True:
        deadline = max(deadline + chain_info.period, loop.time())
        await asyncio.sleep(max(0.0, deadline - loop.time()))
        result = await _poll(client, "failed subsequent watch poll")
        if result is not None:
            yield result