"""A client for the JSON HTTP API of a randomness relay.

Watching polls the endpoint at each expected round time. ``for_urls`` builds
clients for several relays at once; giving more than one allows failover and
speed-optimized selection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from collections.abc import AsyncGenerator, Awaitable, Sequence
from contextlib import aclosing
from typing import Any, TypeVar

import httpx

from drandclient.poll import polling_watcher
from drandclient.types import (
    ChainInfo,
    Client,
    ClientClosedError,
    RandomData,
    Result,
    TimeLike,
    current_round,
    randomness_from_signature,
    unix_time,
)

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 60.0
HTTP_WAIT_MAX_COUNTER = 20
HTTP_WAIT_INTERVAL = 2.0
MAX_TIMEOUT_HTTP_REQUEST = 5.0

_DEFAULT_BEACON_IDS = ("", "default")
_TRANSPORT_ERRORS = (httpx.HTTPError, httpx.InvalidURL)
_EXHAUSTED = object()

T = TypeVar("T")


def _program_name() -> str:
    name = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else ""
    return name or "unknown"


async def _next(results: AsyncGenerator[Result, None]) -> Any:
    try:
        return await results.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


def _decode_beacon(body: bytes) -> RandomData:
    try:
        data = json.loads(body)
    except ValueError as err:
        raise ValueError(f"decoding response: {err}") from err
    if not isinstance(data, dict):
        raise ValueError("decoding response: expected a JSON object")
    try:
        round = int(data.get("round") or 0)
        signature = bytes.fromhex(data.get("signature") or "")
        previous = data.get("previous_signature")
        previous_signature = bytes.fromhex(previous) if previous else None
    except (TypeError, ValueError) as err:
        raise ValueError(f"decoding response: {err}") from err
    if not signature:
        raise ValueError("insufficient response - signature is not present")
    return RandomData(
        round=round,
        randomness=randomness_from_signature(signature),
        signature=signature,
        previous_signature=previous_signature,
    )


class HttpClient(Client):
    """Fetch beacons from one HTTP relay; results are not verified here."""

    def __init__(
        self,
        url: str,
        chain_info: ChainInfo | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        agent: str | None = None,
    ) -> None:
        if not url.endswith("/"):
            url += "/"
        self._root = url
        self._chain_info = chain_info
        self.agent = agent or f"drand-client-{_program_name()}/1.0"
        self._http = httpx.AsyncClient(
            transport=transport, timeout=DEFAULT_HTTP_TIMEOUT, follow_redirects=True
        )
        self._closed = asyncio.Event()

    @classmethod
    async def create(
        cls,
        url: str,
        chain_hash: bytes | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> HttpClient:
        """Create a client, fetching and checking the chain info from the relay."""
        client = cls(url, transport=transport, agent=f"drand-client-{_program_name()}/2.0")
        try:
            client._chain_info = await client.fetch_chain_info(chain_hash)
        except BaseException:
            await client.close()
            raise
        return client

    def __str__(self) -> str:
        return f'HTTP("{self._root}")'

    async def _until_closed(self, awaitable: Awaitable[T]) -> T:
        if self._closed.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ClientClosedError()
        task = asyncio.ensure_future(awaitable)
        closing = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({task, closing}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closing.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise ClientClosedError()
        return task.result()

    async def _fetch(self, url: str) -> httpx.Response:
        return await self._http.get(url, headers={"User-Agent": self.agent})

    async def fetch_chain_info(self, chain_hash: bytes | None = None) -> ChainInfo:
        """Return the chain info, fetching it when not yet known.

        Without a chain hash only the default beacon is accepted.
        """
        if self._chain_info is not None:
            return self._chain_info
        return await self._until_closed(self._load_chain_info(bytes(chain_hash or b"")))

    async def _load_chain_info(self, chain_hash: bytes) -> ChainInfo:
        if chain_hash:
            url = f"{self._root}{chain_hash.hex()}/info"
        else:
            url = f"{self._root}info"
        try:
            response = await self._fetch(url)
        except _TRANSPORT_ERRORS as err:
            raise ConnectionError(f"doing request: {err}") from err
        try:
            info = ChainInfo.from_json(response.content)
        except ValueError as err:
            raise ValueError(f"decoding response [InfoFromJSON]: {err}") from err
        if not info.public_key:
            raise ValueError("group does not have a valid key for validation")
        if not chain_hash:
            logger.warning(
                "http client: instantiated without trustroot, chain hash %s",
                info.hash().hex(),
            )
            if info.beacon_id not in _DEFAULT_BEACON_IDS:
                raise ValueError(
                    f"{self._root} does not advertise the default drand for the "
                    f"default chainHash (got {info.hash().hex()})"
                )
        elif info.hash() != chain_hash:
            raise ValueError(
                f"{self._root} does not advertise the expected drand group "
                f"({info.hash().hex()} vs {chain_hash.hex()})"
            )
        return info

    def _known_info(self) -> ChainInfo:
        if self._chain_info is None:
            raise ValueError("chain info is not known")
        return self._chain_info

    async def get(self, round: int) -> Result:
        chain = self._known_info().hash().hex()
        if round == 0:
            url = f"{self._root}{chain}/public/latest"
        else:
            url = f"{self._root}{chain}/public/{round}"
        return await self._until_closed(self._load_beacon(url))

    async def _load_beacon(self, url: str) -> RandomData:
        try:
            response = await self._fetch(url)
        except _TRANSPORT_ERRORS as err:
            raise ConnectionError(f"error doing GET request to {url!r}: {err}") from err
        if response.status_code != 200:
            raise ConnectionError(
                f"got invalid status {response.status_code} doing GET request to {url!r}"
            )
        return _decode_beacon(response.content)

    async def watch(self) -> AsyncGenerator[Result, None]:
        async with aclosing(polling_watcher(self, self._known_info())) as results:
            while True:
                try:
                    result = await self._until_closed(_next(results))
                except ClientClosedError:
                    return
                if result is _EXHAUSTED:
                    return
                yield result

    async def info(self) -> ChainInfo:
        return self._known_info()

    def round_at(self, t: TimeLike) -> int:
        info = self._known_info()
        return current_round(unix_time(t), info.period, info.genesis_time)

    async def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        await self._http.aclose()


async def new_simple_client(host: str, chainhash: str) -> HttpClient:
    """Create a client for ``host`` serving the chain with hex hash ``chainhash``."""
    try:
        chain_hash = bytes.fromhex(chainhash)
    except ValueError as err:
        raise ValueError(
            f"unable to create basic HTTP client for url {host!r} and chainhash "
            f"{chainhash!r}: {err}"
        ) from err
    return await HttpClient.create(host, chain_hash)


async def for_urls(urls: Sequence[str], chain_hash: bytes | None) -> list[Client]:
    """Create clients for several relays, sharing the first chain info learnt."""
    clients: list[Client] = []
    info: ChainInfo | None = None
    skipped: list[str] = []
    for url in urls:
        if info is None:
            try:
                client = await HttpClient.create(url, chain_hash)
            except Exception as err:
                logger.info("http client: skipping %s for now: %s", url, err)
                skipped.append(url)
                continue
            info = await client.info()
            clients.append(client)
        else:
            clients.append(HttpClient(url, info))
    if info is not None:
        clients.extend(HttpClient(url, info) for url in skipped)
    return clients


async def ping(root: str) -> None:
    """Request the health endpoint of ``root``; raise if it cannot be reached."""
    url = f"{root}/health"
    try:
        async with httpx.AsyncClient(timeout=MAX_TIMEOUT_HTTP_REQUEST) as http:
            await http.get(url)
    except _TRANSPORT_ERRORS as err:
        raise ConnectionError(f"creating request: {err}") from err


async def is_server_ready(addr: str) -> None:
    """Wait until the HTTP server at ``addr`` answers, or raise ``TimeoutError``."""
    for attempt in range(1, HTTP_WAIT_MAX_COUNTER + 1):
        try:
            await ping(f"http://{addr}")
            return
        except ConnectionError:
            if attempt == HTTP_WAIT_MAX_COUNTER:
                raise TimeoutError("timeout waiting http server to be ready") from None
        await asyncio.sleep(HTTP_WAIT_INTERVAL)