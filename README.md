# drandclient

An asyncio client for drand randomness beacons. It fetches rounds of public
randomness from HTTP relays, checks that each relay serves the chain whose
hash you give, and layers caching, failover between relays and shared
watching on top.

## Installing

```
pip install drandclient
```

The tests need the `test` extra:

```
pip install "drandclient[test]"
pytest
```

## What is in the package

- `drandclient.types`: the beacon result `RandomData`, the chain
  parameters `ChainInfo` (with `ChainInfo.from_json` and `ChainInfo.hash`),
  round arithmetic (`current_round`, `time_of_round`, `next_round`),
  `randomness_from_signature` (SHA-256 of the signature), the abstract
  `Client` base class, and `EmptyClient`, which serves chain information
  but no randomness.
- `drandclient.httpclient`: `HttpClient`, which talks to one HTTP relay,
  and the helpers `new_simple_client`, `for_urls`, `ping` and
  `is_server_ready`.
- `drandclient.cache`: `make_cache`, the bounded `LRUResultCache`, the
  `NullCache` used when the cache size is 0, and `CachingClient`, which
  answers `get` for a round it has already seen from its cache and stores
  every watched beacon.
- `drandclient.poll`: `polling_watcher`, which turns any client into a
  stream of new beacons by asking for the current round once per period.
- `drandclient.optimizing`: `OptimizingClient`, which orders its clients
  by measured speed, races the fastest two on each `get`, falls back to
  slower ones on failure and speed-tests them in the background.
- `drandclient.aggregator`: `WatchAggregator`, which shares one upstream
  watch between any number of local watchers.
- `drandclient.client`: `new` and `wrap`, which assemble the above from a
  `ClientConfig`.

Every client is used from inside a running event loop; `get`, `info` and
`close` are coroutines, `watch` returns an async generator and `round_at`
is a plain method.

## Fetching randomness from one relay

```python
import asyncio

from drandclient.httpclient import new_simple_client

CHAIN_HASH = "<hex chain hash of the network you trust>"


async def main() -> None:
    client = await new_simple_client("https://drand.example.com", CHAIN_HASH)
    try:
        latest = await client.get(0)          # round 0 means "latest"
        print(latest.round, latest.get_randomness().hex())
    finally:
        await client.close()


asyncio.run(main())
```

Creating the client fetches `<url>/<chain hash>/info` and raises
`ValueError` if the hash of what comes back differs from the one given.
`HttpClient` also works as an async context manager.

## Several relays with caching and failover

```python
from drandclient.client import ClientConfig, new
from drandclient.httpclient import for_urls


async def main() -> None:
    chain_hash = bytes.fromhex(CHAIN_HASH)
    relays = await for_urls(
        ["https://drand.example.com", "https://drand2.example.com"],
        chain_hash,
    )
    client = await new(ClientConfig(clients=relays, chain_hash=chain_hash))
    try:
        result = await client.get(1234)
        print(result.round, result.get_randomness().hex())
    finally:
        await client.close()
```

`for_urls` creates a client for every relay it can reach once one of them
has supplied the chain information; relays that failed first are added
afterwards with that information.

`ClientConfig` takes:

- `clients`: the sources of randomness.
- `chain_hash` or `chain_info`: the root of trust. `new` raises
  `ValueError("no root of trust specified")` without one unless
  `insecure=True`. Giving both when they do not match raises `ValueError`.
- `watcher`: a factory called with the chain info and the cache, returning
  an object with a `watch()` async generator; it becomes a passive source
  of new beacons.
- `cache_size`: rounds kept locally, 32 by default; 0 turns caching off.
- `auto_watch`: keep a watch open in the background so new beacons are
  cached before they are asked for.
- `auto_watch_retry`: seconds before an ended auto watch is reopened
  (0 means 30 seconds, a negative value means never).
- `setup_timeout`: seconds allowed for fetching the chain info from the
  clients when `chain_info` is not given (5 by default).

Without any client and without a watcher, `new` raises
`ValueError("no points of contact specified")`. `wrap(clients, config)`
is `new` with `clients` put into the configuration.

## Watching for new rounds

```python
async for result in client.watch():
    print(result.round, result.get_randomness().hex())
```

Watching an HTTP relay yields the current beacon, then polls at each round
boundary of the chain. The optimizing client only passes on rounds newer
than the last one it yielded.

## Errors

- `EmptyClientUnsupportedGetError` is raised by `EmptyClient.get`; the
  optimizing client skips it when collecting failures.
- `ClientClosedError` is raised by requests on a closed `HttpClient` or
  `OptimizingClient`.
- `drandclient.optimizing.MultiError` is raised when every raced client
  fails (`"no valid clients"`) or when closing clients fails; its `errors`
  attribute holds the individual failures.
- Failed HTTP requests and bad status codes raise `ConnectionError`;
  malformed responses raise `ValueError`.
- `is_server_ready` raises `TimeoutError` after 20 failed attempts two
  seconds apart.

## What the package does not do

- It does not check beacon signatures against the chain's public key. The
  only check is that a relay's chain information hashes to the expected
  chain hash; beacons are trusted as the relays return them.
- It has no gossip or peer-to-peer transport; HTTP relays and user-supplied
  watchers are the only sources.
- It has no command-line tool and no relay server of its own.