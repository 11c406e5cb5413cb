"""Core result, chain-information and client types shared by every client."""

from __future__ import annotations

import abc
import hashlib
import json
import math
import struct
from collections.abc import AsyncGenerator, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, Union

DEFAULT_SCHEME_ID = "pedersen-bls-chained"
EMPTY_CLIENT_NAME = "EmptyClient"

_DEFAULT_BEACON_IDS = ("", "default")
_MAX_INT64 = 2**63 - 1

TimeLike = Union[int, float, datetime]


class EmptyClientUnsupportedGetError(Exception):
    """Raised when randomness is requested from a client that holds none."""

    def __init__(self, message: str = "get is not supported by an empty client") -> None:
        super().__init__(message)


class ClientClosedError(Exception):
    """Raised when a closed client is used."""

    def __init__(self, message: str = "client closed") -> None:
        super().__init__(message)


def randomness_from_signature(signature: bytes) -> bytes:
    """Derive the randomness of a beacon from its signature (SHA-256)."""
    return hashlib.sha256(signature).digest()


def unix_time(t: TimeLike) -> int:
    """Return the whole Unix second of a timestamp or datetime."""
    if isinstance(t, datetime):
        return math.floor(t.timestamp())
    return math.floor(t)


def next_round(now: int, period: int, genesis: int) -> tuple[int, int]:
    """Return the next round number and the Unix time at which it is produced."""
    period = int(period)
    if period <= 0:
        raise ValueError("period must be a positive number of seconds")
    if now < genesis:
        return 1, genesis
    from_genesis = now - genesis
    upcoming = from_genesis // period + 1
    next_time = genesis + upcoming * period
    return upcoming + 1, next_time


def current_round(now: int, period: int, genesis: int) -> int:
    """Return the latest round available at Unix time ``now``."""
    upcoming, _ = next_round(now, period, genesis)
    if upcoming <= 1:
        return upcoming
    return upcoming - 1


def time_of_round(period: int, genesis: int, round: int) -> int:
    """Return the Unix time at which ``round`` is produced."""
    if round == 0:
        return genesis
    value = genesis + (round - 1) * int(period)
    if value > _MAX_INT64 or value < 0:
        return _MAX_INT64
    return value


class Result(Protocol):
    """A single beacon as returned by a client."""

    round: int
    signature: bytes
    previous_signature: bytes | None

    def get_randomness(self) -> bytes:
        ...


@dataclass
class RandomData:
    """A full beacon response, including what is needed to validate it."""

    round: int = 0
    randomness: bytes | None = None
    signature: bytes = b""
    previous_signature: bytes | None = None

    def get_randomness(self) -> bytes:
        """Return the randomness, deriving it from the signature when absent."""
        if self.randomness is not None:
            return self.randomness
        return randomness_from_signature(self.signature)


def _hex_field(data: Mapping[str, Any], name: str) -> bytes | None:
    value = data.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a hex string")
    return bytes.fromhex(value)


def _int_field(data: Mapping[str, Any], name: str) -> int:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {name!r} must be an integer")
    return value


@dataclass(frozen=True)
class ChainInfo:
    """Public parameters of a randomness chain; the root of trust."""

    public_key: bytes | None
    period: int
    genesis_time: int
    genesis_seed: bytes = b""
    scheme: str = DEFAULT_SCHEME_ID
    beacon_id: str = ""

    @classmethod
    def from_json(cls, data: str | bytes | Mapping[str, Any]) -> ChainInfo:
        """Build chain information from its JSON form."""
        if isinstance(data, (str, bytes, bytearray)):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as err:
                raise ValueError(f"invalid chain info JSON: {err}") from err
        if not isinstance(data, Mapping):
            raise ValueError("chain info must be a JSON object")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise ValueError("field 'metadata' must be an object")
        return cls(
            public_key=_hex_field(data, "public_key"),
            period=_int_field(data, "period"),
            genesis_time=_int_field(data, "genesis_time"),
            genesis_seed=_hex_field(data, "groupHash") or b"",
            scheme=str(data.get("schemeID") or DEFAULT_SCHEME_ID),
            beacon_id=str(metadata.get("beaconID") or ""),
        )

    def hash(self) -> bytes:
        """Return the chain hash identifying these parameters."""
        digest = hashlib.sha256()
        digest.update(struct.pack(">Iq", self.period & 0xFFFFFFFF, self.genesis_time))
        digest.update(self.public_key or b"")
        digest.update(self.genesis_seed)
        if self.beacon_id not in _DEFAULT_BEACON_IDS:
            digest.update(self.beacon_id.encode())
        return digest.digest()


class Client(abc.ABC):
    """A source of randomness for one chain."""

    @abc.abstractmethod
    async def get(self, round: int) -> Result:
        """Return the beacon of ``round``; round 0 asks for the latest."""

    @abc.abstractmethod
    def watch(self) -> AsyncGenerator[Result, None]:
        """Return an async generator of new beacons as they appear."""

    @abc.abstractmethod
    async def info(self) -> ChainInfo:
        """Return the parameters of the chain."""

    @abc.abstractmethod
    def round_at(self, t: TimeLike) -> int:
        """Return the latest round available at time ``t``."""

    async def close(self) -> None:
        """Release the client's resources."""

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class EmptyClient(Client):
    """A client that knows the chain parameters but serves no randomness."""

    def __init__(self, info: ChainInfo) -> None:
        self._info = info

    def __str__(self) -> str:
        return EMPTY_CLIENT_NAME

    async def info(self) -> ChainInfo:
        return self._info

    def round_at(self, t: TimeLike) -> int:
        return current_round(unix_time(t), self._info.period, self._info.genesis_time)

    async def get(self, round: int) -> Result:
        raise EmptyClientUnsupportedGetError()

    async def watch(self) -> AsyncGenerator[Result, None]:
        for result in ():
            yield result

    async def close(self) -> None:
        return None