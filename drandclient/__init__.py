"""Asyncio client for fetching, caching and watching drand beacon randomness over HTTP."""

__version__ = "0.1.0"