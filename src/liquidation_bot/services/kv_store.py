"""Durable key-value store capability.

The tracker persists three string values (address list, backfill time,
backfill block). Which store backs them is decided once, at wiring time:

  RedisKVStore    — shared pool from redis_pool, survives restarts
  NullKVStore     — no store configured: reads miss, writes are dropped
  InMemoryKVStore — dict-backed, behaves like a durable store within one
                    process (tests, local dry runs)

Business code never branches on "is a store configured"; it calls the same
methods and checks ``is_durable`` only where live subscriptions are decided.
Store errors propagate to the caller, which logs and degrades.
"""

import logging
from abc import ABC, abstractmethod
from typing import Mapping

import redis.asyncio as aioredis

from liquidation_bot.redis_pool import get_redis

logger = logging.getLogger("kv_store")


class KVStore(ABC):
    """Minimal async string store."""

    is_durable: bool = True

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def set_many(self, values: Mapping[str, str]) -> None:
        """Write all values or none of them."""
        ...


class NullKVStore(KVStore):
    is_durable = False

    async def get(self, key: str) -> str | None:
        return None

    async def set(self, key: str, value: str) -> None:
        return None

    async def set_many(self, values: Mapping[str, str]) -> None:
        return None


class InMemoryKVStore(KVStore):
    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def set_many(self, values: Mapping[str, str]) -> None:
        self.data.update(values)


class RedisKVStore(KVStore):
    """Redis-backed store. ``set_many`` uses MSET, which is atomic."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str) -> None:
        await self._client.set(key, value)

    async def set_many(self, values: Mapping[str, str]) -> None:
        if values:
            await self._client.mset(dict(values))


def get_kv_store() -> KVStore:
    """Store backed by the shared Redis pool, or a no-op store without one."""
    client = get_redis()
    if client is None:
        return NullKVStore()
    return RedisKVStore(client)
