"""
Key-value store used for rate-limit counters and the response cache
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Set, Tuple

import redis.asyncio as redis

from lessonchat.core.config import settings
from lessonchat.deps.utils import redact_url

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """
    Minimal async store interface shared by every orchestrator instance.

    Counter operations must be atomic on the server side; callers never
    read-modify-write a counter themselves.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    async def increment(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """
        Atomically increment a fixed-window counter.

        The expiry is set when the counter is created, so the window starts
        with the first hit and rolls over when the key expires.

        Returns:
            (count after increment, seconds until the window rolls over)
        """

    @abstractmethod
    async def decrement(self, key: str) -> int:
        ...

    @abstractmethod
    async def ttl(self, key: str) -> int:
        ...

    @abstractmethod
    async def add_to_set(self, key: str, member: str, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def set_members(self, key: str) -> Set[str]:
        ...

    @abstractmethod
    async def scan_keys(self, pattern: str) -> List[str]:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...


# KEYS[1] counter key, ARGV[1] window seconds
_INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

# Never lets a rolled-back counter go negative or lose its expiry
_DECREMENT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current <= 0 then
    return 0
end
return redis.call('DECR', KEYS[1])
"""

# Extends the tag set expiry only when the new entry outlives it
_ADD_TO_SET_SCRIPT = """
redis.call('SADD', KEYS[1], ARGV[1])
local ttl = tonumber(ARGV[2])
if ttl > 0 and redis.call('TTL', KEYS[1]) < ttl then
    redis.call('EXPIRE', KEYS[1], ttl)
end
return 1
"""


class RedisKeyValueStore(KeyValueStore):
    """Redis implementation backed by redis.asyncio"""

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.url = url or settings.redis_url
        self.client = client or redis.from_url(self.url, decode_responses=True)
        self._increment = self.client.register_script(_INCREMENT_SCRIPT)
        self._decrement = self.client.register_script(_DECREMENT_SCRIPT)
        self._add_to_set = self.client.register_script(_ADD_TO_SET_SCRIPT)
        logger.info(f"Key-value store configured at {redact_url(self.url)}")

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def increment(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl = await self._increment(keys=[key], args=[int(window_seconds)])
        return int(count), int(ttl)

    async def decrement(self, key: str) -> int:
        return int(await self._decrement(keys=[key]))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def add_to_set(self, key: str, member: str, ttl: Optional[int] = None) -> None:
        await self._add_to_set(keys=[key], args=[member, int(ttl or 0)])

    async def set_members(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key))

    async def scan_keys(self, pattern: str) -> List[str]:
        return [key async for key in self.client.scan_iter(match=pattern, count=500)]

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


def chunked(keys: Iterable[str], size: int = 500) -> Iterable[List[str]]:
    """Split a key list into batches for multi-key DEL calls"""
    batch: List[str] = []
    for key in keys:
        batch.append(key)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


_store: Optional[KeyValueStore] = None


def get_kv_store() -> KeyValueStore:
    """Return the process-wide Redis client (the connection pool is shared, the counters are not)"""
    global _store
    if _store is None:
        _store = RedisKeyValueStore()
    return _store
