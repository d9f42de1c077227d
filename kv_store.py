"""
Key-value store access for the request-defense components.

Production uses Redis through ``redis.asyncio``. ``MemoryStore`` mirrors the
subset of the ``redis.asyncio.Redis`` coroutine API the components rely on
(string values, hashes, counters, TTLs) so a single-process deployment can
run without Redis and tests can drive expiry with a fake clock.
"""

import logging
import math
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger("security")

# Errors a store round-trip may raise; caught on every fail-open path
STORE_ERRORS: Tuple[type, ...] = (RedisError, OSError)


def ceil_seconds(seconds: float) -> int:
    """TTL in whole seconds, never below 1."""
    return max(1, int(math.ceil(seconds)))


class MemoryStore:
    """
    In-process store with Redis semantics

    Values are kept as ``str`` (what a ``decode_responses=True`` client
    returns). Expiry is lazy: a key past its deadline is dropped on the next
    access, so reads never observe it.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}

    # --- internals ---

    def _alive(self, name: str) -> bool:
        deadline = self._expires.get(name)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(name, None)
            self._expires.pop(name, None)
        return name in self._data

    def _hash(self, name: str, create: bool = False) -> Optional[Dict[str, str]]:
        if not self._alive(name):
            if not create:
                return None
            self._data[name] = {}
        value = self._data[name]
        if not isinstance(value, dict):
            raise RedisError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    def _string(self, name: str) -> Optional[str]:
        if not self._alive(name):
            return None
        value = self._data[name]
        if isinstance(value, dict):
            raise RedisError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    def _set_expiry(self, name: str, seconds: Optional[float]):
        if seconds is None:
            self._expires.pop(name, None)
        else:
            self._expires[name] = self._clock() + seconds

    # --- connection ---

    async def ping(self) -> bool:
        return True

    async def aclose(self):
        self._data.clear()
        self._expires.clear()

    # --- transactions ---

    def pipeline(self, transaction: bool = True) -> 'MemoryPipeline':
        return MemoryPipeline(self)

    # --- strings ---

    async def get(self, name: str) -> Optional[str]:
        return self._string(name)

    async def set(self, name: str, value: Any, ex: Optional[int] = None,
                  nx: bool = False, keepttl: bool = False) -> Optional[bool]:
        exists = self._alive(name)
        if nx and exists:
            return None
        self._data[name] = str(value)
        if ex is not None:
            self._set_expiry(name, ex)
        elif not keepttl:
            self._set_expiry(name, None)
        return True

    async def setex(self, name: str, time: int, value: Any) -> bool:
        return await self.set(name, value, ex=time)

    async def incr(self, name: str, amount: int = 1) -> int:
        current = self._string(name)
        try:
            number = int(current or 0) + amount
        except ValueError:
            raise RedisError("ERR value is not an integer or out of range")
        self._data[name] = str(number)
        return number

    async def decr(self, name: str, amount: int = 1) -> int:
        return await self.incr(name, -amount)

    # --- keys ---

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if self._alive(name):
                del self._data[name]
                self._expires.pop(name, None)
                removed += 1
        return removed

    async def exists(self, *names: str) -> int:
        return sum(1 for name in names if self._alive(name))

    async def expire(self, name: str, time: int) -> bool:
        if not self._alive(name):
            return False
        self._set_expiry(name, time)
        return True

    async def ttl(self, name: str) -> int:
        if not self._alive(name):
            return -2
        deadline = self._expires.get(name)
        if deadline is None:
            return -1
        # Redis rounds the remaining milliseconds to the nearest second
        return int((deadline - self._clock()) + 0.5)

    # --- hashes ---

    async def hset(self, name: str, key: Optional[str] = None, value: Any = None,
                   mapping: Optional[Mapping[str, Any]] = None) -> int:
        fields = self._hash(name, create=True)
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        added = 0
        for field, field_value in items.items():
            if field not in fields:
                added += 1
            fields[field] = str(field_value)
        return added

    async def hget(self, name: str, key: str) -> Optional[str]:
        fields = self._hash(name)
        return None if fields is None else fields.get(key)

    async def hgetall(self, name: str) -> Dict[str, str]:
        fields = self._hash(name)
        return dict(fields) if fields else {}

    async def hdel(self, name: str, *keys: str) -> int:
        fields = self._hash(name)
        if not fields:
            return 0
        removed = 0
        for key in keys:
            if key in fields:
                del fields[key]
                removed += 1
        if not fields:
            del self._data[name]
            self._expires.pop(name, None)
        return removed

    async def hincrby(self, name: str, key: str, amount: int = 1) -> int:
        fields = self._hash(name, create=True)
        try:
            number = int(fields.get(key, 0)) + amount
        except ValueError:
            raise RedisError("ERR hash value is not an integer")
        fields[key] = str(number)
        return number


class MemoryPipeline:
    """
    Queued commands for ``MemoryStore``, run back to back on ``execute``

    ``MemoryStore`` coroutines never suspend, so a queued batch runs without
    any other task seeing the intermediate state, like ``MULTI``/``EXEC``.
    """

    def __init__(self, store: MemoryStore):
        self._store = store
        self._commands = []

    def __getattr__(self, name: str):
        command = getattr(self._store, name)

        def queue(*args, **kwargs):
            self._commands.append((command, args, kwargs))
            return self
        return queue

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._commands = []

    async def execute(self) -> list:
        commands, self._commands = self._commands, []
        return [await command(*args, **kwargs) for command, args, kwargs in commands]


def create_store(config, clock: Callable[[], float] = time.time):
    """
    Build the store client selected by ``config.STORE_BACKEND``

    The Redis client connects lazily; callers ping it at startup.
    """
    if config.STORE_BACKEND == "memory":
        logger.info("Using in-process memory store")
        return MemoryStore(clock=clock)

    logger.info(f"Using Redis store at {config.REDIS_URL}")
    return aioredis.from_url(config.REDIS_URL, decode_responses=True)


async def close_store(store):
    """Close a store client, whichever flavour it is."""
    closer = getattr(store, "aclose", None) or getattr(store, "close", None)
    if closer is None:
        return
    try:
        await closer()
    except STORE_ERRORS as e:
        logger.warning(f"Store close failed: {e}")
