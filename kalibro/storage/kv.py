from __future__ import annotations

import fnmatch
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from kalibro.logging import get_logger
from kalibro.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class WindowHit:
    """Outcome of a fixed-window counter hit."""

    allowed: bool
    count: int
    reset_in: int


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set_with_ttl(self, key: str, value: str, seconds: int) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def add_to_set(self, key: str, member: str) -> bool: ...

    async def remove_from_set(self, key: str, member: str) -> bool: ...

    async def members_of(self, key: str) -> List[str]: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def increment(self, key: str, ttl_seconds: int) -> int: ...

    async def hit_window(self, key: str, limit: int, window_seconds: int) -> WindowHit: ...

    async def push_to_list(self, key: str, value: str, max_length: int) -> None: ...

    async def list_range(self, key: str, start: int, stop: int) -> List[str]: ...

    async def scan_keys(self, pattern: str) -> List[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisKeyValueStore:
    """Redis-backed key-value adapter.

    An adapter built without a URL is unconfigured: reads return nothing and
    writes are dropped. Transport failures surface as ``StoreUnavailable`` so
    callers can decide whether to degrade or fail.
    """

    # INCR that only applies the TTL when it creates the key
    _INCREMENT_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
if value == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return value
"""

    # Fixed window counter: never increments past the limit
    _HIT_WINDOW_SCRIPT = """
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local ttl = redis.call('TTL', KEYS[1])

if current == 0 or ttl < 0 then
  redis.call('SET', KEYS[1], 1, 'EX', window)
  return {1, 1, window}
end

if current >= limit then
  return {0, current, ttl}
end

current = redis.call('INCR', KEYS[1])
return {1, current, ttl}
"""

    def __init__(self, redis_url: Optional[str], *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = None
        if redis_url:
            self.client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
            self._increment = self.client.register_script(self._INCREMENT_SCRIPT)
            self._hit_window = self.client.register_script(self._HIT_WINDOW_SCRIPT)

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        if not self.redis_url:
            raise StoreUnavailable("verify_connection")
        # Short-lived sync client keeps the async pool off a startup event loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(
        self, operation: str, call: Callable[[], Awaitable[T]], default: T
    ) -> T:
        if self.client is None:
            return default
        try:
            return await call()
        except (RedisError, OSError) as exc:
            logger.warning("kv_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailable(operation, exc) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", lambda: self.client.get(key), None)

    async def set_with_ttl(self, key: str, value: str, seconds: int) -> bool:
        if seconds <= 0:
            # Redis rejects non-positive expirations; treat as already expired
            await self.delete(key)
            return False

        async def _set() -> bool:
            return bool(await self.client.set(key, value, ex=int(seconds)))

        return await self._run("set_with_ttl", _set, False)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0

        async def _delete() -> int:
            return int(await self.client.delete(*keys))

        return await self._run("delete", _delete, 0)

    async def add_to_set(self, key: str, member: str) -> bool:
        async def _add() -> bool:
            return bool(await self.client.sadd(key, member))

        return await self._run("add_to_set", _add, False)

    async def remove_from_set(self, key: str, member: str) -> bool:
        async def _remove() -> bool:
            return bool(await self.client.srem(key, member))

        return await self._run("remove_from_set", _remove, False)

    async def members_of(self, key: str) -> List[str]:
        async def _members() -> List[str]:
            return sorted(await self.client.smembers(key))

        return await self._run("members_of", _members, [])

    async def expire(self, key: str, seconds: int) -> bool:
        async def _expire() -> bool:
            return bool(await self.client.expire(key, max(1, int(seconds))))

        return await self._run("expire", _expire, False)

    async def ttl(self, key: str) -> Optional[int]:
        async def _ttl() -> Optional[int]:
            remaining = int(await self.client.ttl(key))
            # -2 missing key, -1 no expiry
            return remaining if remaining >= 0 else None

        return await self._run("ttl", _ttl, None)

    async def increment(self, key: str, ttl_seconds: int) -> int:
        async def _incr() -> int:
            return int(await self._increment(keys=[key], args=[max(1, int(ttl_seconds))]))

        return await self._run("increment", _incr, 0)

    async def hit_window(self, key: str, limit: int, window_seconds: int) -> WindowHit:
        async def _hit() -> WindowHit:
            allowed, count, reset_in = await self._hit_window(
                keys=[key], args=[int(limit), int(window_seconds)]
            )
            return WindowHit(bool(int(allowed)), int(count), int(reset_in))

        # Unconfigured stores cannot count, so they never block
        return await self._run("hit_window", _hit, WindowHit(True, 0, 0))

    async def push_to_list(self, key: str, value: str, max_length: int) -> None:
        async def _push() -> None:
            pipe = self.client.pipeline()
            pipe.lpush(key, value)
            pipe.ltrim(key, 0, max(0, max_length - 1))
            await pipe.execute()

        await self._run("push_to_list", _push, None)

    async def list_range(self, key: str, start: int, stop: int) -> List[str]:
        async def _range() -> List[str]:
            return list(await self.client.lrange(key, start, stop))

        return await self._run("list_range", _range, [])

    async def scan_keys(self, pattern: str) -> List[str]:
        async def _scan() -> List[str]:
            return [key async for key in self.client.scan_iter(match=pattern, count=500)]

        return await self._run("scan_keys", _scan, [])

    async def ping(self) -> bool:
        async def _ping() -> bool:
            return bool(await self.client.ping())

        return await self._run("ping", _ping, False)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()


class MemoryKeyValueStore:
    """Process-local key-value backend with TTL semantics.

    Used for tests and the development fallback when Redis is not reachable.
    State lives only as long as the process.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}

    @property
    def is_configured(self) -> bool:
        return True

    def _live(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def _expire_in(self, key: str, seconds: float) -> None:
        self._expires[key] = self._clock() + seconds

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            if not self._live(key):
                return None
            value = self._data[key]
            return value if isinstance(value, str) else None

    async def set_with_ttl(self, key: str, value: str, seconds: int) -> bool:
        with self._lock:
            if seconds <= 0:
                self._data.pop(key, None)
                self._expires.pop(key, None)
                return False
            self._data[key] = value
            self._expire_in(key, int(seconds))
            return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key):
                    removed += 1
                self._data.pop(key, None)
                self._expires.pop(key, None)
        return removed

    async def add_to_set(self, key: str, member: str) -> bool:
        with self._lock:
            if not self._live(key):
                self._data[key] = set()
            members = self._data[key]
            if member in members:
                return False
            members.add(member)
            return True

    async def remove_from_set(self, key: str, member: str) -> bool:
        with self._lock:
            if not self._live(key):
                return False
            members = self._data[key]
            if member not in members:
                return False
            members.discard(member)
            if not members:
                self._data.pop(key, None)
                self._expires.pop(key, None)
            return True

    async def members_of(self, key: str) -> List[str]:
        with self._lock:
            if not self._live(key):
                return []
            return sorted(self._data[key])

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            if not self._live(key):
                return False
            self._expire_in(key, max(1, int(seconds)))
            return True

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            if not self._live(key) or key not in self._expires:
                return None
            return max(0, int(math.ceil(self._expires[key] - self._clock())))

    async def increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            if not self._live(key):
                self._data[key] = "0"
                self._expire_in(key, max(1, int(ttl_seconds)))
            value = int(self._data[key]) + 1
            self._data[key] = str(value)
            return value

    async def hit_window(self, key: str, limit: int, window_seconds: int) -> WindowHit:
        with self._lock:
            if not self._live(key):
                self._data[key] = "1"
                self._expire_in(key, int(window_seconds))
                return WindowHit(True, 1, int(window_seconds))
            current = int(self._data[key])
            reset_in = max(0, int(math.ceil(self._expires[key] - self._clock())))
            if current >= limit:
                return WindowHit(False, current, reset_in)
            current += 1
            self._data[key] = str(current)
            return WindowHit(True, current, reset_in)

    async def push_to_list(self, key: str, value: str, max_length: int) -> None:
        with self._lock:
            if not self._live(key):
                self._data[key] = []
            items = self._data[key]
            items.insert(0, value)
            del items[max(0, max_length):]

    async def list_range(self, key: str, start: int, stop: int) -> List[str]:
        with self._lock:
            if not self._live(key):
                return []
            items = self._data[key]
            # Redis treats stop as inclusive, -1 meaning the last element
            end = len(items) if stop == -1 else stop + 1
            return list(items[start:end])

    async def scan_keys(self, pattern: str) -> List[str]:
        with self._lock:
            return [
                key
                for key in list(self._data.keys())
                if self._live(key) and fnmatch.fnmatchcase(key, pattern)
            ]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
            self._expires.clear()


__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RedisKeyValueStore",
    "WindowHit",
]
