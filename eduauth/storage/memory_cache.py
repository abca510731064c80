from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from eduauth.storage.redis_cache import RedisCache


class _MemoryClient:
    """Subset of the Redis command surface with per-key expiry, kept in process.

    Expiry is evaluated lazily against ``clock`` so tests can move time forward
    without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._values: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self.clock():
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    def _live(self, key: str) -> Any:
        self._purge(key)
        return self._values.get(key)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            return value if isinstance(value, str) else None

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        with self._lock:
            self._values[key] = str(value)
            if ex is not None:
                self._expiry[key] = self.clock() + int(ex)
            else:
                self._expiry.pop(key, None)
            return True

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return value if isinstance(value, str) else None

    async def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._values.pop(key, None)
                self._expiry.pop(key, None)
            return removed

    async def incr(self, key: str) -> int:
        with self._lock:
            current = int(self._live(key) or 0) + 1
            self._values[key] = str(current)
            return current

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            self._expiry[key] = self.clock() + int(ttl)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return -2
            deadline = self._expiry.get(key)
            if deadline is None:
                return -1
            return max(0, int(round(deadline - self.clock())))

    async def exists(self, key: str) -> int:
        with self._lock:
            return 1 if self._live(key) is not None else 0

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._live(key)
            if not isinstance(current, set):
                current = set()
                self._values[key] = current
            before = len(current)
            current.update(members)
            return len(current) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._live(key)
            if not isinstance(current, set):
                return 0
            removed = len(current & set(members))
            current.difference_update(members)
            if not current:
                self._values.pop(key, None)
                self._expiry.pop(key, None)
            return removed

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            current = self._live(key)
            return set(current) if isinstance(current, set) else set()

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None

    def pipeline(self) -> "_MemoryPipeline":
        return _MemoryPipeline(self)


class _MemoryPipeline:
    def __init__(self, client: _MemoryClient):
        self._client = client
        self._queued: List[Tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        if not hasattr(self._client, name):
            raise AttributeError(name)

        def _queue(*args, **kwargs):
            self._queued.append((name, args, kwargs))
            return self

        return _queue

    async def execute(self) -> list:
        results = []
        queued, self._queued = self._queued, []
        for name, args, kwargs in queued:
            results.append(await getattr(self._client, name)(*args, **kwargs))
        return results


class MemoryCache(RedisCache):
    """RedisCache semantics without a Redis server (TEST_MODE and dev fallback)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.redis_url = None
        self.client = _MemoryClient(clock)

    def verify_connection(self) -> None:
        return None
