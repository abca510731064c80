from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

USER_CACHE_PREFIXES = ("user_profile", "account_summary")

# Failures that mean "cache unavailable" rather than a programming error
CACHE_ERRORS = (RedisError, OSError, TimeoutError)


class RedisCache:
    """Redis wrapper for the fast-path auth state.

    Key namespaces are shared with other services reading the same Redis, so they
    are part of the persisted-state contract:

    - ``user:{email}`` / ``user:{id}``: account read replicas
    - ``session:{token}`` and ``user_sessions:{userId}``: live sessions and registry
    - ``blacklist:{token}``: revoked bearer tokens
    - ``otp:{email}`` / ``verification_token:{token}``: verification artifacts
    - ``otp_attempts:{email}``: submission counter for the live OTP
    - ``auth_code:{code}`` / ``oauth_role:{state}``: OAuth hand-off state
    - ``{action}:{actor}``: fixed-window rate-limit counters
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()

    # -------------------------------------------------------------- primitives

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry counts as a miss
            await self.client.delete(key)
            return None

    async def set_json(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(value, default=str), ex=max(1, int(ttl_seconds)))

    async def pop_json(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete a single-use entry (GETDEL)."""
        raw = await self.client.getdel(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    # ---------------------------------------------------------------- accounts

    async def cache_user(self, payload: Dict[str, Any], ttl_seconds: int) -> None:
        pipe = self.client.pipeline()
        encoded = json.dumps(payload, default=str)
        pipe.set(f"user:{payload['email']}", encoded, ex=ttl_seconds)
        pipe.set(f"user:{payload['id']}", encoded, ex=ttl_seconds)
        await pipe.execute()

    async def get_user(self, email_or_id: str) -> Optional[Dict[str, Any]]:
        return await self.get_json(f"user:{email_or_id}")

    async def clear_user(self, user_id: str, *emails: str) -> None:
        keys = [f"user:{user_id}", *(f"user:{email}" for email in emails if email)]
        keys.extend(f"{prefix}:{user_id}" for prefix in USER_CACHE_PREFIXES)
        await self.client.delete(*keys)

    # ---------------------------------------------------------------- sessions

    async def cache_session(
        self, token: str, user_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        ttl = max(1, int(ttl_seconds))
        registry = f"user_sessions:{user_id}"
        pipe = self.client.pipeline()
        pipe.set(f"session:{token}", json.dumps(payload, default=str), ex=ttl)
        pipe.sadd(registry, token)
        pipe.expire(registry, ttl)
        await pipe.execute()

    async def get_session(self, token: str) -> Optional[Dict[str, Any]]:
        return await self.get_json(f"session:{token}")

    async def drop_session(self, token: str, user_id: str) -> None:
        pipe = self.client.pipeline()
        pipe.delete(f"session:{token}")
        pipe.srem(f"user_sessions:{user_id}", token)
        await pipe.execute()

    async def session_tokens(self, user_id: str) -> Set[str]:
        return set(await self.client.smembers(f"user_sessions:{user_id}"))

    async def forget_session_token(self, user_id: str, token: str) -> None:
        await self.client.srem(f"user_sessions:{user_id}", token)

    async def blacklist_token(self, token: str, ttl_seconds: int) -> None:
        await self.client.set(f"blacklist:{token}", "1", ex=ttl_seconds)

    async def is_blacklisted(self, token: str) -> bool:
        return bool(await self.client.exists(f"blacklist:{token}"))

    # ---------------------------------------------------------------- counters

    async def incr_counter(self, key: str, ttl_seconds: int) -> int:
        """INCR ``key`` and (re)apply its TTL in one transaction; returns the new count."""
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, max(1, int(ttl_seconds)))
        count, _ = await pipe.execute()
        return int(count)

    async def get_counter(self, key: str) -> int:
        raw = await self.client.get(key)
        try:
            return int(raw)
        except (TypeError, ValueError):
            return 0

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """INCR a fixed-window counter; returns (count, seconds left in window)."""
        count = int(await self.client.incr(key))
        if count == 1:
            await self.client.expire(key, window_seconds)
            return count, window_seconds
        ttl = int(await self.client.ttl(key))
        if ttl < 0:
            # Counter lost its expiry; restart the window rather than pin it forever
            await self.client.expire(key, window_seconds)
            ttl = window_seconds
        return count, ttl


class _SyncPipeline:
    def __init__(self, sync_pipeline):
        self._pipe = sync_pipeline

    def __getattr__(self, name: str):
        return getattr(self._pipe, name)

    async def execute(self):
        return self._pipe.execute()


class _SyncClientAdapter:
    """Async-signature facade over the synchronous Redis client."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def getdel(self, key: str) -> Optional[str]:
        return self._sync.getdel(key)

    async def delete(self, *keys: str) -> int:
        return self._sync.delete(*keys)

    async def incr(self, key: str) -> int:
        return self._sync.incr(key)

    async def expire(self, key: str, ttl: int) -> bool:
        return self._sync.expire(key, ttl)

    async def ttl(self, key: str) -> int:
        return self._sync.ttl(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def sadd(self, key: str, *members: str) -> int:
        return self._sync.sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return self._sync.srem(key, *members)

    async def smembers(self, key: str) -> Set[str]:
        return self._sync.smembers(key)

    async def ping(self) -> bool:
        return self._sync.ping()

    async def aclose(self) -> None:
        self._sync.close()

    def pipeline(self) -> _SyncPipeline:
        return _SyncPipeline(self._sync.pipeline())


class SyncRedisCache(RedisCache):
    """RedisCache over a synchronous client.

    Used under TEST_MODE so pytest's per-test event loops never bind the client.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()
