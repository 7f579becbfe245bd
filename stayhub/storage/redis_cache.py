from __future__ import annotations

import hashlib
import math
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

from stayhub.storage.models import RevocationRecord


class RedisCache:
    """Redis-backed revocation list and rate limiter."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Token bucket: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 for ``SET EX``."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, math.ceil((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _revocation_key(token: str) -> str:
        # Full tokens never land in Redis; the digest is the unique key
        return f"auth:revoked:{hashlib.sha256(token.encode()).hexdigest()}"

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _record(token: str, raw: Optional[str]) -> Optional[RevocationRecord]:
        if raw is None:
            return None
        try:
            expires_at = datetime.fromtimestamp(float(raw), tz=timezone.utc)
        except (TypeError, ValueError):
            expires_at = datetime.now(timezone.utc)
        return RevocationRecord(token=token, expires_at=expires_at)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def revoke_token(self, token: str, expires_at: datetime) -> None:
        await self.client.set(
            self._revocation_key(token),
            str(int(expires_at.timestamp())),
            ex=self._ttl_seconds(expires_at),
        )

    async def get_revoked_token(self, token: str) -> Optional[RevocationRecord]:
        raw = await self.client.get(self._revocation_key(token))
        return self._record(token, raw)

    async def is_token_revoked(self, token: str) -> bool:
        return bool(await self.client.exists(self._revocation_key(token)))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket check; the Lua script makes refill and consume atomic."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under ``asyncio.run`` per test, but exposes the same awaitable methods
    as ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def revoke_token(self, token: str, expires_at: datetime) -> None:
        self._sync_client.set(
            RedisCache._revocation_key(token),
            str(int(expires_at.timestamp())),
            ex=RedisCache._ttl_seconds(expires_at),
        )

    async def get_revoked_token(self, token: str) -> Optional[RevocationRecord]:
        raw = self._sync_client.get(RedisCache._revocation_key(token))
        return RedisCache._record(token, raw)

    async def is_token_revoked(self, token: str) -> bool:
        return bool(self._sync_client.exists(RedisCache._revocation_key(token)))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        now = time.time()
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[now, refill_rate, limit, max(1, cost)]
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
