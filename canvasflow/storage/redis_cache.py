from __future__ import annotations

import time
from typing import Tuple

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper holding the shared monthly quota ledger.

    Each ``(user, period)`` pair has a hash whose ``used`` field is seeded
    from the durable store the first time the period is touched, plus a
    sorted set of in-flight reservations scored by their expiry time. Expired
    reservations are pruned on every reserve, so a worker that dies between
    admission and settlement frees its slot after the reservation TTL.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # KEYS: used hash, reservation zset
    # ARGV: seed, limit, key ttl, reservation id, now, reservation ttl
    _RESERVE_SCRIPT = """
redis.call('HSETNX', KEYS[1], 'used', ARGV[1])
local now = tonumber(ARGV[5])
redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', now)
local used = tonumber(redis.call('HGET', KEYS[1], 'used') or '0')
local reserved = redis.call('ZCARD', KEYS[2])
local limit = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])
local observed = used + reserved
redis.call('EXPIRE', KEYS[1], ttl)
if observed < limit then
  redis.call('ZADD', KEYS[2], now + tonumber(ARGV[6]), ARGV[4])
  redis.call('EXPIRE', KEYS[2], ttl)
  return {1, observed}
end
return {0, observed}
"""

    _COMMIT_SCRIPT = """
redis.call('ZREM', KEYS[2], ARGV[1])
return redis.call('HINCRBY', KEYS[1], 'used', 1)
"""

    _RELEASE_SCRIPT = """
redis.call('ZREM', KEYS[2], ARGV[1])
return redis.call('ZCARD', KEYS[2])
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the shared ledger."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()

    async def check_health(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception:
            return False

    @staticmethod
    def _quota_keys(user_id: str, period_key: str) -> Tuple[str, str]:
        # Shared hash tag keeps both keys in one cluster slot for the scripts
        tag = f"{{{user_id}:{period_key}}}"
        return f"quota:runs:{tag}", f"quota:inflight:{tag}"

    async def reserve_run_slot(
        self,
        user_id: str,
        period_key: str,
        *,
        reservation_id: str,
        seed_used: int,
        limit: int,
        ttl_seconds: int,
        reservation_ttl_seconds: int,
    ) -> Tuple[bool, int]:
        """Atomically reserve one run slot for the user's period.

        Returns:
            Tuple of (acquired, observed) where observed counts committed and
            live in-flight runs before this reservation.
        """
        result = await self.client.eval(
            self._RESERVE_SCRIPT,
            2,
            *self._quota_keys(user_id, period_key),
            seed_used,
            limit,
            ttl_seconds,
            reservation_id,
            int(time.time()),
            reservation_ttl_seconds,
        )
        return (bool(int(result[0])), int(result[1]))

    async def commit_run_slot(self, user_id: str, period_key: str, reservation_id: str) -> int:
        """Turn a reservation into a counted run. Returns the new used count."""
        result = await self.client.eval(
            self._COMMIT_SCRIPT, 2, *self._quota_keys(user_id, period_key), reservation_id
        )
        return int(result)

    async def release_run_slot(self, user_id: str, period_key: str, reservation_id: str) -> int:
        """Drop a reservation without counting it. Returns the live reservation count."""
        result = await self.client.eval(
            self._RELEASE_SCRIPT, 2, *self._quota_keys(user_id, period_key), reservation_id
        )
        return int(result)
