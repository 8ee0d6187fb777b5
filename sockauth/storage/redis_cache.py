from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis


class RedisTokenStore:
    """Active-token registry and access-token denylist kept in Redis."""

    # Default operation timeout for Redis commands
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
        """Compute a TTL of at least one second from an absolute expiry."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the store."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def add_token(self, jti: str, subject: str, expires_at: datetime) -> None:
        await self.client.set(
            f"auth:access:active:{jti}", subject, ex=self._ttl_seconds(expires_at)
        )

    async def is_active(self, jti: str) -> bool:
        pipe = self.client.pipeline()
        pipe.exists(f"auth:access:active:{jti}")
        pipe.exists(f"auth:access:denylist:{jti}")
        active, denied = await pipe.execute()
        return bool(active) and not bool(denied)

    async def revoke_token(self, jti: str, ttl_seconds: int) -> bool:
        pipe = self.client.pipeline()
        pipe.delete(f"auth:access:active:{jti}")
        if ttl_seconds > 0:
            pipe.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)
        results = await pipe.execute()
        return bool(results[0])

    async def is_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
