from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis

DENYLIST_PREFIX = "wayfarer:auth:denied-jti"


class RedisCache:
    """Access-token denylist.

    Access tokens are stateless, so logging out cannot recall one that was
    already handed out. Instead its ``jti`` is parked here until the token
    would have expired anyway, and bearer authentication checks the set.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _denylist_key(jti: str) -> str:
        return f"{DENYLIST_PREFIX}:{jti}"

    @staticmethod
    def ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``; Redis rejects TTLs below 1."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        remaining = expires_at - datetime.now(timezone.utc)
        return max(1, int(remaining.total_seconds()))

    def verify_connection(self) -> None:
        # Sync ping so the async client is never bound to a throwaway loop
        client = Redis.from_url(
            self.redis_url,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            client.ping()
        finally:
            client.close()

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self.client.set(self._denylist_key(jti), "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return await self.client.exists(self._denylist_key(jti)) > 0

    async def close(self) -> None:
        await self.client.aclose()
