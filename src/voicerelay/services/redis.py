import logging
from typing import List

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async key, list and hash operations against a Redis instance."""

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing or on error."""
        if self._client is None:
            return None
        try:
            value = await self._client.get(key)
            return value if value is None else str(value)
        except RedisError as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Set key to value. If ttl_seconds is set, the key will expire. Returns True on success."""
        if self._client is None:
            return False
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.setex(key, ttl_seconds, value)
            else:
                await self._client.set(key, value)
            return True
        except RedisError as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def set_if_absent(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool | None:
        """Set key only if it does not exist yet.

        Returns True when written, False when the key already existed and
        None when Redis could not be reached.
        """
        if self._client is None:
            return None
        try:
            ex = ttl_seconds if ttl_seconds is not None and ttl_seconds > 0 else None
            written = await self._client.set(key, value, ex=ex, nx=True)
            return bool(written)
        except RedisError as e:
            logger.warning("Redis set-if-absent %s failed: %s", key, e)
            return None

    async def push(self, name: str, value: str) -> bool:
        """Push value onto the head of list name. Returns True on success."""
        if self._client is None:
            return False
        try:
            await self._client.lpush(name, value)
            return True
        except RedisError as e:
            logger.warning("Redis push %s failed: %s", name, e)
            return False

    async def move(
        self,
        source: str,
        destination: str,
        timeout: float | None = None,
    ) -> str | None:
        """Atomically move the tail of source onto the head of destination.

        With a timeout the call blocks up to that many seconds for an element.
        Returns the moved value, or None if source was empty or on error.
        """
        if self._client is None:
            return None
        try:
            if timeout:
                value = await self._client.blmove(
                    source, destination, timeout, src="RIGHT", dest="LEFT"
                )
            else:
                value = await self._client.lmove(
                    source, destination, src="RIGHT", dest="LEFT"
                )
            return value if value is None else str(value)
        except RedisError as e:
            logger.warning("Redis move %s -> %s failed: %s", source, destination, e)
            return None

    async def remove(self, name: str, value: str) -> bool:
        """Remove one occurrence of value from list name. Returns True on success."""
        if self._client is None:
            return False
        try:
            await self._client.lrem(name, 1, value)
            return True
        except RedisError as e:
            logger.warning("Redis remove from %s failed: %s", name, e)
            return False

    async def requeue(self, source: str, destination: str, value: str) -> bool:
        """Remove value from source and push it onto destination in one MULTI/EXEC.

        Returns True on success; on failure neither list is changed.
        """
        if self._client is None:
            return False
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.lrem(source, 1, value).lpush(destination, value).execute()
            return True
        except RedisError as e:
            logger.warning("Redis requeue %s -> %s failed: %s", source, destination, e)
            return False

    async def items(self, name: str) -> List[str]:
        """Return every element of list name (empty on error)."""
        if self._client is None:
            return []
        try:
            return [str(v) for v in await self._client.lrange(name, 0, -1)]
        except RedisError as e:
            logger.warning("Redis range %s failed: %s", name, e)
            return []

    async def increment(self, name: str, field: str) -> int | None:
        """Increment a hash field by one and return the new value, None on error."""
        if self._client is None:
            return None
        try:
            return int(await self._client.hincrby(name, field, 1))
        except RedisError as e:
            logger.warning("Redis increment %s[%s] failed: %s", name, field, e)
            return None

    async def delete_field(self, name: str, field: str) -> bool:
        """Delete a hash field. Returns True if deleted or absent."""
        if self._client is None:
            return False
        try:
            await self._client.hdel(name, field)
            return True
        except RedisError as e:
            logger.warning("Redis delete %s[%s] failed: %s", name, field, e)
            return False


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
