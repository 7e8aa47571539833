# app/services/infrastructure/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockBackendError(RuntimeError):
    """Redis could not be reached while taking or releasing a lock."""


class RedisClient:
    """Pooled async Redis client used for cross-process coordination."""

    def __init__(self, url: str | None):
        self.url = url
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        if not self.url:
            raise RuntimeError("Redis URL not configured")

        try:
            logger.info("Attempting Redis connection", url_preview=self.url[:12] + "...")

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=10,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))
        finally:
            self._initialized = False

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def acquire_lock(self, key: str, token: str, ttl_s: int) -> bool:
        """
        SET NX with expiry. True when this caller now holds the lock.

        Raises:
            LockBackendError: Redis unreachable; callers must not assume the lock
        """
        try:
            await self._ensure_initialized()
            return bool(await self.client.set(key, token, nx=True, ex=ttl_s))
        except (redis.RedisError, RuntimeError) as e:
            logger.error("Redis lock acquire failed", key=key[:40], error=str(e))
            raise LockBackendError(f"Could not acquire lock {key}: {e}") from e

    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock held with `token`. False if it expired or belongs to someone else."""
        try:
            await self._ensure_initialized()
            return bool(await self.client.eval(_RELEASE_SCRIPT, 1, key, token))
        except (redis.RedisError, RuntimeError) as e:
            logger.error("Redis lock release failed", key=key[:40], error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        """Get value - with fallback handling"""
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:30], error=str(e))
            return None
