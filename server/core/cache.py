"""Cache service with Redis (production) or SQLite (development) backend.

SQLite is sufficient for single-process deployments; Redis is used when the
engine runs with several worker processes sharing one queue.
"""

import json
import time
from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class CacheService:
    """Async cache service with Redis or SQLite backend.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and REDIS_URL is set
    - SQLite: When Redis is disabled or unreachable and a Database is given
    - Memory: Last resort, per-process, expired entries dropped lazily
    """

    def __init__(self, settings: Settings, database: Optional["Database"] = None):
        self.settings = settings
        self.database = database  # SQLite backend
        self.redis: Optional[redis.Redis] = None
        self.memory_cache: Dict[str, Tuple[float, Any]] = {}  # key -> (expires_at, value)
        self.use_redis = bool(settings.redis_enabled and settings.redis_url)
        self.use_sqlite = not self.use_redis and database is not None

    @property
    def backend(self) -> str:
        if self.use_redis and self.redis:
            return "redis"
        if self.use_sqlite and self.database:
            return "sqlite"
        return "memory"

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)

            except Exception as e:
                logger.warning("Redis connection failed, falling back", error=str(e))
                self.use_redis = False
                self.redis = None
                if self.database:
                    self.use_sqlite = True
                    logger.info("Using SQLite cache (Redis fallback)")
        else:
            logger.info("Cache backend selected", backend=self.backend)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            logger.info("Redis cache connections closed")

        self.memory_cache.clear()

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        try:
            if self.use_redis and self.redis:
                value = await self.redis.get(key)
            elif self.use_sqlite and self.database:
                value = await self.database.get_cache_entry(key)
            else:
                value = self._memory_get(key)
                log_cache_operation(logger, "get", key, hit=value is not None)
                return value

            log_cache_operation(logger, "get", key, hit=value is not None)
            return json.loads(value) if value else None

        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with optional TTL (seconds)."""
        try:
            ttl = ttl or self.settings.cache_ttl

            if self.use_redis and self.redis:
                await self.redis.setex(key, ttl, json.dumps(value, default=str))
            elif self.use_sqlite and self.database:
                if not await self.database.set_cache_entry(key, json.dumps(value, default=str), ttl):
                    return False
            else:
                self._memory_set(key, value, ttl)

            log_cache_operation(logger, "set", key, ttl=ttl, backend=self.backend)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    def _memory_get(self, key: str) -> Optional[Any]:
        entry = self.memory_cache.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= time.time():
            del self.memory_cache[key]
            return None
        return value

    def _memory_set(self, key: str, value: Any, ttl: int) -> None:
        now = time.time()
        expired = [k for k, (expires_at, _) in self.memory_cache.items() if expires_at <= now]
        for k in expired:
            del self.memory_cache[k]
        self.memory_cache[key] = (now + ttl, value)

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        try:
            if self.use_redis and self.redis:
                deleted = bool(await self.redis.delete(key))
            elif self.use_sqlite and self.database:
                deleted = await self.database.delete_cache_entry(key)
            else:
                deleted = self.memory_cache.pop(key, None) is not None

            log_cache_operation(logger, "delete", key, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        return await self.get(key) is not None
