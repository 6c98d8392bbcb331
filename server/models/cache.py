"""SQLite-backed key-value cache table with TTL.

Backs CacheService when Redis is disabled, so API_PROXY response caching
works in single-process deployments without extra infrastructure.
"""

import time
from typing import Optional
from sqlmodel import SQLModel, Field


class CacheEntry(SQLModel, table=True):
    """Generic key-value cache entry with optional expiration."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True, max_length=1024)
    value: str = Field(max_length=1000000)  # JSON serialized
    expires_at: Optional[float] = Field(default=None, index=True)  # Unix timestamp
    created_at: float = Field(default_factory=time.time)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or time.time()) >= self.expires_at
