# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""In-memory cache with TTL support for proxy responses.

Expired entries are kept until evicted so callers can fall back to stale
data when the proxy is down. Per-process only; each instance of the
control plane keeps its own cache.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional, Dict
from dataclasses import dataclass


@dataclass
class CacheEntry:
    """Cache entry with value and expiration time."""
    value: Any
    expires_at: datetime

    @property
    def expired(self) -> bool:
        return datetime.utcnow() > self.expires_at


class TTLCache:
    """asyncio-safe in-memory cache with TTL expiration and stale reads."""

    def __init__(self, default_ttl_seconds: int = 300, max_size: int = 1000):
        self._cache: Dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl_seconds
        self._max_size = max_size
        self._hits = 0
        self._misses = 0
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache if present and not expired."""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None or entry.expired:
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    async def get_stale(self, key: str) -> Optional[Any]:
        """Get value from cache even if it has expired."""
        async with self._lock:
            entry = self._cache.get(key)
            return entry.value if entry is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = datetime.utcnow() + timedelta(seconds=ttl)

        async with self._lock:
            if key not in self._cache and len(self._cache) >= self._max_size:
                self._evict_expired()
                if len(self._cache) >= self._max_size:
                    oldest_keys = sorted(
                        self._cache.keys(),
                        key=lambda k: self._cache[k].expires_at
                    )[:max(1, len(self._cache) // 10)]  # Remove 10%
                    for k in oldest_keys:
                        del self._cache[k]

            self._cache[key] = CacheEntry(value=value, expires_at=expires_at)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def delete_matching(self, pattern: str) -> int:
        """Delete every key containing pattern."""
        async with self._lock:
            keys = [k for k in self._cache if pattern in k]
            for k in keys:
                del self._cache[k]
            return len(keys)

    def _evict_expired(self) -> int:
        """Remove expired entries. Called with the lock held."""
        expired_keys = [k for k, v in self._cache.items() if v.expired]
        for k in expired_keys:
            del self._cache[k]
        return len(expired_keys)

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._cache),
            "max_size": self._max_size,
            "default_ttl": self._default_ttl,
            "hits": self._hits,
            "misses": self._misses,
        }
