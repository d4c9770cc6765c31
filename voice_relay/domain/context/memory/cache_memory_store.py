from typing import Dict, Any, Optional
from collections import OrderedDict
import asyncio
from datetime import datetime, timedelta, timezone


class CacheMemoryStore:
    """In-memory cache store with optional TTL and an optional size bound.

    With no TTL and no bound the store grows without limit; the oldest entry
    is evicted first once max_entries is reached.
    """

    def __init__(self, default_ttl: Optional[float] = None, max_entries: Optional[int] = None):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.cache: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._lock = asyncio.Lock()

    def _expiry(self, ttl: Optional[float]) -> Optional[datetime]:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl is None:
            return None
        return datetime.now(timezone.utc) + timedelta(seconds=ttl)

    @staticmethod
    def _expired(entry: Dict[str, Any], now: datetime) -> bool:
        expires_at = entry["expires_at"]
        return expires_at is not None and now > expires_at

    def _store(self, key: str, value: Any, ttl: Optional[float]) -> None:
        # Caller holds the lock
        self.cache[key] = {
            "value": value,
            "expires_at": self._expiry(ttl)
        }
        self.cache.move_to_end(key)

        if self.max_entries is not None:
            while len(self.cache) > self.max_entries:
                self.cache.popitem(last=False)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set a value in cache"""

        async with self._lock:
            self._store(key, value, ttl)

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> Any:
        """Insert unless a live entry exists; return the stored value"""

        async with self._lock:
            entry = self.cache.get(key)
            if entry is not None and not self._expired(entry, datetime.now(timezone.utc)):
                return entry["value"]

            self._store(key, value, ttl)
            return value

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired"""

        async with self._lock:
            if key not in self.cache:
                return None

            entry = self.cache[key]

            if self._expired(entry, datetime.now(timezone.utc)):
                del self.cache[key]
                return None

            return entry["value"]

    async def delete(self, key: str) -> bool:
        """Delete a key from cache"""

        async with self._lock:
            if key in self.cache:
                del self.cache[key]
                return True
            return False

    async def clear_expired(self) -> int:
        """Clear expired entries and return count"""

        async with self._lock:
            now = datetime.now(timezone.utc)
            expired_keys = [
                key for key, entry in self.cache.items()
                if self._expired(entry, now)
            ]

            for key in expired_keys:
                del self.cache[key]

            return len(expired_keys)

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""

        async with self._lock:
            now = datetime.now(timezone.utc)
            active_count = sum(
                1 for entry in self.cache.values()
                if not self._expired(entry, now)
            )

            return {
                "total_keys": len(self.cache),
                "active_keys": active_count,
                "expired_keys": len(self.cache) - active_count,
                "max_entries": self.max_entries,
            }
