# infrastructure/cache.py
"""In-process TTL cache shared by the search and answer paths"""
import json
import threading
import time
from typing import Any, Dict, Optional, Tuple

from ekb.core.exceptions import CacheError
from ekb.core.interfaces import ICache


class InMemoryTTLCache(ICache):
    """
    Thread-safe key-value cache with per-entry expiry.

    Values are stored JSON-encoded so callers never share mutable state with
    the cache. Expired entries are dropped on read; when the store exceeds
    `max_entries` the entries closest to expiry are evicted (keeps newest half).
    """

    def __init__(self, max_entries: int = 1000, clock=time.monotonic):
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()

    def _cleanup_if_full(self) -> None:
        if len(self._entries) < self._max_entries:
            return
        now = self._clock()
        for key in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            del self._entries[key]
        if len(self._entries) < self._max_entries:
            return
        by_expiry = sorted(self._entries.items(), key=lambda item: item[1][0])
        for key, _ in by_expiry[: len(by_expiry) - self._max_entries // 2]:
            del self._entries[key]

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
        try:
            return json.loads(payload)
        except ValueError as e:
            raise CacheError(f"Corrupt cache entry {key}: {e}") from e

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise CacheError(f"Value for {key} is not serializable: {e}") from e
        with self._lock:
            self._cleanup_if_full()
            self._entries[key] = (self._clock() + ttl_seconds, payload)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
