from __future__ import annotations

import copy
import logging
import time
from threading import Lock
from typing import Any, Protocol

logger = logging.getLogger(__name__)

MISS = object()


class CacheTransport(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl_sec: float) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...


class InMemoryTransport:
    """Process-local TTL store. Expired entries are dropped lazily on read."""

    def __init__(self, max_entries: int = 1024):
        self.max_entries = max(1, max_entries)
        self._lock = Lock()
        self._items: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Any:
        now = time.monotonic()
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return MISS
            expire_at, payload = item
            if expire_at <= now:
                self._items.pop(key, None)
                return MISS
            return copy.deepcopy(payload)

    def set(self, key: str, value: Any, ttl_sec: float) -> None:
        now = time.monotonic()
        with self._lock:
            if key not in self._items and len(self._items) >= self.max_entries:
                self._evict(now)
            self._items[key] = (now + ttl_sec, copy.deepcopy(value))

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def _evict(self, now: float) -> None:
        expired = [k for k, (expire_at, _) in self._items.items() if expire_at <= now]
        for key in expired:
            self._items.pop(key, None)
        if len(self._items) >= self.max_entries:
            oldest = min(self._items, key=lambda k: self._items[k][0])
            self._items.pop(oldest, None)


class ResponseCache:
    """Optimization only: transport failures are logged and read as a miss."""

    def __init__(self, transport: CacheTransport | None = None):
        self.transport = transport if transport is not None else InMemoryTransport()

    def get(self, key: str) -> Any:
        try:
            return self.transport.get(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("cache_get_failed key=%s error=%s", key, exc)
            return MISS

    def set(self, key: str, value: Any, ttl_sec: float) -> bool:
        if ttl_sec <= 0:
            return False
        try:
            self.transport.set(key, value, ttl_sec)
        except Exception as exc:  # noqa: BLE001
            logger.warning("cache_set_failed key=%s error=%s", key, exc)
            return False
        return True

    def invalidate(self, key: str) -> bool:
        try:
            self.transport.delete(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("cache_invalidate_failed key=%s error=%s", key, exc)
            return False
        return True

    def clear(self) -> bool:
        try:
            self.transport.clear()
        except Exception as exc:  # noqa: BLE001
            logger.warning("cache_clear_failed error=%s", exc)
            return False
        return True
