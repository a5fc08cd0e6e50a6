import logging
import functools
import threading
import time
from typing import Any, Callable, Dict, Optional

LOGGER = logging.getLogger(__name__)


_cache: Dict[Any, Any] = {}
_cache_lock = threading.Lock()


def bond_cache(func: Callable) -> Callable:
    """
    Memoize a factory function (or classmethod) on its arguments.

    Used for process-wide configuration objects such as ``Config.config()``.
    Stateful services are not cached this way; they are built explicitly and
    passed to whoever needs them.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        key = (func.__module__, func.__qualname__, _freeze(args), _freeze(kwargs))
        with _cache_lock:
            if key in _cache:
                return _cache[key]
        value = func(*args, **kwargs)
        with _cache_lock:
            return _cache.setdefault(key, value)

    return wrapper


def bond_cache_clear() -> None:
    with _cache_lock:
        _cache.clear()
    LOGGER.debug("Cleared bond cache")


def _freeze(value):
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, type):
        return f"{value.__module__}.{value.__qualname__}"
    return value


PRODUCT_CACHE_KEY = "PRODUCT_CACHE"


class ProductCache:
    """
    TTL cache for product details scraped from listing pages.

    Entries live under a single store key as ``{product_id: {"data": ..., "timestamp": ...}}``
    and are independent of the thread lifecycle.
    """

    def __init__(self, store, ttl_seconds: float, clock: Callable[[], float] = time.time,
                 storage_key: str = PRODUCT_CACHE_KEY):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.storage_key = storage_key

    def _load(self) -> Dict[str, Dict[str, Any]]:
        entries = self.store.get(self.storage_key, {})
        return entries if isinstance(entries, dict) else {}

    def get(self, product_id: str) -> Optional[Dict[str, Any]]:
        if not product_id:
            return None
        entry = self._load().get(product_id)
        if not entry:
            return None
        if self.clock() - entry.get("timestamp", 0) > self.ttl_seconds:
            LOGGER.debug(f"Product {product_id} cache entry expired")
            return None
        return entry.get("data")

    def put(self, product_id: str, data: Dict[str, Any]) -> None:
        if not product_id:
            raise ValueError("product_id is required to cache product details")
        entries = self._load()
        entries[product_id] = {"data": data, "timestamp": self.clock()}
        self.store.set(self.storage_key, entries)
        LOGGER.debug(f"Product {product_id} cached")

    def purge_expired(self) -> int:
        now = self.clock()
        entries = self._load()
        fresh = {
            product_id: entry for product_id, entry in entries.items()
            if isinstance(entry, dict) and now - entry.get("timestamp", 0) <= self.ttl_seconds
        }
        removed = len(entries) - len(fresh)
        if removed:
            self.store.set(self.storage_key, fresh)
            LOGGER.info(f"Purged {removed} expired product cache entries")
        return removed

    def clear(self) -> None:
        self.store.remove(self.storage_key)

    def __len__(self) -> int:
        return len(self._load())
