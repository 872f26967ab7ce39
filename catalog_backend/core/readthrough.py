"""Read-through helper over :class:`CacheStore` with single-flight fill.

Concurrent misses for one key share a single ``compute`` call: the first
caller takes the store's fill lock for the key and fills the cache, the others
wait on the lock and then find the value already cached.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Optional, TypeVar

from catalog_backend.core.cache import CacheStore

T = TypeVar("T")


async def get_or_compute(
    cache: CacheStore,
    key: str,
    *,
    compute: Callable[[], Awaitable[T]],
    ttl_seconds: Optional[float] = None,
    should_cache: Callable[[Any], bool] = lambda value: value is not None,
    after_store: Optional[Callable[[T], None]] = None,
) -> T:
    """Return the cached value for ``key`` or compute and store it once.

    ``should_cache`` decides whether a computed value is worth storing; by
    default ``None`` (not found) is returned but not cached. ``after_store``
    runs once per fill, still under the key lock.
    """

    cached = cache.get(key)
    if cached is not None:
        return cached

    async with cache.fill_lock(key):
        # Re-check after acquiring the lock.
        cached = cache.get(key)
        if cached is not None:
            return cached

        value = await compute()
        if should_cache(value):
            cache.set(key, value, ttl_seconds)
            if after_store is not None:
                after_store(value)
        return value


__all__ = ["get_or_compute"]
