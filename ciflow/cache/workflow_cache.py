"""
Fingerprint-keyed result cache for workflow steps.

Each entry is one JSON file ``<cache_dir>/<key>.json`` holding
``{"_timestamp": <epoch seconds>, "data": <payload>}``. Entries older than the
TTL are deleted on read. Unreadable entries behave as misses.

File IO runs in the default executor so cache access is a suspension point
for the event loop.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TypeVar, Union

from ..utils.paths import read_json, safe_write_json
from .fingerprint import PathLike, generate_cache_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CACHE_DIR = ".workflow-cache"
DEFAULT_TTL = 24 * 60 * 60

_MISS = object()


@dataclass
class CacheStats:
    """Cache access counters."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "writes": self.writes,
            "expirations": self.expirations,
            "hit_rate": self.hit_rate,
        }


class WorkflowCache:
    """TTL cache of JSON payloads stored one file per key."""

    def __init__(
        self,
        cache_dir: Union[str, Path] = DEFAULT_CACHE_DIR,
        ttl: float = DEFAULT_TTL,
        enabled: bool = True,
    ):
        """Initialize the cache.

        Args:
            cache_dir: Directory holding the entry files
            ttl: Entry lifetime in seconds
            enabled: When False every lookup misses and writes are dropped
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.cache_dir = Path(cache_dir)
        self.ttl = ttl
        self.enabled = enabled
        self.stats = CacheStats()
        self._key_locks: Dict[str, asyncio.Lock] = {}

    def _entry_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def _read_entry(self, key: str) -> Any:
        path = self._entry_path(key)
        if not path.exists():
            return _MISS
        try:
            entry = read_json(path)
            timestamp = float(entry["_timestamp"])
            data = entry["data"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cache entry {path.name}: {e}")
            return _MISS

        if time.time() - timestamp > self.ttl:
            self.stats.expirations += 1
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove expired cache entry {path.name}: {e}")
            logger.debug(f"Cache entry {key} expired")
            return _MISS
        return data

    def _write_entry(self, key: str, data: Any) -> bool:
        try:
            safe_write_json(self._entry_path(key), {"_timestamp": time.time(), "data": data})
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to write cache entry {key}: {e}")
            return False

    def _clear_entries(self) -> int:
        if not self.cache_dir.exists():
            return 0
        count = 0
        for path in self.cache_dir.glob("*.json"):
            try:
                path.unlink()
                count += 1
            except OSError as e:
                logger.warning(f"Failed to remove cache entry {path.name}: {e}")
        return count

    def _key_lock(self, key: str) -> asyncio.Lock:
        if key not in self._key_locks:
            self._key_locks[key] = asyncio.Lock()
        return self._key_locks[key]

    async def _in_executor(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def _lookup(self, key: str) -> Any:
        if not self.enabled:
            return _MISS
        data = await self._in_executor(self._read_entry, key)
        if data is _MISS:
            self.stats.misses += 1
            logger.debug(f"Cache miss for {key}")
        else:
            self.stats.hits += 1
            logger.debug(f"Cache hit for {key}")
        return data

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached payload for ``key``, or None on a miss."""
        data = await self._lookup(key)
        return None if data is _MISS else data

    async def set(self, key: str, data: Any) -> bool:
        """Store ``data`` under ``key``.

        Returns:
            True if the entry was written
        """
        if not self.enabled:
            return False
        written = await self._in_executor(self._write_entry, key, data)
        if written:
            self.stats.writes += 1
        return written

    async def clear(self) -> int:
        """Remove every entry.

        Returns:
            Number of entries removed
        """
        count = await self._in_executor(self._clear_entries)
        logger.info(f"Cleared {count} cache entries")
        return count

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        """Return the cached payload for ``key``, computing and storing it on a miss.

        Any stored payload counts as a hit, including falsy values. Concurrent
        calls for the same key wait for the first one, so ``compute`` runs once.
        """
        async with self._key_lock(key):
            data = await self._lookup(key)
            if data is not _MISS:
                return data
            value = await compute()
            await self.set(key, value)
            return value


@dataclass
class CacheLookup:
    """Result of ``try_use_cache``."""

    cache_key: Optional[str]
    from_cache: bool = False
    data: Any = None


async def try_use_cache(
    cache: WorkflowCache,
    cache_type: str,
    relevant_files: Optional[Iterable[PathLike]] = None,
    no_cache: bool = False,
) -> CacheLookup:
    """Look up the cached result of a phase keyed by its input files."""
    if no_cache or not cache.enabled:
        return CacheLookup(cache_key=None)

    cache_key = generate_cache_key(cache_type, relevant_files)
    data = await cache.get(cache_key)
    if data is not None:
        logger.info(f"Using cached {cache_type} result")
        return CacheLookup(cache_key=cache_key, from_cache=True, data=data)
    return CacheLookup(cache_key=cache_key)


async def save_to_cache(cache: WorkflowCache, lookup: CacheLookup, data: Any) -> bool:
    """Store a phase result looked up with ``try_use_cache``.

    Nothing is written when caching was bypassed, the result came from the
    cache, or the payload is empty or reports a failure.
    """
    if lookup.cache_key is None or lookup.from_cache:
        return False
    if data is None or data == {} or data == []:
        return False
    if isinstance(data, dict) and data.get("success") is False:
        return False
    return await cache.set(lookup.cache_key, data)


def with_caching(
    func: Callable[..., Awaitable[T]],
    get_cache_key: Callable[..., str],
    cache: WorkflowCache,
) -> Callable[..., Awaitable[T]]:
    """Wrap a coroutine function so results are cached under a derived key.

    Args:
        func: Coroutine function to wrap
        get_cache_key: Called with the same arguments as ``func`` to derive the key
        cache: Cache used for storage
    """

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        key = get_cache_key(*args, **kwargs)
        return await cache.get_or_compute(key, lambda: func(*args, **kwargs))

    return wrapper
