"""
MtimeCache - memoize expensive reads and invalidate on source mtime change.

Used for the parsed manifest and the parsed persisted config file. The cache
assumes a single writer: the files it watches are only modified by the same
user session that reads them, so comparing st_mtime_ns is sufficient.
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar, Union

from bootkit.schemas import CacheEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MtimeCache:
    """
    In-memory cache keyed by name, validated against a source file's mtime.

    Usage:
        cache = MtimeCache()
        manifest = cache.cached("manifest", path, lambda: parse(path))
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def cached(self, key: str, source_path: Union[str, Path], compute: Callable[[], T]) -> T:
        """
        Return the memoized value for key, recomputing when the source changed.

        Args:
            key: Cache key
            source_path: File whose modification time guards the entry
            compute: Zero-argument callable producing the value

        Returns:
            The cached or freshly computed value

        Raises:
            Whatever compute() raises; nothing is stored in that case
        """
        mtime_ns = self._mtime_ns(source_path)
        if mtime_ns is None:
            # Missing sources are never cached
            self._entries.pop(key, None)
            self._misses += 1
            return compute()

        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(mtime_ns):
            self._hits += 1
            return entry.value

        self._misses += 1
        if entry is not None:
            logger.debug(f"Cache entry '{key}' is stale, recomputing")
        value = compute()
        self._entries[key] = CacheEntry(key=key, value=value, mtime_ns=mtime_ns)
        return value

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the raw entry for key, if any, without validating it."""
        return self._entries.get(key)

    def invalidate(self, key: str) -> bool:
        """
        Drop the entry for key.

        Returns:
            True if an entry was removed
        """
        return self._entries.pop(key, None) is not None

    def invalidate_all(self) -> None:
        """Drop every entry."""
        self._entries.clear()

    def stats(self) -> dict[str, int]:
        return {"hits": self._hits, "misses": self._misses, "entries": len(self._entries)}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _mtime_ns(path: Union[str, Path]) -> Optional[int]:
        try:
            return os.stat(path).st_mtime_ns
        except FileNotFoundError:
            return None
