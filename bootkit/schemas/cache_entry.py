"""
CacheEntry schema - a memoized value and the source mtime it was computed at.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class CacheEntry:
    """
    A cached value.

    Attributes:
        key: Cache key
        value: Memoized value (typically a parsed file)
        mtime_ns: Source file st_mtime_ns observed when the value was computed
    """
    key: str
    value: Any
    mtime_ns: int

    def is_fresh(self, mtime_ns: int) -> bool:
        """True if the source has not changed since caching."""
        return self.mtime_ns == mtime_ns
