"""Page-session cache for resolved include content.

The cache is an explicit object owned by the caller and passed into each
resolution call. One instance per "page session" is the intended lifetime: it
may be shared by several resolutions (e.g. across navigations) and cleared
explicitly, but it is never a module-level global.

The default TTL can be set with the STITCHDOWN_CACHE_TTL environment variable
(seconds, default 30).
"""

import logging
import time
from typing import Callable, Dict, Iterator, NamedTuple, Optional

from decouple import config as env_config

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = env_config("STITCHDOWN_CACHE_TTL", default=30.0, cast=float)


class CacheEntry(NamedTuple):
    content: str
    timestamp: float


class TTLCache:
    """Resolution-key to content mapping whose entries expire after ``ttl`` seconds.

    An entry is valid while ``clock() - timestamp < ttl``. Expired entries are
    left in place until overwritten or purged; ``get`` simply ignores them.
    """

    def __init__(
        self,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = DEFAULT_CACHE_TTL if ttl is None else ttl
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def get(self, key: str, ttl: Optional[float] = None) -> Optional[str]:
        """Return cached content for ``key`` if present and fresh, else None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        ttl = self.ttl if ttl is None else ttl
        if self.clock() - entry.timestamp < ttl:
            return entry.content
        logger.debug(f"Cache entry expired: {key}")
        return None

    def set(self, key: str, content: str) -> None:
        self._entries[key] = CacheEntry(content, self.clock())

    def entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def purge_expired(self) -> int:
        """Drop expired entries, returning how many were removed."""
        now = self.clock()
        expired = [k for k, e in self._entries.items() if now - e.timestamp >= self.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"Cleared {count} cached include(s)")
