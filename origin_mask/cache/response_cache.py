import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Iterable, Optional
from urllib.parse import urlsplit

from origin_mask.models import CacheEntry, Headers

logger = logging.getLogger("uvicorn.error")

STATIC = "static"
DYNAMIC = "dynamic"
DENIED = "denied"


class ResponseCache:
    """
    In-memory cache for upstream responses.

    Entries are keyed by method and proxy URL and kept in insertion order so
    the size bound can evict the oldest entry first. Denylisted paths are
    never stored nor served.
    """

    def __init__(
        self,
        static_ttl: float = 3600,
        dynamic_ttl: float = 30,
        max_entries: int = 500,
        denylist: Iterable[str] = (),
        static_extensions: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ):
        self.static_ttl = static_ttl
        self.dynamic_ttl = dynamic_ttl
        self.max_entries = max_entries
        self.denylist = [item for item in denylist if item]
        self.static_extensions = tuple(ext.lower() for ext in static_extensions)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    @staticmethod
    def key(method: str, url: str) -> str:
        return f"{method.upper()} {url}"

    @staticmethod
    def _path_of(url: str) -> str:
        return urlsplit(url).path or "/"

    def classify(self, path: str) -> str:
        path = self._path_of(path)
        if any(fragment in path for fragment in self.denylist):
            return DENIED
        if path.lower().endswith(self.static_extensions):
            return STATIC
        return DYNAMIC

    def ttl_for(self, cache_class: str) -> float:
        if cache_class == STATIC:
            return self.static_ttl
        if cache_class == DYNAMIC:
            return self.dynamic_ttl
        return 0

    def is_cacheable(self, method: str, path: str) -> bool:
        if method.upper() != "GET" or self.max_entries <= 0:
            return False
        return self.ttl_for(self.classify(path)) > 0

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at < self.ttl_for(entry.cache_class)

    def get(self, method: str, url: str) -> Optional[CacheEntry]:
        if not self.is_cacheable(method, url):
            return None
        key = self.key(method, url)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not self._is_fresh(entry, now):
                del self._entries[key]
                return None
            return entry

    def put(
        self, method: str, url: str, status: int, headers: Headers, body: bytes
    ) -> bool:
        """Store a response. Returns False when the response is not eligible."""
        if status != 200 or not self.is_cacheable(method, url):
            return False
        if any(name.lower() == "set-cookie" for name, _ in headers):
            return False

        key = self.key(method, url)
        entry = CacheEntry(
            key=key,
            status=status,
            headers=list(headers),
            body=body,
            created_at=self._clock(),
            cache_class=self.classify(url),
        )
        evicted = 0
        with self._lock:
            # Re-putting moves the key to the newest position
            self._entries.pop(key, None)
            self._entries[key] = entry
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                evicted += 1
        if evicted:
            logger.debug(f"[Cache] Size bound reached, evicted {evicted} oldest entries")
        return True

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key
                for key, entry in self._entries.items()
                if not self._is_fresh(entry, now)
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info(f"[Cache] Sweep removed {len(expired)} expired entries")
        return len(expired)

    def stats(self) -> dict:
        with self._lock:
            return {"entries": len(self._entries), "maxEntries": self.max_entries}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
