"""
Time-limited cache of resolved remote images.
"""
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Optional

if TYPE_CHECKING:
    from .images import EmbeddedImage

DEFAULT_TTL_SECONDS = 60 * 60


@dataclass(frozen=True)
class CachedImage:
    """
    An embedded image and the time it was fetched.
    """
    image: "EmbeddedImage"
    fetched_at: float

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.fetched_at > ttl


class ImageCache:
    """
    URL-keyed cache of embedded images with a fixed TTL.

    The lock is held only for the dictionary operation itself, never across
    I/O. Entries are replaced, never mutated in place.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CachedImage] = {}
        self._lock = threading.Lock()

    def get(self, url: str) -> Optional["EmbeddedImage"]:
        """
        Return the cached image for `url`, or None if absent or stale.

        Stale entries are dropped so the next resolution refetches.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                return None
            if entry.is_expired(now, self.ttl_seconds):
                del self._entries[url]
                return None
            return entry.image

    def put(self, url: str, image: "EmbeddedImage") -> None:
        entry = CachedImage(image=image, fetched_at=self._clock())
        with self._lock:
            self._entries[url] = entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def clear_expired(self) -> int:
        """
        Remove stale entries and return how many were dropped.
        """
        now = self._clock()
        with self._lock:
            stale = [url for url, entry in self._entries.items() if entry.is_expired(now, self.ttl_seconds)]
            for url in stale:
                del self._entries[url]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, url: object) -> bool:
        return isinstance(url, str) and self.get(url) is not None
