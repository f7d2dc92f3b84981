import asyncio
import logging
import time
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Optional, Tuple

from content_identity.config import Config
from content_identity.errors import ManifestFetchError
from content_identity.models.records import Manifest
from content_identity.service.hashing import mask

logger = logging.getLogger(__name__)


class ManifestCache:
    """Bounded read-through cache of resolved manifests keyed by URI.

    Entries younger than ``refresh_after`` are served as-is. Older entries
    trigger a re-fetch; if that fails the stale entry is still served, but
    only while it is younger than ``ttl``. Past ``ttl`` an entry is evicted
    and fetch errors propagate.
    """

    def __init__(
        self,
        max_entries: int = Config.MANIFEST_CACHE_SIZE,
        refresh_after: float = Config.MANIFEST_CACHE_REFRESH,
        ttl: float = Config.MANIFEST_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if refresh_after > ttl:
            raise ValueError("refresh_after must not exceed ttl")
        self.max_entries = max_entries
        self.refresh_after = refresh_after
        self.ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Manifest, float]]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiting: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, uri: str) -> Optional[Tuple[Manifest, float]]:
        entry = self._entries.get(uri)
        if entry is None:
            return None
        age = self._clock() - entry[1]
        if age >= self.ttl:
            del self._entries[uri]
            return None
        self._entries.move_to_end(uri)
        return entry[0], age

    def _store(self, uri: str, manifest: Manifest) -> None:
        self._entries[uri] = (manifest, self._clock())
        self._entries.move_to_end(uri)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted manifest cache entry {mask(evicted)}")

    def peek(self, uri: str) -> Optional[Manifest]:
        found = self._lookup(uri)
        return found[0] if found else None

    def invalidate(self, uri: str) -> None:
        self._entries.pop(uri, None)

    async def get_or_fetch(self, uri: str, fetch: Callable[[], Awaitable[Manifest]]) -> Manifest:
        found = self._lookup(uri)
        if found and found[1] < self.refresh_after:
            return found[0]

        lock = self._locks.setdefault(uri, asyncio.Lock())
        self._waiting[uri] = self._waiting.get(uri, 0) + 1
        try:
            async with lock:
                # another task may have refreshed the entry while we waited
                found = self._lookup(uri)
                if found and found[1] < self.refresh_after:
                    return found[0]
                try:
                    manifest = await fetch()
                except ManifestFetchError as e:
                    if found is not None:
                        logger.warning(f"Re-fetch of {mask(uri)} failed, serving cached manifest: {e}")
                        return found[0]
                    raise
                self._store(uri, manifest)
                return manifest
        finally:
            # locks only live while a fetch for the URI is in flight
            self._waiting[uri] -= 1
            if not self._waiting[uri]:
                del self._waiting[uri]
                self._locks.pop(uri, None)

    @property
    def in_flight(self) -> int:
        return len(self._locks)
