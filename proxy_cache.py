"""In-memory response cache with TTL expiry, LRU bound and a background sweeper."""
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass

logger = logging.getLogger(__name__)

CACHE_TTL = 5 * 60            # seconds
SWEEP_INTERVAL = 10 * 60      # seconds
MAX_ENTRY_SIZE = 1024 * 1024  # bytes
MAX_ENTRIES = 500


@dataclass
class CacheEntry:
    body: bytes
    content_type: str
    stored_at: float


def is_cacheable_size(body):
    return len(body) < MAX_ENTRY_SIZE


class ResponseCache:
    """
    Thread-safe map of raw target URL -> CacheEntry.

    Keys are not normalized, so two spellings of the same resource are
    separate entries. Expired entries are never returned, whether or not
    the sweeper has run yet.
    """

    def __init__(self, ttl=CACHE_TTL, max_entries=MAX_ENTRIES, clock=time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _expired(self, entry, now):
        return now - entry.stored_at >= self.ttl

    def get(self, key):
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self._expired(entry, now):
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry

    def put(self, key, body, content_type):
        entry = CacheEntry(body=body, content_type=content_type, stored_at=self._clock())
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    self.evictions += 1
                    logger.debug(f"Cache EVICT: {evicted[:60]}")

    def sweep_expired(self):
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if self._expired(e, now)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.info(f"Cache sweep removed {len(stale)} expired entries")
        return len(stale)

    def stats(self):
        with self._lock:
            size = len(self._entries)
        return {
            'size': size,
            'max_entries': self.max_entries,
            'hits': self.hits,
            'misses': self.misses,
            'evictions': self.evictions,
        }

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key):
        with self._lock:
            return key in self._entries


class CacheSweeper(threading.Thread):
    """Daemon thread that calls sweep_expired() every `interval` seconds."""

    def __init__(self, cache, interval=SWEEP_INTERVAL):
        super().__init__(name='cache-sweeper', daemon=True)
        self.cache = cache
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.cache.sweep_expired()
            except Exception as e:
                logger.warning(f"Cache sweep failed: {e}")

    def stop(self):
        self._stop_event.set()
