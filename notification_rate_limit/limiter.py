"""
Rate Limiter
Attempt counter over the Django cache. The first attempt opens the window
with cache.add (set-if-absent with TTL) and records when it ends under
``{key}:timer``; later attempts incr the counter until the window ends.
"""
import logging
import math
import time
from typing import Optional

from django.core.cache import caches
from django.core.cache.backends.base import InvalidCacheKey

from .conf import get_setting
from .exceptions import CacheUnavailableError

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Counts attempts per key within a decay window.

    Atomicity follows the backend: Redis and Memcached implement add/incr
    atomically; LocMemCache serializes them under its own lock. Backends
    without an atomic add (DatabaseCache, FileBasedCache) leave a small
    window where two workers can both open the same key.

    The window's end is stored next to the counter and checked on every
    attempt, so it holds even where the backend TTL drifts: Redis and
    Memcached only take whole seconds (the TTL is rounded up), and the
    generic incr of DatabaseCache/FileBasedCache rewrites the entry with the
    default timeout (the TTL is restored with touch). Throttled attempts do
    not write to the cache.
    """

    def __init__(self, cache_alias: Optional[str] = None):
        self.cache_alias = cache_alias

    @property
    def cache(self):
        return caches[self.cache_alias or get_setting('CACHE_ALIAS')]

    @staticmethod
    def timer_key(key: str) -> str:
        return f"{key}:timer"

    def attempt(self, key: str, max_attempts: int, decay_seconds: float) -> bool:
        """
        Claim one attempt for key. Returns True if within max_attempts.

        The window is fixed by the first attempt and never extended.
        Malformed keys raise InvalidCacheKey; any other backend failure
        raises CacheUnavailableError.
        """
        try:
            hits = self._hit(key, max_attempts, decay_seconds)
        except InvalidCacheKey:
            raise
        except Exception as e:
            logger.warning(f"Rate limit claim failed for {key}: {e}")
            raise CacheUnavailableError(key, e) from e

        logger.debug(f"Rate limit hit {hits}/{max_attempts}: {key}")
        return hits <= max_attempts

    def _open_window(self, cache, key: str, decay_seconds: float, now: float) -> bool:
        if not cache.add(key, 1, math.ceil(decay_seconds)):
            return False
        cache.set(self.timer_key(key), now + decay_seconds, math.ceil(decay_seconds))
        return True

    def _hit(self, key: str, max_attempts: int, decay_seconds: float, retry: bool = True) -> int:
        cache = self.cache
        now = time.time()

        if self._open_window(cache, key, decay_seconds, now):
            return 1

        expires_at = cache.get(self.timer_key(key))
        if expires_at is not None and expires_at <= now:
            # Entry outlived its window (rounded-up TTL)
            cache.delete_many([key, self.timer_key(key)])
            if retry:
                return self._hit(key, max_attempts, decay_seconds, retry=False)
            expires_at = None

        hits = cache.get(key)
        if hits is None:
            # Expired between add and get
            if retry:
                return self._hit(key, max_attempts, decay_seconds, retry=False)
            return max_attempts + 1

        if hits >= max_attempts:
            return hits + 1

        try:
            hits = cache.incr(key)
        except ValueError:
            if retry:
                return self._hit(key, max_attempts, decay_seconds, retry=False)
            return max_attempts + 1

        if expires_at is None:
            expires_at = now + decay_seconds
        cache.touch(key, math.ceil(max(expires_at - now, 0)) or 1)
        return hits

    def attempts(self, key: str) -> int:
        expires_at = self.cache.get(self.timer_key(key))
        if expires_at is not None and expires_at <= time.time():
            return 0
        return self.cache.get(key, 0)

    def available_in(self, key: str) -> float:
        """Seconds until the window for key ends; 0 if none is open."""
        expires_at = self.cache.get(self.timer_key(key))
        if expires_at is None:
            return 0
        return max(expires_at - time.time(), 0)

    def too_many_attempts(self, key: str, max_attempts: int) -> bool:
        return self.attempts(key) >= max_attempts

    def remaining(self, key: str, max_attempts: int) -> int:
        return max(max_attempts - self.attempts(key), 0)

    def clear(self, key: str):
        self.cache.delete_many([key, self.timer_key(key)])
