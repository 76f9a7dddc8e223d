"""Per-key request limiter backed by the Django cache.

A window opens on the first hit for a key and lasts ``window_secs``;
hits beyond ``max_hits`` inside it are refused. State lives in the
configured cache so every gunicorn worker sees the same counters when a
shared backend (Redis, Memcached, database) is used.
"""

import time
from typing import Optional

from django.core.cache import cache as default_cache

from .errors import RateLimitedError


class CacheRateLimiter:
    def __init__(self, max_hits: int, window_secs: int, prefix: str = "rl", cache=None, clock=None):
        self.max_hits = max_hits
        self.window_secs = window_secs
        self.prefix = prefix
        self.cache = cache or default_cache
        self._clock = clock or time.time

    def _keys(self, key: str) -> tuple[str, str]:
        base = f"{self.prefix}:{key}"
        return f"{base}:start", f"{base}:count"

    def hit(self, key: str) -> int:
        """Count one request for ``key``.

        Returns:
            Requests left in the current window.

        Raises:
            RateLimitedError: When the window is exhausted; carries the
                seconds until it resets.
        """
        now = self._clock()
        start_key, count_key = self._keys(key)
        if self.cache.add(start_key, now, timeout=self.window_secs):
            self.cache.set(count_key, 1, timeout=self.window_secs)
            return self.max_hits - 1

        try:
            count = self.cache.incr(count_key)
        except ValueError:
            # Counter expired between the two reads; start a fresh window.
            self.cache.set(start_key, now, timeout=self.window_secs)
            self.cache.set(count_key, 1, timeout=self.window_secs)
            return self.max_hits - 1

        if count > self.max_hits:
            started: Optional[float] = self.cache.get(start_key)
            elapsed = now - started if started is not None else 0
            raise RateLimitedError(max(1, int(self.window_secs - elapsed + 0.999)))
        return self.max_hits - count

    def reset(self, key: str) -> None:
        self.cache.delete_many(list(self._keys(key)))
