"""Process-local TTL cache for admin listings.

Entries live only inside one process: there is no cross-instance
consistency, so nothing may depend on the cache for correctness. Admin
mutations call :meth:`TTLCache.invalidate`. Self-service writes (registration,
confirmation, login timestamps) do not, so a listing can lag them by up to
``ADMIN_USER_LIST_CACHE_TTL_SECONDS``.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from nutriclinic.config import settings


@dataclass
class _Entry:
    expires: float
    payload: Any


def cache_key(params: Mapping[str, Any]) -> str:
    """Stable key from query params; empty values are ignored."""
    parts = sorted((k, str(v)) for k, v in params.items() if v not in (None, ""))
    return "&".join(f"{k}={v}" for k, v in parts)


class TTLCache:
    """Thread-safe key/value cache with a fixed time-to-live."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    def get(self, params: Mapping[str, Any]) -> Tuple[bool, Optional[Any]]:
        key = cache_key(params)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            if entry.expires <= now:
                del self._entries[key]
                return False, None
            return True, entry.payload

    def set(self, params: Mapping[str, Any], payload: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[cache_key(params)] = _Entry(self._clock() + self.ttl_seconds, payload)

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


user_list_cache = TTLCache(settings.ADMIN_USER_LIST_CACHE_TTL_SECONDS)


def get_user_list_cache() -> TTLCache:
    """FastAPI dependency; override in tests to inject a private cache."""
    return user_list_cache
