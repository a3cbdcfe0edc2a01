"""
License status cache

In-memory, process-local cache of validity decisions so that an authenticated
request does not hit the database every time. Entries older than the TTL are
treated as absent. Not a source of truth: every license mutation invalidates it.
"""
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from config import LICENSE_CACHE_TTL

DEFAULT_KEY = "default"


@dataclass
class CachedLicenseStatus:
    valid: bool
    expire_time: Optional[datetime]
    cached_at: float


def cache_key(device_code: Optional[str]) -> str:
    return device_code or DEFAULT_KEY


class LicenseStatusCache:
    def __init__(self, ttl: float = LICENSE_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CachedLicenseStatus] = {}
        self._lock = threading.Lock()

    def get(self, device_code: Optional[str] = None) -> Optional[CachedLicenseStatus]:
        key = cache_key(device_code)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.cached_at >= self.ttl:
                del self._entries[key]
                return None
            return entry

    def set(self, valid: bool, expire_time: Optional[datetime], device_code: Optional[str] = None) -> CachedLicenseStatus:
        entry = CachedLicenseStatus(valid=valid, expire_time=expire_time, cached_at=self._clock())
        with self._lock:
            self._entries[cache_key(device_code)] = entry
        return entry

    def invalidate(self, device_code: Optional[str] = None):
        """Drop the entry for a device, plus the default entry which may describe the same license.
        Without a device code the whole cache is cleared."""
        with self._lock:
            if device_code:
                self._entries.pop(device_code, None)
                self._entries.pop(DEFAULT_KEY, None)
            else:
                self._entries.clear()

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
