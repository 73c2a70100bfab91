"""
Result caching for directory queries.

ResultCache is the four-operation contract the query service relies on
(has/get/set/clear). Two backends ship with the package: an in-process TTL
cache and a shelve-backed cache that survives restarts and can be flushed by
an administrator from another process. NestedGroupCache is the separate,
non-expiring memo used for transitive group lookups within one sync pass.
"""

import os
import time
import shelve
import hashlib
import logging
import threading
from typing import Any, Dict, Optional, Tuple

from directory_sync.config import DEFAULT_CACHE_TTL

logger = logging.getLogger(__name__)

_MISSING = object()


def cache_key(prefix: str, *parts: Any) -> str:
    """Fingerprint of a query shape: prefix plus md5 of the NUL-separated parts."""
    joined = '\x00'.join('' if part is None else str(part) for part in parts)
    return prefix + hashlib.md5(joined.encode('utf-8')).hexdigest()


class ResultCache:
    """Base class for query result caches."""

    def __init__(self, default_ttl: int = DEFAULT_CACHE_TTL):
        self.default_ttl = default_ttl

    def has(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryResultCache(ResultCache):
    """Thread-safe in-process TTL cache."""

    def __init__(self, default_ttl: int = DEFAULT_CACHE_TTL, clock=time.monotonic):
        super().__init__(default_ttl)
        self._clock = clock
        self._data: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return default
            expires_at, value = item
            if expires_at <= self._clock():
                del self._data[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._data[key] = (self._clock() + lifetime, value)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
        logger.info("Directory result cache cleared")


class ShelveResultCache(ResultCache):
    """
    Cache persisted in a shelve file.

    Entries store an absolute wall-clock expiry so they stay valid across processes.
    """

    def __init__(self, path: str, default_ttl: int = DEFAULT_CACHE_TTL, clock=time.time):
        super().__init__(default_ttl)
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock, shelve.open(self.path) as db:
            item = db.get(key)
            if item is None:
                return default
            expires_at, value = item
            if expires_at <= self._clock():
                del db[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        with self._lock, shelve.open(self.path) as db:
            db[key] = (self._clock() + lifetime, value)

    def clear(self) -> None:
        with self._lock, shelve.open(self.path) as db:
            db.clear()
        logger.info(f"Directory result cache at {self.path} cleared")


class NestedGroupCache:
    """
    Memo of transitive group closures keyed by group DN.

    Never expires on its own; reset it at the start of every sync pass so a pass
    never acts on closures computed during an earlier one.
    """

    def __init__(self):
        self._closures: Dict[str, Dict[str, Any]] = {}

    def __contains__(self, dn: str) -> bool:
        return dn in self._closures

    def get(self, dn: str) -> Optional[Dict[str, Any]]:
        return self._closures.get(dn)

    def set(self, dn: str, closure: Dict[str, Any]) -> None:
        self._closures[dn] = closure

    def reset(self) -> None:
        self._closures.clear()

    def __len__(self):
        return len(self._closures)


def create_cache(config: Dict[str, Any]) -> ResultCache:
    """Build the result cache described by the 'cache' configuration section."""
    config = config or {}
    ttl = config.get('ttl_seconds', DEFAULT_CACHE_TTL)
    if config.get('backend', 'memory') == 'shelve':
        path = config.get('path') or os.path.join('.cache', 'directory_sync')
        return ShelveResultCache(path, default_ttl=ttl)
    return MemoryResultCache(default_ttl=ttl)
