"""
Two-tier cache facade.

The primary tier is Redis, shared by every process. The secondary tier is a
bounded in-process map used only as a fail-open backstop: it receives writes
the primary could not take and answers reads while the primary is down.

Every operation is best-effort. Backend faults are logged and counted, never
raised, so a cache outage degrades to recomputation rather than failure.

Architecture:
    ::

        CacheFacade
        ├── RedisBackend  (primary, JSON values, SETEX for TTL)
        └── LocalCache    (backstop, lazy expiry, LRU bound)
"""

import hashlib
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

import redis

from .config import DEFAULT_TTLS
from .logger import get_logger
from .retry import CircuitBreaker

logger = get_logger()

KEY_PREFIX = "vs"


def cache_key(*parts: Any) -> str:
    return ":".join([KEY_PREFIX] + [str(p) for p in parts])


def search_key(filters: Dict[str, Any], page: int, limit: int) -> str:
    payload = json.dumps({"f": filters or {}, "p": page, "l": limit}, sort_keys=True, default=str)
    return cache_key("search", hashlib.sha1(payload.encode("utf-8")).hexdigest())


class TTLPolicy:
    """TTL tiers by artifact kind: minutes for lists, hours for documents."""

    def __init__(self, ttls: Optional[Dict[str, int]] = None):
        self.ttls = dict(DEFAULT_TTLS)
        if ttls:
            self.ttls.update(ttls)

    def for_kind(self, kind: str) -> int:
        """TTL for an artifact kind; unknown kinds get the short list TTL."""
        return self.ttls.get(kind, self.ttls["list"])


class LocalCache:
    """
    Bounded in-process cache with per-entry absolute expiry.

    Expired entries are evicted lazily when read. Thread-safe.
    """

    def __init__(self, max_size: int = 10_000, clock: Callable[[], float] = time.monotonic):
        self._store: "OrderedDict[str, tuple[str, float]]" = OrderedDict()
        self._max_size = max_size
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return value

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._store[key] = (value, self._clock() + ttl)
            self._store.move_to_end(key)
            while len(self._store) > self._max_size:
                self._store.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


class RedisBackend:
    """Thin wrapper over a redis client; errors propagate to the facade."""

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 0.5) -> "RedisBackend":
        return cls(redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        ))

    def get(self, key: str) -> Optional[str]:
        raw = self.client.get(key)
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else raw

    def set(self, key: str, value: str, ttl: int) -> None:
        self.client.setex(key, ttl, value)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def ping(self) -> bool:
        return bool(self.client.ping())


class CacheFacade:
    """
    get/set/invalidate over Redis with a local fail-open backstop.

    Contract: ``set`` and ``invalidate`` are best-effort and never raise;
    ``get`` returns None on a miss or when no tier can answer. Losing an
    entry changes latency only, never correctness.
    """

    def __init__(
        self,
        primary: Optional[RedisBackend] = None,
        local: Optional[LocalCache] = None,
        ttls: Optional[TTLPolicy] = None,
        local_ttl_cap: int = 300,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.primary = primary
        self.local = local if local is not None else LocalCache()
        self.ttls = ttls if ttls is not None else TTLPolicy()
        self.local_ttl_cap = local_ttl_cap
        self.breaker = breaker if breaker is not None else CircuitBreaker(failure_threshold=3, recovery_timeout=30)

    def _primary_usable(self) -> bool:
        return self.primary is not None and self.breaker.allow()

    def _fault(self, op: str, key: str, exc: Exception) -> None:
        self.breaker.record_failure()
        logger.increment("cache_faults")
        logger.record_error(f"Cache{type(exc).__name__}")
        logger.warning("Cache backend fault, using local tier", op=op, key=key, error=str(exc))

    def _decode(self, key: str, raw: Optional[str]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable cache entry", key=key)
            self.invalidate(key)
            return None

    def get(self, key: str) -> Any:
        raw = None
        if self._primary_usable():
            try:
                raw = self.primary.get(key)
                self.breaker.record_success()
            except (redis.RedisError, OSError) as e:
                self._fault("get", key, e)
        if raw is None:
            raw = self.local.get(key)

        value = self._decode(key, raw)
        logger.increment("cache_hits" if value is not None else "cache_misses")
        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None, kind: Optional[str] = None) -> bool:
        """
        Store a value; returns True if the primary took it.

        Best-effort, never raises. Unserializable values are logged and dropped.
        """
        if ttl is None:
            ttl = self.ttls.for_kind(kind or "list")
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error("Cache value is not serializable", key=key, error=str(e))
            return False

        if self._primary_usable():
            try:
                self.primary.set(key, raw, ttl)
                self.breaker.record_success()
                self.local.delete(key)
                return True
            except (redis.RedisError, OSError) as e:
                self._fault("set", key, e)

        # Backstop entries are short-lived while a primary is configured
        local_ttl = ttl if self.primary is None else min(ttl, self.local_ttl_cap)
        self.local.set(key, raw, local_ttl)
        return False

    def invalidate(self, key: str) -> None:
        """Best-effort delete from both tiers."""
        self.local.delete(key)
        if self._primary_usable():
            try:
                self.primary.delete(key)
            except (redis.RedisError, OSError) as e:
                self._fault("delete", key, e)

    def get_or_compute(self, key: str, compute: Callable[[], Any], kind: str) -> Any:
        """Return the cached value or compute, cache and return it.

        Errors from ``compute`` propagate; they are not cache errors.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        if value is not None:
            self.set(key, value, kind=kind)
        return value

    def status(self) -> Dict[str, Any]:
        primary = "disabled"
        if self.primary is not None:
            try:
                primary = "ok" if self.primary.ping() else "down"
            except (redis.RedisError, OSError):
                primary = "down"
        return {"primary": primary, "circuit": self.breaker.state, "local_entries": len(self.local)}
