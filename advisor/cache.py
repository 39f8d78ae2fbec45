from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from .clock import Clock, RealClock
from .config import AdvisorConfig
from .metrics import KEYS


logger = logging.getLogger(__name__)


def cache_key(prefix: str, ident: str) -> str:
    return f"{prefix}:{ident}"


@dataclass(frozen=True, slots=True)
class CacheTTL:
    """TTL classes in seconds. Callers pick the class; the cache never infers it."""

    knowledge_base: int = 15 * 60
    response: int = 5 * 60
    conversation: int = 30 * 60

    @staticmethod
    def from_config(cfg: AdvisorConfig) -> "CacheTTL":
        return CacheTTL(
            knowledge_base=int(cfg.kb_ttl_s),
            response=int(cfg.response_ttl_s),
            conversation=int(cfg.conversation_ttl_s),
        )


class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_s: int) -> None: ...

    def delete(self, key: str) -> None: ...


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: str
    value: Any
    ttl_s: int
    inserted_ms: int

    def expired(self, now_ms: int) -> bool:
        return now_ms - self.inserted_ms > self.ttl_s * 1000


class MemoryCache:
    """
    Process-local TTL mapping.

    Expired entries are dropped lazily on read and swept on every write.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or RealClock()
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Any | None:
        now = self._clock.now_ms()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_s: int) -> None:
        now = self._clock.now_ms()
        with self._lock:
            self._entries[key] = CacheEntry(key=key, value=value, ttl_s=int(ttl_s), inserted_ms=now)
            self._sweep_locked(now)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock.now_ms())

    def _sweep_locked(self, now_ms: int) -> int:
        stale = [k for k, e in self._entries.items() if e.expired(now_ms)]
        for k in stale:
            del self._entries[k]
        return len(stale)


class RedisCache:
    """Shared tier. Values are stored as JSON with a server-side expiry."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @staticmethod
    def from_url(url: str, *, socket_timeout_ms: int = 250) -> "RedisCache":
        from redis import Redis

        timeout_s = max(0.001, socket_timeout_ms / 1000.0)
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_s,
            socket_connect_timeout=timeout_s,
        )
        return RedisCache(client)

    def ping(self) -> bool:
        return bool(self._client.ping())

    def get(self, key: str) -> Any | None:
        raw = self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_s: int) -> None:
        self._client.set(key, json.dumps(value, separators=(",", ":")), ex=max(1, int(ttl_s)))

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def close(self) -> None:
        close_fn = getattr(self._client, "close", None)
        if callable(close_fn):
            close_fn()


class TieredCache:
    """
    Cache-aside front door: shared tier when healthy, local mapping otherwise.

    No method raises because of the shared tier. A failure marks it unhealthy; it is
    probed again (ping) at most once per retry interval.
    """

    def __init__(
        self,
        *,
        local: MemoryCache | None = None,
        remote: Optional[CacheBackend] = None,
        clock: Clock | None = None,
        retry_interval_ms: int = 30_000,
        metrics: Any | None = None,
        remote_healthy: bool = True,
    ) -> None:
        self._clock = clock or RealClock()
        self._local = local or MemoryCache(clock=self._clock)
        self._remote = remote
        self._retry_interval_ms = max(0, int(retry_interval_ms))
        self._metrics = metrics
        self._lock = threading.Lock()
        self._remote_healthy = bool(remote is not None and remote_healthy)
        self._failed_at_ms: Optional[int] = None if self._remote_healthy else self._clock.now_ms()
        self._set_health_gauge()

    @staticmethod
    def connect(cfg: AdvisorConfig, *, clock: Clock | None = None, metrics: Any | None = None) -> "TieredCache":
        clk = clock or RealClock()
        local = MemoryCache(clock=clk)
        if not cfg.redis_url:
            logger.info("Cache using in-memory backend (no REDIS_URL)")
            return TieredCache(local=local, remote=None, clock=clk, metrics=metrics)
        try:
            remote = RedisCache.from_url(cfg.redis_url, socket_timeout_ms=cfg.redis_socket_timeout_ms)
        except Exception as e:
            logger.warning("Redis client could not be created, using in-memory cache: %s", e)
            return TieredCache(local=local, remote=None, clock=clk, metrics=metrics)
        healthy = True
        try:
            remote.ping()
            logger.info("Cache using Redis backend")
        except Exception as e:
            healthy = False
            logger.warning("Redis connection failed, using in-memory fallback: %s", e)
        return TieredCache(
            local=local,
            remote=remote,
            clock=clk,
            retry_interval_ms=cfg.redis_retry_interval_ms,
            metrics=metrics,
            remote_healthy=healthy,
        )

    @property
    def remote_healthy(self) -> bool:
        return self._remote_healthy

    @property
    def local(self) -> MemoryCache:
        return self._local

    def get(self, key: str) -> Any | None:
        value: Any | None = None
        if self._use_remote():
            try:
                value = self._remote.get(key)  # type: ignore[union-attr]
            except Exception as e:
                self._mark_failed("get", key, e)
                value = self._local.get(key)
        else:
            value = self._local.get(key)
        self._inc(KEYS["cache_hit_total"] if value is not None else KEYS["cache_miss_total"])
        return value

    def set(self, key: str, value: Any, ttl_s: int) -> None:
        if self._use_remote():
            try:
                self._remote.set(key, value, ttl_s)  # type: ignore[union-attr]
                return
            except Exception as e:
                self._mark_failed("set", key, e)
        self._local.set(key, value, ttl_s)

    def delete(self, key: str) -> None:
        # Always clear the local copy too: it may hold a value written while the remote was down.
        self._local.delete(key)
        if self._use_remote():
            try:
                self._remote.delete(key)  # type: ignore[union-attr]
            except Exception as e:
                self._mark_failed("delete", key, e)

    def close(self) -> None:
        close_fn = getattr(self._remote, "close", None)
        if callable(close_fn):
            try:
                close_fn()
            except Exception as e:
                logger.debug("Ignoring cache close error: %s", e)

    def _use_remote(self) -> bool:
        if self._remote is None:
            return False
        if self._remote_healthy:
            return True
        with self._lock:
            if self._remote_healthy:
                return True
            now = self._clock.now_ms()
            if self._failed_at_ms is not None and now - self._failed_at_ms < self._retry_interval_ms:
                return False
            self._failed_at_ms = now
        ping = getattr(self._remote, "ping", None)
        if not callable(ping):
            return False
        try:
            ok = bool(ping())
        except Exception as e:
            logger.debug("Redis probe failed: %s", e)
            return False
        if ok:
            with self._lock:
                self._remote_healthy = True
                self._failed_at_ms = None
            logger.info("Redis reachable again, resuming shared cache")
            self._set_health_gauge()
        return ok

    def _mark_failed(self, op: str, key: str, err: Exception) -> None:
        with self._lock:
            was_healthy = self._remote_healthy
            self._remote_healthy = False
            self._failed_at_ms = self._clock.now_ms()
        self._inc(KEYS["cache_remote_failure_total"])
        if was_healthy:
            logger.error("Cache %s error, switching to in-memory fallback: key=%s error=%s", op, key, err)
        self._set_health_gauge()

    def _inc(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.inc(name, 1)

    def _set_health_gauge(self) -> None:
        if self._metrics is not None and hasattr(self._metrics, "set"):
            self._metrics.set(KEYS["cache_remote_healthy"], 1 if self._remote_healthy else 0)
