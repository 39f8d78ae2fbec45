from __future__ import annotations

from typing import Any

from advisor.cache import CacheTTL, MemoryCache, TieredCache, cache_key
from advisor.clock import FakeClock
from advisor.config import AdvisorConfig
from advisor.metrics import KEYS, Metrics


class FlakyRemote:
    """Dict-backed remote tier that can be switched off."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.down = False
        self.pings = 0

    def _check(self) -> None:
        if self.down:
            raise ConnectionError("remote unreachable")

    def ping(self) -> bool:
        self.pings += 1
        self._check()
        return True

    def get(self, key: str) -> Any | None:
        self._check()
        return self.data.get(key)

    def set(self, key: str, value: Any, ttl_s: int) -> None:
        self._check()
        self.data[key] = value

    def delete(self, key: str) -> None:
        self._check()
        self.data.pop(key, None)


def test_cache_key_format() -> None:
    assert cache_key("kb", "all") == "kb:all"


def test_ttl_classes_default_and_from_config() -> None:
    ttl = CacheTTL()
    assert (ttl.knowledge_base, ttl.response, ttl.conversation) == (900, 300, 1800)
    cfg = AdvisorConfig(kb_ttl_s=10, response_ttl_s=20, conversation_ttl_s=30)
    assert CacheTTL.from_config(cfg) == CacheTTL(knowledge_base=10, response=20, conversation=30)


def test_memory_cache_entry_expires_after_ttl() -> None:
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    cache.set("k", {"v": 1}, 5)

    clock.advance(5000)
    assert cache.get("k") == {"v": 1}

    clock.advance(1)
    assert cache.get("k") is None
    assert len(cache) == 0


def test_memory_cache_sweeps_expired_entries_on_set() -> None:
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    cache.set("a", 1, 1)
    cache.set("b", 2, 60)
    clock.advance(2000)

    cache.set("c", 3, 60)
    assert len(cache) == 2
    assert cache.get("b") == 2


def test_memory_cache_delete_and_explicit_sweep() -> None:
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    cache.set("a", 1, 1)
    cache.set("b", 2, 1)
    cache.delete("a")
    assert cache.get("a") is None

    clock.advance(1001)
    assert cache.sweep() == 1
    assert len(cache) == 0


def test_tiered_cache_without_remote_uses_local() -> None:
    clock = FakeClock()
    metrics = Metrics()
    cache = TieredCache(clock=clock, metrics=metrics)
    assert cache.remote_healthy is False

    assert cache.get("missing") is None
    cache.set("k", "v", 10)
    assert cache.get("k") == "v"
    assert metrics.get(KEYS["cache_hit_total"]) == 1
    assert metrics.get(KEYS["cache_miss_total"]) == 1


def test_tiered_cache_unreachable_redis_round_trips_through_local() -> None:
    clock = FakeClock()
    cfg = AdvisorConfig(redis_url="redis://127.0.0.1:1/0", redis_socket_timeout_ms=50)
    cache = TieredCache.connect(cfg, clock=clock)
    try:
        assert cache.remote_healthy is False
        cache.set("greeting", {"text": "hello"}, 30)
        assert cache.get("greeting") == {"text": "hello"}
        cache.delete("greeting")
        assert cache.get("greeting") is None
    finally:
        cache.close()


def test_tiered_cache_empty_redis_url_is_local_only() -> None:
    cache = TieredCache.connect(AdvisorConfig(redis_url=""), clock=FakeClock())
    cache.set("k", 1, 10)
    assert cache.get("k") == 1
    assert cache.remote_healthy is False


def test_tiered_cache_falls_back_when_remote_fails_mid_flight() -> None:
    clock = FakeClock()
    metrics = Metrics()
    remote = FlakyRemote()
    cache = TieredCache(remote=remote, clock=clock, retry_interval_ms=1000, metrics=metrics)

    cache.set("a", 1, 10)
    assert remote.data == {"a": 1}
    assert metrics.get_gauge(KEYS["cache_remote_healthy"]) == 1

    remote.down = True
    cache.set("b", 2, 10)
    assert cache.remote_healthy is False
    assert cache.get("b") == 2
    assert metrics.get(KEYS["cache_remote_failure_total"]) == 1
    assert metrics.get_gauge(KEYS["cache_remote_healthy"]) == 0


def test_tiered_cache_probes_remote_at_most_once_per_interval() -> None:
    clock = FakeClock()
    remote = FlakyRemote()
    remote.down = True
    cache = TieredCache(remote=remote, clock=clock, retry_interval_ms=1000, remote_healthy=False)

    for _ in range(5):
        cache.get("x")
    assert remote.pings == 0

    clock.advance(1000)
    cache.get("x")
    cache.get("x")
    assert remote.pings == 1
    assert cache.remote_healthy is False

    remote.down = False
    clock.advance(1000)
    cache.set("k", "v", 10)
    assert cache.remote_healthy is True
    assert remote.data["k"] == "v"


def test_tiered_cache_delete_clears_local_copy_after_recovery() -> None:
    clock = FakeClock()
    remote = FlakyRemote()
    cache = TieredCache(remote=remote, clock=clock, retry_interval_ms=0)

    remote.down = True
    cache.set("k", "stale", 10)
    remote.down = False

    cache.delete("k")
    assert cache.local.get("k") is None
    assert cache.get("k") is None
