import threading
from datetime import datetime, timedelta, timezone

import pytest

from tenantguard.storage.redis_cache import RedisCache
from tenantguard.storage.revocation import CachedRevocationStore, MemoryRevocationStore


class FakeCache:
    """Async cache double matching the ``RedisCache`` surface."""

    ttl_seconds = staticmethod(RedisCache.ttl_seconds)

    def __init__(self, *, fail_reads=False, fail_writes=False):
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.keys = {}

    async def revoke_access_token(self, jti, ttl_seconds):
        if self.fail_writes:
            raise ConnectionError("redis down")
        if ttl_seconds > 0:
            self.keys[jti] = ttl_seconds

    async def is_access_token_revoked(self, jti):
        if self.fail_reads:
            raise ConnectionError("redis down")
        return jti in self.keys


def _in(seconds):
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class TestMemoryRevocationStore:
    def test_add_and_contains(self):
        revocations = MemoryRevocationStore(shards=4)
        revocations.add_sync("jti-1", _in(60))

        assert revocations.contains_sync("jti-1")
        assert not revocations.contains_sync("jti-2")

    def test_entry_dies_with_the_token(self):
        revocations = MemoryRevocationStore()
        expires = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
        revocations.add_sync("jti-1", expires)

        assert revocations.contains_sync("jti-1", now=expires - timedelta(seconds=1))
        assert not revocations.contains_sync("jti-1", now=expires)
        assert len(revocations) == 0

    def test_purge_expired(self):
        revocations = MemoryRevocationStore(shards=2)
        revocations.add_sync("old", _in(-5))
        revocations.add_sync("live", _in(300))

        assert revocations.purge_expired_sync() == 1
        assert len(revocations) == 1
        assert revocations.contains_sync("live")

    def test_rejects_zero_shards(self):
        with pytest.raises(ValueError):
            MemoryRevocationStore(shards=0)

    def test_concurrent_writers(self):
        revocations = MemoryRevocationStore(shards=8)
        expires = _in(600)

        def writer(offset):
            for i in range(200):
                revocations.add_sync(f"jti-{offset}-{i}", expires)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(revocations) == 1600


class TestCachedRevocationStore:
    async def test_write_through(self):
        cache = FakeCache()
        revocations = CachedRevocationStore(cache)

        await revocations.add("jti-1", _in(120))

        assert "jti-1" in cache.keys
        assert 0 < cache.keys["jti-1"] <= 120
        assert await revocations.contains("jti-1")

    async def test_revocation_from_another_instance_is_seen(self):
        cache = FakeCache()
        cache.keys["jti-remote"] = 60
        revocations = CachedRevocationStore(cache)

        assert await revocations.contains("jti-remote")
        assert not await revocations.contains("jti-other")

    async def test_cache_failure_answers_revoked(self):
        revocations = CachedRevocationStore(FakeCache(fail_reads=True))

        assert await revocations.contains("never-revoked")

    async def test_local_hit_skips_failing_cache(self):
        cache = FakeCache(fail_reads=True)
        local = MemoryRevocationStore()
        local.add_sync("jti-1", _in(60))
        revocations = CachedRevocationStore(cache, local)

        assert await revocations.contains("jti-1")

    async def test_already_expired_entry_not_written_to_cache(self):
        cache = FakeCache()
        revocations = CachedRevocationStore(cache)

        await revocations.add("jti-dead", _in(-1))

        assert "jti-dead" not in cache.keys

    async def test_cache_write_failure_keeps_local_entry(self):
        local = MemoryRevocationStore()
        revocations = CachedRevocationStore(FakeCache(fail_writes=True), local)

        await revocations.add("jti-1", _in(60))

        assert local.contains_sync("jti-1")
        assert await revocations.contains("jti-1")


def test_redis_key_and_ttl():
    naive_future = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=90)

    assert RedisCache._key("jti-1") == "auth:access:denylist:jti-1"
    assert 0 < RedisCache.ttl_seconds(naive_future) <= 90
    assert RedisCache.ttl_seconds(_in(-30)) == 0


def test_redis_ttl_never_ends_before_the_token():
    assert RedisCache.ttl_seconds(_in(0.5)) == 1
    assert RedisCache.ttl_seconds(_in(90.5)) == 91
