"""Access-token revocation sets.

A revoked token id stays listed until the token would have expired anyway;
after that the signature check rejects it on its own and the entry is dead
weight.
"""

from __future__ import annotations

import hashlib
import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Union

from tenantguard.logging import get_logger
from tenantguard.storage.models import RevocationEntry, as_utc, utcnow
from tenantguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class RevocationStore(Protocol):
    async def add(self, token_id: str, expires_at: datetime) -> None: ...

    async def contains(self, token_id: str) -> bool: ...

    async def purge_expired(self) -> int: ...


class MemoryRevocationStore:
    """Process-local revocation set split across independently locked shards."""

    def __init__(self, shards: int = 16) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards: List[Dict[str, RevocationEntry]] = [{} for _ in range(shards)]
        self._locks = [threading.Lock() for _ in range(shards)]

    def _index(self, token_id: str) -> int:
        digest = hashlib.blake2b(token_id.encode(), digest_size=4).digest()
        return int.from_bytes(digest, "big") % len(self._shards)

    def add_sync(self, token_id: str, expires_at: datetime) -> None:
        idx = self._index(token_id)
        entry = RevocationEntry(token_id=token_id, expires_at=as_utc(expires_at))
        with self._locks[idx]:
            self._shards[idx][token_id] = entry

    def contains_sync(self, token_id: str, now: Optional[datetime] = None) -> bool:
        idx = self._index(token_id)
        with self._locks[idx]:
            entry = self._shards[idx].get(token_id)
            if entry is None:
                return False
            if entry.is_expired(now):
                # lazy eviction
                del self._shards[idx][token_id]
                return False
            return True

    def purge_expired_sync(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        purged = 0
        for shard, lock in zip(self._shards, self._locks):
            with lock:
                dead = [tid for tid, entry in shard.items() if entry.is_expired(now)]
                for tid in dead:
                    del shard[tid]
                purged += len(dead)
        return purged

    def __len__(self) -> int:
        total = 0
        for shard, lock in zip(self._shards, self._locks):
            with lock:
                total += len(shard)
        return total

    async def add(self, token_id: str, expires_at: datetime) -> None:
        self.add_sync(token_id, expires_at)

    async def contains(self, token_id: str) -> bool:
        return self.contains_sync(token_id)

    async def purge_expired(self) -> int:
        return self.purge_expired_sync()


class CachedRevocationStore:
    """Write-through revocation set shared across instances through Redis.

    Reads consult the local shard first so a revocation is visible to the
    same process immediately. A Redis failure on read answers "revoked".
    A Redis failure on write keeps the local entry and is logged; the
    revocation then holds on this instance only until Redis is back.
    """

    def __init__(
        self,
        cache: Union[RedisCache, SyncRedisCache],
        local: Optional[MemoryRevocationStore] = None,
    ) -> None:
        self.cache = cache
        self.local = local or MemoryRevocationStore()

    async def add(self, token_id: str, expires_at: datetime) -> None:
        self.local.add_sync(token_id, expires_at)
        ttl = self.cache.ttl_seconds(expires_at)
        try:
            await self.cache.revoke_access_token(token_id, ttl)
        except Exception as exc:
            logger.error(
                "revocation_propagation_failed",
                token_id=token_id,
                ttl_seconds=ttl,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def contains(self, token_id: str) -> bool:
        if self.local.contains_sync(token_id):
            return True
        try:
            return await self.cache.is_access_token_revoked(token_id)
        except Exception as exc:
            logger.error(
                "revocation_lookup_failed_closed", token_id=token_id, error=str(exc)
            )
            return True

    async def purge_expired(self) -> int:
        # Redis expires its own keys
        return self.local.purge_expired_sync()
