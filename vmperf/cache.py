"""TTL cache for expensive, slow-changing reads (inventory queries).

Entries are gzip-compressed JSON in a blob container, keyed by operation
type plus a hash of the canonicalised parameters. Expiry is checked when an
entry is read; ``cleanup_expired`` sweeps the rest. Nothing in here is
allowed to fail a read: storage errors turn into misses and writes happen in
the background.
"""
import gzip
import hashlib
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from . import metrics
from .background import BackgroundTasks
from .blob_store import RedisBlobContainer
from .config import CACHE_CONTAINER, CACHE_TTL_HOURS
from .errors import BlobNotFoundError
from .schemas import CacheLookup

logger = logging.getLogger(__name__)


def generate_key(operation_type: str, params: Dict[str, Any]) -> str:
    """Build a cache key that does not depend on parameter order.

    >>> generate_key("inventory", {"a": 1, "b": 2}) == generate_key("inventory", {"b": 2, "a": 1})
    True
    """
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    return f"{operation_type}/{digest}.json.gz"


class CacheService:
    def __init__(
        self,
        redis_client,
        container: str = CACHE_CONTAINER,
        ttl_hours: float = CACHE_TTL_HOURS,
        clock: Callable[[], float] = time.time,
    ):
        self.container = RedisBlobContainer(redis_client, container, clock=clock)
        self.ttl_seconds = ttl_hours * 3600
        self.clock = clock
        self.background = BackgroundTasks("cache")

    generate_key = staticmethod(generate_key)

    def _expiry(self, cached_at: float) -> datetime:
        return datetime.fromtimestamp(cached_at, tz=timezone.utc) + timedelta(seconds=self.ttl_seconds)

    async def get(self, key: str) -> Optional[CacheLookup]:
        try:
            props = await self.container.get_properties(key)
            cached_at = float(props.metadata.get("cachedAt", props.created_on_epoch))
            age = self.clock() - cached_at
            if age >= self.ttl_seconds:
                logger.info("cache expired for %s (%.1fh old)", key, age / 3600)
                self.background.spawn(self.container.delete_if_exists(key), f"delete {key}")
                return None
            compressed = await self.container.download(key)
            data = json.loads(gzip.decompress(compressed))
        except BlobNotFoundError:
            return None
        except Exception as exc:
            logger.error("cache read error for %s: %s", key, exc)
            return None

        logger.info("cache hit for %s (%.1fh old)", key, age / 3600)
        return CacheLookup(data=data, cache_hit=True, cache_age_seconds=age, cache_expiry=self._expiry(cached_at))

    async def set(self, key: str, data: Any) -> bool:
        try:
            raw = json.dumps(data, default=str).encode("utf-8")
            compressed = gzip.compress(raw)
            await self.container.upload(
                key,
                compressed,
                metadata={
                    "cachedAt": repr(self.clock()),
                    "originalSize": len(raw),
                    "compressedSize": len(compressed),
                },
                content_encoding="gzip",
            )
        except Exception as exc:
            metrics.cache_write_errors_total.inc()
            logger.error("cache write error for %s: %s", key, exc)
            return False
        logger.info("cached %s (%.1f KB)", key, len(compressed) / 1024)
        return True

    async def with_cache(
        self,
        operation_type: str,
        params: Dict[str, Any],
        compute: Callable[[], Awaitable[Any]],
        refresh: bool = False,
    ) -> CacheLookup:
        key = generate_key(operation_type, params)

        if not refresh:
            cached = await self.get(key)
            if cached is not None:
                metrics.cache_hits_total.inc()
                return cached
        metrics.cache_misses_total.inc()

        data = await compute()
        now = self.clock()
        # Population is off the caller's path; set() logs its own failures
        self.background.spawn(self.set(key, data), f"write {key}")
        return CacheLookup(data=data, cache_hit=False, cache_expiry=self._expiry(now))

    async def invalidate(self, key: str) -> bool:
        try:
            removed = await self.container.delete_if_exists(key)
        except Exception as exc:
            logger.error("cache invalidation error for %s: %s", key, exc)
            return False
        logger.info("invalidated %s", key)
        return removed

    async def invalidate_by_prefix(self, operation_type: str) -> int:
        prefix = operation_type if operation_type.endswith("/") else f"{operation_type}/"
        deleted = 0
        try:
            for blob in await self.container.list_blobs(prefix=prefix):
                if await self.container.delete_if_exists(blob.name):
                    deleted += 1
        except Exception as exc:
            logger.error("bulk invalidation error for %s: %s", prefix, exc)
        logger.info("invalidated %d entries with prefix %s", deleted, prefix)
        return deleted

    async def cleanup_expired(self) -> int:
        now = self.clock()
        deleted = 0
        for blob in await self.container.list_blobs():
            cached_at = float(blob.metadata.get("cachedAt", blob.created_on_epoch))
            if now - cached_at >= self.ttl_seconds and await self.container.delete_if_exists(blob.name):
                deleted += 1
        if deleted:
            logger.info("cleaned up %d expired cache entries", deleted)
        return deleted

    async def stats(self) -> Dict[str, Any]:
        blobs = await self.container.list_blobs()
        created = [b.created_on for b in blobs]
        return {
            "enabled": True,
            "container": self.container.container,
            "ttlHours": self.ttl_seconds / 3600,
            "totalEntries": len(blobs),
            "totalSizeKB": round(sum(b.content_length for b in blobs) / 1024, 1),
            "oldestEntry": min(created).isoformat() if created else None,
            "newestEntry": max(created).isoformat() if created else None,
        }

    async def wait_for_background(self, timeout: Optional[float] = None) -> int:
        return await self.background.join(timeout)
