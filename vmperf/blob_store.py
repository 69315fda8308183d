"""Redis-backed blob container.

Objects live in one hash per container; a sorted set scored by creation time
indexes names for prefix listing and age sweeps.
"""
import base64
import json
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .errors import BlobNotFoundError


class BlobProperties:
    def __init__(
        self,
        name: str,
        content_length: int,
        created_on: float,
        metadata: Optional[Dict[str, str]] = None,
        content_type: str = "application/json",
        content_encoding: Optional[str] = None,
    ):
        self.name = name
        self.content_length = content_length
        self.created_on_epoch = created_on
        self.metadata = metadata or {}
        self.content_type = content_type
        self.content_encoding = content_encoding

    @property
    def created_on(self) -> datetime:
        return datetime.fromtimestamp(self.created_on_epoch, tz=timezone.utc)


class RedisBlobContainer:
    def __init__(self, redis_client, container: str, clock: Callable[[], float] = time.time):
        self.redis = redis_client
        self.container = container
        self.clock = clock
        self.objects_key = f"blobs:{container}"
        self.index_key = f"blobs:{container}:index"

    async def _load(self, name: str) -> Optional[dict]:
        raw = await self.redis.hget(self.objects_key, name)
        if raw is None:
            return None
        return json.loads(raw)

    @staticmethod
    def _properties(name: str, record: dict) -> BlobProperties:
        return BlobProperties(
            name=name,
            content_length=record["contentLength"],
            created_on=record["createdOn"],
            metadata=record.get("metadata"),
            content_type=record.get("contentType", "application/json"),
            content_encoding=record.get("contentEncoding"),
        )

    async def upload(
        self,
        name: str,
        data: bytes,
        metadata: Optional[Dict[str, str]] = None,
        content_type: str = "application/json",
        content_encoding: Optional[str] = None,
    ) -> BlobProperties:
        now = self.clock()
        record = {
            "data": base64.b64encode(data).decode("ascii"),
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
            "contentType": content_type,
            "contentEncoding": content_encoding,
            "contentLength": len(data),
            "createdOn": now,
        }
        await self.redis.hset(self.objects_key, name, json.dumps(record))
        await self.redis.zadd(self.index_key, {name: now})
        return self._properties(name, record)

    async def download(self, name: str) -> bytes:
        record = await self._load(name)
        if record is None:
            raise BlobNotFoundError(name)
        return base64.b64decode(record["data"])

    async def get_properties(self, name: str) -> BlobProperties:
        record = await self._load(name)
        if record is None:
            raise BlobNotFoundError(name)
        return self._properties(name, record)

    async def exists(self, name: str) -> bool:
        return await self.redis.hget(self.objects_key, name) is not None

    async def delete(self, name: str):
        removed = await self.redis.hdel(self.objects_key, name)
        await self.redis.zrem(self.index_key, name)
        if not removed:
            raise BlobNotFoundError(name)

    async def delete_if_exists(self, name: str) -> bool:
        removed = await self.redis.hdel(self.objects_key, name)
        await self.redis.zrem(self.index_key, name)
        return bool(removed)

    async def list_blobs(self, prefix: str = "") -> List[BlobProperties]:
        names = await self.redis.zrange(self.index_key, 0, -1)
        blobs: List[BlobProperties] = []
        for name in sorted(n for n in names if n.startswith(prefix)):
            record = await self._load(name)
            if record is None:
                # deleted between the index read and now
                continue
            blobs.append(self._properties(name, record))
        return blobs
