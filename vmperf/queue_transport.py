"""Redis-backed storage queue with visibility-timeout leasing.

Each queue keeps its messages in a hash (``queue:{name}:messages``) and their
next-visible times in a sorted set (``queue:{name}:visibility``). Receiving
runs one server-side script that picks due ids, bumps their dequeue count and
pop receipt and pushes their score past the visibility timeout, so two
consumers never claim the same message and a crash cannot lose one. A consumer
that dies simply lets that score pass and the message shows up again with a
higher dequeue count.
"""
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from .config import MAX_RECEIVE_MESSAGES, MESSAGE_TTL_SECONDS
from .errors import MessageNotFoundError, PopReceiptMismatchError, QueueUnavailableError
from .redis_helper import CLAIM_MESSAGES_LUA
from .schemas import QueueMessage

logger = logging.getLogger(__name__)


def _ts(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


class SendReceipt:
    def __init__(self, message_id: str, pop_receipt: str, inserted_on: float, expires_on: float):
        self.message_id = message_id
        self.pop_receipt = pop_receipt
        self.inserted_on = _ts(inserted_on)
        self.expires_on = _ts(expires_on)


class RedisStorageQueue:
    def __init__(self, redis_client, name: str, clock: Callable[[], float] = time.time):
        self.redis = redis_client
        self.name = name
        self.clock = clock
        self.messages_key = f"queue:{name}:messages"
        self.visibility_key = f"queue:{name}:visibility"
        self._claim = redis_client.register_script(CLAIM_MESSAGES_LUA)

    async def create_if_not_exists(self):
        # Redis creates keys on first write; all that can fail here is connectivity.
        try:
            await self.redis.ping()
        except (RedisError, OSError) as exc:
            raise QueueUnavailableError(f"queue {self.name} unreachable: {exc}") from exc

    async def _load(self, message_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.redis.hget(self.messages_key, message_id)
        if raw is None:
            return None
        return json.loads(raw)

    async def _store(self, record: Dict[str, Any]):
        await self.redis.hset(self.messages_key, record["messageId"], json.dumps(record))

    async def _remove(self, message_id: str):
        await self.redis.hdel(self.messages_key, message_id)
        await self.redis.zrem(self.visibility_key, message_id)

    @staticmethod
    def _to_message(record: Dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=record["messageId"],
            pop_receipt=record["popReceipt"],
            dequeue_count=record["dequeueCount"],
            inserted_on=_ts(record["insertedOn"]),
            expires_on=_ts(record["expiresOn"]),
            next_visible_on=_ts(record["nextVisibleOn"]),
            content=record["content"],
        )

    async def send_message(
        self,
        content: str,
        visibility_timeout: float = 0,
        time_to_live: float = MESSAGE_TTL_SECONDS,
    ) -> SendReceipt:
        now = self.clock()
        record = {
            "messageId": str(uuid.uuid4()),
            "popReceipt": uuid.uuid4().hex,
            "content": content,
            "dequeueCount": 0,
            "insertedOn": now,
            "expiresOn": now + time_to_live,
            "nextVisibleOn": now + visibility_timeout,
        }
        # Body first, so a visible id always resolves to a record
        await self._store(record)
        await self.redis.zadd(self.visibility_key, {record["messageId"]: record["nextVisibleOn"]})
        return SendReceipt(record["messageId"], record["popReceipt"], now, record["expiresOn"])

    async def receive_messages(self, number_of_messages: int, visibility_timeout: float) -> List[QueueMessage]:
        if number_of_messages <= 0:
            return []
        count = min(number_of_messages, MAX_RECEIVE_MESSAGES)
        receipts = [uuid.uuid4().hex for _ in range(count)]
        claimed = await self._claim(
            keys=[self.visibility_key, self.messages_key],
            args=[self.clock(), count, visibility_timeout, *receipts],
        )
        return [self._to_message(json.loads(raw)) for raw in claimed]

    async def delete_message(self, message_id: str, pop_receipt: str):
        record = await self._load(message_id)
        if record is None:
            raise MessageNotFoundError(message_id)
        if record["popReceipt"] != pop_receipt:
            raise PopReceiptMismatchError(message_id)
        await self._remove(message_id)

    async def update_message(self, message_id: str, pop_receipt: str, visibility_timeout: float) -> str:
        record = await self._load(message_id)
        if record is None:
            raise MessageNotFoundError(message_id)
        if record["popReceipt"] != pop_receipt:
            raise PopReceiptMismatchError(message_id)
        record["popReceipt"] = uuid.uuid4().hex
        record["nextVisibleOn"] = self.clock() + visibility_timeout
        await self._store(record)
        await self.redis.zadd(self.visibility_key, {message_id: record["nextVisibleOn"]})
        return record["popReceipt"]

    async def peek_messages(self, number_of_messages: int) -> List[QueueMessage]:
        if number_of_messages <= 0:
            return []
        count = min(number_of_messages, MAX_RECEIVE_MESSAGES)
        now = self.clock()
        ids = await self.redis.zrangebyscore(self.visibility_key, 0, now, start=0, num=count)
        peeked: List[QueueMessage] = []
        for message_id in ids:
            record = await self._load(message_id)
            if record is None or record["expiresOn"] <= now:
                continue
            peeked.append(self._to_message(record))
        return peeked

    async def get_properties(self) -> Dict[str, int]:
        return {"approximate_messages_count": await self.redis.hlen(self.messages_key)}

    async def reindex_orphans(self) -> int:
        """Make hash entries with no visibility score visible again."""
        restored = 0
        now = self.clock()
        for message_id in await self.redis.hkeys(self.messages_key):
            if await self.redis.zscore(self.visibility_key, message_id) is None:
                # nx: a concurrent send or claim may have scored it meanwhile
                restored += await self.redis.zadd(self.visibility_key, {message_id: now}, nx=True)
        if restored:
            logger.warning("queue %s: re-indexed %d orphaned messages", self.name, restored)
        return restored

    async def clear_messages(self) -> int:
        count = await self.redis.hlen(self.messages_key)
        await self.redis.delete(self.messages_key, self.visibility_key)
        return count
