"""Batch queue client.

Wraps the storage queue with the batch message shape, a seven day TTL, a
bounded redelivery budget and a dead-letter queue for batches that exhaust it.
"""
import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Collection, List, Optional, Sequence

from . import metrics
from .config import (
    BATCH_JOBS_QUEUE,
    DEAD_LETTER_QUEUE,
    MAX_DEQUEUE_COUNT,
    MESSAGE_TTL_SECONDS,
    VISIBILITY_TIMEOUT_SECONDS,
)
from .queue_transport import RedisStorageQueue
from .schemas import (
    Batch,
    DeadLetteredBatch,
    EnqueueAllResult,
    EnqueueReceipt,
    JobParams,
    QueueCounts,
    QueueMessage,
    QueueStats,
)

logger = logging.getLogger(__name__)


class BatchQueueService:
    def __init__(
        self,
        redis_client,
        queue_name: str = BATCH_JOBS_QUEUE,
        dead_letter_queue_name: str = DEAD_LETTER_QUEUE,
        visibility_timeout: float = VISIBILITY_TIMEOUT_SECONDS,
        max_dequeue_count: int = MAX_DEQUEUE_COUNT,
        message_ttl: float = MESSAGE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.batch_jobs_queue = RedisStorageQueue(redis_client, queue_name, clock=clock)
        self.dead_letter_queue = RedisStorageQueue(redis_client, dead_letter_queue_name, clock=clock)
        self.visibility_timeout = visibility_timeout
        self.max_dequeue_count = max_dequeue_count
        self.message_ttl = message_ttl
        self.clock = clock
        self._initialized = False

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    async def initialize(self):
        if self._initialized:
            return
        await self.batch_jobs_queue.create_if_not_exists()
        await self.dead_letter_queue.create_if_not_exists()
        await self.batch_jobs_queue.reindex_orphans()
        await self.dead_letter_queue.reindex_orphans()
        self._initialized = True
        logger.info("batch queue initialized (%s, %s)", self.batch_jobs_queue.name, self.dead_letter_queue.name)

    async def enqueue(self, batch: Batch, job_params: Optional[JobParams] = None) -> EnqueueReceipt:
        update = {"enqueued_at": self._now(), "retry_count": 0}
        if job_params is not None:
            update["job_params"] = job_params
        message = batch.model_copy(update=update)

        start = time.time()
        try:
            receipt = await self.batch_jobs_queue.send_message(
                message.to_json(), visibility_timeout=0, time_to_live=self.message_ttl
            )
        finally:
            metrics.enqueue_latency_seconds.observe(time.time() - start)
        metrics.batches_enqueued_total.inc()
        logger.info("enqueued batch %s for job %s", batch.batch_index, batch.job_id)
        return EnqueueReceipt(
            message_id=receipt.message_id,
            pop_receipt=receipt.pop_receipt,
            inserted_on=receipt.inserted_on,
            expires_on=receipt.expires_on,
        )

    async def enqueue_all(
        self,
        job_id: str,
        batches: Sequence[Sequence[str]],
        job_params: JobParams,
        only_indices: Optional[Collection[int]] = None,
    ) -> EnqueueAllResult:
        """Enqueue one message per batch; the batch index is its position in ``batches``.

        Not transactional. A failure part way through leaves the earlier
        batches queued; callers re-run with ``only_indices`` set to the
        batches they still need.
        """
        message_ids: List[str] = []
        for index, work_items in enumerate(batches):
            if only_indices is not None and index not in only_indices:
                continue
            batch = Batch(
                job_id=job_id,
                batch_index=index,
                work_items=list(work_items),
                job_params=job_params,
                total_batches=len(batches),
            )
            receipt = await self.enqueue(batch)
            message_ids.append(receipt.message_id)

        logger.info("enqueued %d batches for job %s", len(message_ids), job_id)
        return EnqueueAllResult(job_id=job_id, batch_count=len(message_ids), message_ids=message_ids)

    async def receive(self, max_messages: int = 3) -> List[QueueMessage]:
        messages = await self.batch_jobs_queue.receive_messages(max_messages, self.visibility_timeout)
        if messages:
            logger.info("received %d batches for processing", len(messages))
        return messages

    async def complete(self, message_id: str, pop_receipt: str):
        await self.batch_jobs_queue.delete_message(message_id, pop_receipt)
        logger.info("completed batch message %s", message_id)

    async def dead_letter(self, message: QueueMessage, error_message: str):
        try:
            content = json.loads(message.content)
        except ValueError:
            content = message.content
        record = DeadLetteredBatch(
            message_id=message.message_id,
            original_message_id=message.message_id,
            content=content,
            error=error_message,
            failed_at=self._now(),
            dequeue_count=message.dequeue_count,
        )
        await self.dead_letter_queue.send_message(record.to_json(), time_to_live=self.message_ttl)
        await self.batch_jobs_queue.delete_message(message.message_id, message.pop_receipt)
        metrics.batches_dead_lettered_total.inc()
        logger.warning("moved message %s to dead-letter queue: %s", message.message_id, error_message)

    def should_retry(self, message: QueueMessage) -> bool:
        return message.dequeue_count < self.max_dequeue_count

    async def update_visibility(self, message_id: str, pop_receipt: str, delay_seconds: float) -> str:
        new_receipt = await self.batch_jobs_queue.update_message(message_id, pop_receipt, delay_seconds)
        logger.info("updated visibility for %s, delay %ss", message_id, delay_seconds)
        return new_receipt

    async def peek(self, max_messages: int = 10) -> List[QueueMessage]:
        return await self.batch_jobs_queue.peek_messages(max_messages)

    async def stats(self) -> QueueStats:
        main = await self.batch_jobs_queue.get_properties()
        dlq = await self.dead_letter_queue.get_properties()
        return QueueStats(
            batch_jobs_queue=QueueCounts(**main),
            dead_letter_queue=QueueCounts(**dlq),
        )

    async def list_dead_lettered(self, max_messages: int = 10) -> List[DeadLetteredBatch]:
        entries: List[DeadLetteredBatch] = []
        for message in await self.dead_letter_queue.peek_messages(max_messages):
            entry = DeadLetteredBatch.model_validate_json(message.content)
            entries.append(entry.model_copy(update={"message_id": message.message_id}))
        return entries

    async def clear_dead_letter(self) -> int:
        cleared = await self.dead_letter_queue.clear_messages()
        logger.info("cleared %d messages from dead-letter queue", cleared)
        return cleared
