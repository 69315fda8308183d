"""Queue-driven batch processor.

A single poll loop claims as many messages as there are free worker slots and
hands each one to an independent task. Every task saves its rows before it
acknowledges the message, so an acknowledged batch is always durable; a
failed task leaves the message to come back after its visibility timeout
until the queue's redelivery budget runs out, then dead-letters it.
"""
import asyncio
import inspect
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from . import metrics
from .background import BackgroundTasks
from .batch_queue import BatchQueueService
from .batch_storage import BatchStorageService
from .config import (
    IDLE_POLL_INTERVAL_SECONDS,
    MAX_CONCURRENT_WORKERS,
    POLL_INTERVAL_SECONDS,
    STOP_GRACE_SECONDS,
)
from .errors import MessageNotFoundError, PopReceiptMismatchError
from .schemas import Batch, QueueMessage

logger = logging.getLogger(__name__)

Rows = List[Dict[str, Any]]
BatchExecutor = Callable[[Batch], Union[Rows, Awaitable[Rows]]]


class ProcessorState(str, Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class StopResult:
    def __init__(self, abandoned_workers: int):
        self.abandoned_workers = abandoned_workers

    @property
    def graceful(self) -> bool:
        return self.abandoned_workers == 0

    def __repr__(self):
        return f"StopResult(abandoned_workers={self.abandoned_workers})"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobProcessor:
    def __init__(
        self,
        queue: BatchQueueService,
        storage: BatchStorageService,
        executor: BatchExecutor,
        max_concurrent_workers: int = MAX_CONCURRENT_WORKERS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        idle_poll_interval: float = IDLE_POLL_INTERVAL_SECONDS,
    ):
        if max_concurrent_workers < 1:
            raise ValueError("max_concurrent_workers must be at least 1")
        self.queue = queue
        self.storage = storage
        self.executor = executor
        self.max_concurrent_workers = max_concurrent_workers
        self.poll_interval = poll_interval
        self.idle_poll_interval = idle_poll_interval

        self.state = ProcessorState.STOPPED
        self.active_workers = 0
        self.workers = BackgroundTasks("job-processor")
        self._poll_task: Optional[asyncio.Task] = None
        self.stats: Dict[str, Any] = {
            "batchesProcessed": 0,
            "batchesFailed": 0,
            "batchesDeadLettered": 0,
            "lastPollTime": None,
            "startedAt": None,
        }

    @property
    def is_running(self) -> bool:
        return self.state is ProcessorState.RUNNING

    async def start(self):
        if self.state is ProcessorState.RUNNING:
            logger.info("job processor already running")
            return
        if self.state is not ProcessorState.STOPPED:
            raise RuntimeError(f"cannot start job processor while {self.state.value}")

        self.state = ProcessorState.STARTING
        logger.info("starting job processor")
        try:
            await self.queue.initialize()
        except Exception as exc:
            logger.error("failed to initialize queue service: %s", exc)
            self.state = ProcessorState.STOPPED
            raise

        self.stats["startedAt"] = _utcnow_iso()
        self.state = ProcessorState.RUNNING
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("job processor started (max %d workers)", self.max_concurrent_workers)

    async def stop(self, grace_period: float = STOP_GRACE_SECONDS) -> StopResult:
        if self.state is ProcessorState.STOPPED:
            return StopResult(0)

        logger.info("stopping job processor")
        self.state = ProcessorState.STOPPING
        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None

        if self.active_workers:
            logger.info("waiting up to %ss for %d active workers", grace_period, self.active_workers)
        await self.workers.join(timeout=grace_period)

        abandoned = self.active_workers
        self.state = ProcessorState.STOPPED
        if abandoned:
            logger.warning("stopped with %d workers still active", abandoned)
        else:
            logger.info("job processor stopped gracefully")
        return StopResult(abandoned)

    async def _poll_loop(self):
        while self.state is ProcessorState.RUNNING:
            delay = await self.run_once()
            await asyncio.sleep(delay)

    async def run_once(self) -> float:
        """Run one poll iteration and return the delay before the next one."""
        self.stats["lastPollTime"] = _utcnow_iso()
        available_slots = self.max_concurrent_workers - self.active_workers
        if available_slots <= 0:
            return self.idle_poll_interval

        try:
            messages = await self.queue.receive(available_slots)
        except Exception as exc:
            metrics.queue_poll_errors_total.inc()
            logger.error("poll error: %s", exc)
            return self.idle_poll_interval

        if not messages:
            return self.idle_poll_interval

        for message in messages:
            # Count the slot now so the next tick never over-claims
            self.active_workers += 1
            metrics.active_workers.inc()
            self.workers.spawn(self._process_message(message), f"batch message {message.message_id}")
        return self.poll_interval

    async def _execute(self, batch: Batch) -> Rows:
        if inspect.iscoroutinefunction(self.executor):
            result = self.executor(batch)
        else:
            # Blocking executors run in a thread so the poll loop and other workers keep going
            result = await asyncio.get_running_loop().run_in_executor(None, self.executor, batch)
        if inspect.isawaitable(result):
            result = await result
        return list(result)

    async def _process_message(self, message: QueueMessage):
        batch_label = message.message_id
        start = time.time()
        try:
            batch = message.parse_batch()
            batch_label = f"{batch.batch_index} of job {batch.job_id}"
            logger.info("processing batch %s (attempt %d)", batch_label, message.dequeue_count)

            rows = await self._execute(batch)
            await self.storage.save_batch_result(
                batch.job_id,
                batch.batch_index,
                rows,
                metadata={"attempt": message.dequeue_count, "totalBatches": batch.total_batches},
            )
            try:
                await self.queue.complete(message.message_id, message.pop_receipt)
            except (PopReceiptMismatchError, MessageNotFoundError):
                # Rows are saved; the redelivered copy overwrites them with the same object name
                logger.warning("lease on batch %s expired before it was acknowledged", batch_label)

            self.stats["batchesProcessed"] += 1
            metrics.batches_processed_total.inc()
            metrics.execution_latency_seconds.observe(time.time() - start)
            logger.info("batch %s completed (%d rows)", batch_label, len(rows))
        except Exception as exc:
            self.stats["batchesFailed"] += 1
            metrics.batches_failed_total.inc()
            logger.error("batch %s failed: %s", batch_label, exc)
            await self._handle_failure(message, exc)
        finally:
            self.active_workers -= 1
            metrics.active_workers.dec()

    async def _handle_failure(self, message: QueueMessage, error: Exception):
        try:
            if self.queue.should_retry(message):
                logger.info("message %s will be redelivered (attempt %d)", message.message_id, message.dequeue_count)
                return
            await self.queue.dead_letter(message, str(error) or error.__class__.__name__)
            self.stats["batchesDeadLettered"] += 1
        except Exception as exc:
            logger.error("failed to handle failure of message %s: %s", message.message_id, exc)
            return

        try:
            batch = message.parse_batch()
        except Exception:
            # Malformed content has no job to attach a failure marker to
            return
        try:
            await self.storage.record_batch_failure(batch.job_id, batch.batch_index, str(error))
        except Exception as exc:
            logger.error("failed to record failure for batch %s of job %s: %s", batch.batch_index, batch.job_id, exc)

    async def status(self) -> Dict[str, Any]:
        try:
            queue_stats: Dict[str, Any] = (await self.queue.stats()).model_dump(by_alias=True)
        except Exception as exc:
            queue_stats = {"error": str(exc)}
        try:
            storage_stats = await self.storage.stats()
        except Exception as exc:
            storage_stats = {"error": str(exc)}
        return {
            "state": self.state.value,
            "isRunning": self.is_running,
            "activeWorkers": self.active_workers,
            "maxConcurrentWorkers": self.max_concurrent_workers,
            "pollIntervalSeconds": self.poll_interval,
            "idlePollIntervalSeconds": self.idle_poll_interval,
            "stats": dict(self.stats),
            "queue": queue_stats,
            "storage": storage_stats,
        }

    async def run_cleanup(self) -> int:
        logger.info("running cleanup for expired result objects")
        deleted = await self.storage.cleanup_expired()
        logger.info("cleaned up %d expired result objects", deleted)
        return deleted
