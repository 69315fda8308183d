"""Job submission and status tracking.

A job has no record of its own beyond ``job-status.json``: its batches live in
the queue and its results in the batch store. Status is derived from what the
store holds, which keeps concurrent workers from racing on a shared counter.
"""
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from . import metrics
from .batch_queue import BatchQueueService
from .batch_storage import BatchStorageService
from .config import MAX_ITEMS_PER_BATCH
from .schemas import TERMINAL_STATES, AggregatedResults, JobParams, JobState, JobStatusRecord

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return f"job-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def plan_batches(work_items: Sequence[str], max_items_per_batch: int = MAX_ITEMS_PER_BATCH) -> List[List[str]]:
    if max_items_per_batch < 1:
        raise ValueError("max_items_per_batch must be at least 1")
    return [list(work_items[i:i + max_items_per_batch]) for i in range(0, len(work_items), max_items_per_batch)]


class JobService:
    def __init__(self, queue: BatchQueueService, storage: BatchStorageService):
        self.queue = queue
        self.storage = storage

    async def submit(
        self,
        work_items: Sequence[str],
        job_params: JobParams,
        job_id: Optional[str] = None,
        max_items_per_batch: int = MAX_ITEMS_PER_BATCH,
    ) -> JobStatusRecord:
        if not work_items:
            raise ValueError("a job needs at least one work item")
        job_id = job_id or new_job_id()
        batches = plan_batches(work_items, max_items_per_batch)

        record = await self.storage.save_job_status(
            job_id,
            JobStatusRecord(
                job_id=job_id,
                status=JobState.PENDING,
                total_batches=len(batches),
                progress={"phase": "queued", "message": "Job queued for processing", "workItems": len(work_items)},
                created_at=datetime.now(timezone.utc),
            ),
        )
        try:
            await self.queue.enqueue_all(job_id, batches, job_params)
        except Exception as exc:
            logger.error("job %s: enqueue failed: %s", job_id, exc)
            record.error = f"enqueue failed: {exc}"
            await self.storage.save_job_status(job_id, record)
            raise

        metrics.jobs_submitted_total.inc()
        logger.info("created job %s with %d batches", job_id, len(batches))
        return record

    async def resubmit_missing(
        self,
        job_id: str,
        work_items: Sequence[str],
        job_params: JobParams,
        max_items_per_batch: int = MAX_ITEMS_PER_BATCH,
    ) -> List[int]:
        """Enqueue again every batch of ``job_id`` that has no stored result.

        Planning is deterministic, so the same work items and batch size map
        to the same batch indices as the original submission.
        """
        batches = plan_batches(work_items, max_items_per_batch)
        done = {info.batch_index for info in await self.storage.list_batches(job_id)}
        missing = [i for i in range(len(batches)) if i not in done]
        if missing:
            await self.queue.enqueue_all(job_id, batches, job_params, only_indices=set(missing))
        logger.info("job %s: re-enqueued %d missing batches", job_id, len(missing))
        return missing

    async def refresh_status(self, job_id: str) -> Optional[JobStatusRecord]:
        record = await self.storage.get_job_status(job_id)
        if record is None or record.status in TERMINAL_STATES:
            return record

        succeeded = {info.batch_index for info in await self.storage.list_batches(job_id)}
        failed = set(await self.storage.list_failed_batches(job_id)) - succeeded
        finished = len(succeeded) + len(failed)

        if finished == 0:
            return record

        if finished < record.total_batches:
            status = JobState.IN_PROGRESS
            phase = "processing"
            message = f"{finished} of {record.total_batches} batches finished"
        elif succeeded:
            status = JobState.COMPLETED
            phase = "completed"
            message = "Job completed" if not failed else f"Job completed with {len(failed)} failed batches"
        else:
            status = JobState.FAILED
            phase = "failed"
            message = "No batch completed successfully"

        progress = {
            **record.progress,
            "phase": phase,
            "message": message,
            "successfulBatches": len(succeeded),
            "failedBatches": len(failed),
        }
        if status == record.status and progress == record.progress:
            return record

        updated = record.model_copy(
            update={
                "status": status,
                "progress": progress,
                "partial_results": status is JobState.COMPLETED and bool(failed),
                "error": message if status is JobState.FAILED else record.error,
            }
        )
        logger.info("job %s: %s (%s)", job_id, status.value, message)
        return await self.storage.save_job_status(job_id, updated)

    async def get_results(self, job_id: str) -> AggregatedResults:
        return await self.storage.aggregate_results(job_id)

    async def cleanup(self, job_id: str) -> int:
        return await self.storage.cleanup_job(job_id)
