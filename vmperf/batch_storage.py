"""Batch result storage.

One object per ``(jobId, batchIndex)`` under ``{jobId}/batch-{index}.json``;
writing the same pair again overwrites it, so a retried batch never shows up
twice. Job status and dead-letter markers share the job prefix, which lets
``cleanup_job`` drop everything for a job with one prefix listing.
"""
import json
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .blob_store import RedisBlobContainer
from .config import RESULT_TTL_HOURS, RESULTS_CONTAINER
from .errors import BlobNotFoundError, ResultDecodeError
from .schemas import (
    AggregatedResults,
    AggregateSummary,
    BatchInfo,
    BatchOutcome,
    BatchResult,
    BatchResultMetadata,
    JobStatusRecord,
)

logger = logging.getLogger(__name__)

BATCH_BLOB_RE = re.compile(r"batch-(\d+)\.json$")
FAILED_BLOB_RE = re.compile(r"failed-(\d+)\.json$")


def batch_blob_name(job_id: str, batch_index: int) -> str:
    return f"{job_id}/batch-{batch_index}.json"


def status_blob_name(job_id: str) -> str:
    return f"{job_id}/job-status.json"


def failure_blob_name(job_id: str, batch_index: int) -> str:
    return f"{job_id}/failed-{batch_index}.json"


class BatchStorageService:
    def __init__(
        self,
        redis_client,
        container: str = RESULTS_CONTAINER,
        ttl_hours: float = RESULT_TTL_HOURS,
        clock: Callable[[], float] = time.time,
    ):
        self.container = RedisBlobContainer(redis_client, container, clock=clock)
        self.ttl = timedelta(hours=ttl_hours)
        self.clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    async def save_batch_result(
        self,
        job_id: str,
        batch_index: int,
        rows: List[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        saved_at = self._now()
        result = BatchResult(
            job_id=job_id,
            batch_index=batch_index,
            rows=rows,
            metadata=BatchResultMetadata(
                **{
                    **(metadata or {}),
                    "saved_at": saved_at,
                    "expires_at": saved_at + self.ttl,
                    "vm_count": len(rows),
                }
            ),
        )
        blob_name = batch_blob_name(job_id, batch_index)
        await self.container.upload(
            blob_name,
            result.to_json().encode("utf-8"),
            metadata={"jobId": job_id, "batchIndex": batch_index, "vmCount": len(rows)},
        )
        logger.info("saved batch %s for job %s (%d rows)", batch_index, job_id, len(rows))
        return blob_name

    async def _read_result(self, blob_name: str) -> Optional[BatchResult]:
        try:
            data = await self.container.download(blob_name)
        except BlobNotFoundError:
            return None
        try:
            return BatchResult.model_validate_json(data)
        except ValidationError as exc:
            raise ResultDecodeError(f"{blob_name}: {exc}") from exc

    async def get_batch_result(self, job_id: str, batch_index: int) -> Optional[BatchResult]:
        return await self._read_result(batch_blob_name(job_id, batch_index))

    async def list_batches(self, job_id: str) -> List[BatchInfo]:
        by_index: Dict[int, BatchInfo] = {}
        for blob in await self.container.list_blobs(prefix=f"{job_id}/"):
            match = BATCH_BLOB_RE.search(blob.name)
            if not match:
                continue
            info = BatchInfo(
                blob_name=blob.name,
                batch_index=int(match.group(1)),
                content_length=blob.content_length,
                created_on=blob.created_on,
                metadata=blob.metadata,
            )
            # Two objects for one index: the most recently written one wins
            current = by_index.get(info.batch_index)
            if current is None or info.created_on > current.created_on:
                by_index[info.batch_index] = info
        return [by_index[i] for i in sorted(by_index)]

    async def aggregate_results(self, job_id: str) -> AggregatedResults:
        batches = await self.list_batches(job_id)
        rows: List[Dict[str, Any]] = []
        outcomes: List[BatchOutcome] = []
        summary = AggregateSummary(total_batches=len(batches))

        for info in batches:
            try:
                result = await self._read_result(info.blob_name)
            except Exception as exc:
                logger.warning("job %s: unreadable batch %s: %s", job_id, info.batch_index, exc)
                summary.failed_batches += 1
                outcomes.append(BatchOutcome(batch_index=info.batch_index, status="failed", error=str(exc)))
                continue
            if result is None:
                summary.failed_batches += 1
                outcomes.append(BatchOutcome(batch_index=info.batch_index, status="failed", error="not found"))
                continue
            rows.extend(result.rows)
            summary.successful_batches += 1
            outcomes.append(BatchOutcome(batch_index=info.batch_index, status="success", vm_count=len(result.rows)))

        summary.total_rows = len(rows)
        logger.info(
            "aggregated %d rows from %d/%d batches for job %s",
            len(rows), summary.successful_batches, summary.total_batches, job_id,
        )
        return AggregatedResults(
            job_id=job_id,
            rows=rows,
            summary=summary,
            batches=outcomes,
            aggregated_at=self._now(),
        )

    async def save_job_status(self, job_id: str, status: JobStatusRecord) -> JobStatusRecord:
        record = status.model_copy(update={"job_id": job_id, "updated_at": self._now()})
        await self.container.upload(status_blob_name(job_id), record.to_json().encode("utf-8"))
        return record

    async def get_job_status(self, job_id: str) -> Optional[JobStatusRecord]:
        try:
            data = await self.container.download(status_blob_name(job_id))
        except BlobNotFoundError:
            return None
        return JobStatusRecord.model_validate_json(data)

    async def record_batch_failure(self, job_id: str, batch_index: int, error: str):
        marker = {"jobId": job_id, "batchIndex": batch_index, "error": error, "failedAt": self._now().isoformat()}
        await self.container.upload(failure_blob_name(job_id, batch_index), json.dumps(marker).encode("utf-8"))

    async def list_failed_batches(self, job_id: str) -> List[int]:
        indices = set()
        for blob in await self.container.list_blobs(prefix=f"{job_id}/"):
            match = FAILED_BLOB_RE.search(blob.name)
            if match:
                indices.add(int(match.group(1)))
        return sorted(indices)

    async def cleanup_job(self, job_id: str) -> int:
        deleted = 0
        for blob in await self.container.list_blobs(prefix=f"{job_id}/"):
            if await self.container.delete_if_exists(blob.name):
                deleted += 1
        logger.info("cleaned up %d objects for job %s", deleted, job_id)
        return deleted

    async def cleanup_expired(self) -> int:
        cutoff = self._now() - self.ttl
        deleted = 0
        for blob in await self.container.list_blobs():
            if blob.created_on < cutoff and await self.container.delete_if_exists(blob.name):
                deleted += 1
        if deleted:
            logger.info("cleaned up %d expired result objects", deleted)
        return deleted

    async def stats(self) -> Dict[str, Any]:
        blobs = await self.container.list_blobs()
        job_ids = {b.name.split("/", 1)[0] for b in blobs if "/" in b.name}
        total_size = sum(b.content_length for b in blobs)
        return {
            "container": self.container.container,
            "totalBlobs": len(blobs),
            "totalSizeMB": round(total_size / (1024 * 1024), 2),
            "activeJobs": len(job_ids),
            "ttlHours": self.ttl.total_seconds() / 3600,
        }
