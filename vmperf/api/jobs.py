from fastapi import APIRouter, Depends, HTTPException

from .. import metrics
from ..auth import require_api_key
from ..config import MAX_ITEMS_PER_BATCH
from ..deps import Services, get_services
from ..schemas import JobCreate, JobResponse, JobState, JobStatusRecord

router = APIRouter()


def _to_response(record: JobStatusRecord) -> JobResponse:
    return JobResponse(
        job_id=record.job_id,
        status=record.status,
        total_batches=record.total_batches,
        partial_results=record.partial_results,
        progress=record.progress,
        error=record.error,
    )


@router.post("/jobs", response_model=JobResponse, status_code=202)
async def create_job(
    job: JobCreate,
    authorized: bool = Depends(require_api_key),
    services: Services = Depends(get_services),
):
    if job.job_id and await services.storage.get_job_status(job.job_id):
        raise HTTPException(status_code=409, detail="job already exists")
    try:
        record = await services.jobs.submit(
            job.work_items,
            job.params,
            job_id=job.job_id,
            max_items_per_batch=job.max_items_per_batch or MAX_ITEMS_PER_BATCH,
        )
    except Exception as exc:
        metrics.error_count.inc()
        raise HTTPException(status_code=500, detail=str(exc))
    return _to_response(record)


@router.post("/jobs/{job_id}/resubmit")
async def resubmit_job(
    job_id: str,
    job: JobCreate,
    authorized: bool = Depends(require_api_key),
    services: Services = Depends(get_services),
):
    if await services.storage.get_job_status(job_id) is None:
        raise HTTPException(status_code=404, detail="job not found")
    missing = await services.jobs.resubmit_missing(
        job_id,
        job.work_items,
        job.params,
        max_items_per_batch=job.max_items_per_batch or MAX_ITEMS_PER_BATCH,
    )
    return {"jobId": job_id, "requeuedBatches": missing}


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, services: Services = Depends(get_services)):
    record = await services.jobs.refresh_status(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="job not found")
    return _to_response(record)


@router.get("/jobs/{job_id}/results")
async def get_job_results(job_id: str, services: Services = Depends(get_services)):
    record = await services.jobs.refresh_status(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="job not found")
    if record.status is not JobState.COMPLETED:
        raise HTTPException(status_code=400, detail=f"job is {record.status.value}; results are available once COMPLETED")
    results = await services.jobs.get_results(job_id)
    body = results.model_dump(mode="json", by_alias=True)
    body["partialResults"] = results.summary.failed_batches > 0 or record.partial_results
    return body


@router.delete("/jobs/{job_id}")
async def delete_job(
    job_id: str,
    authorized: bool = Depends(require_api_key),
    services: Services = Depends(get_services),
):
    deleted = await services.jobs.cleanup(job_id)
    return {"jobId": job_id, "deleted": deleted}


@router.get("/processor/status")
async def processor_status(services: Services = Depends(get_services)):
    if services.processor is None:
        return {"state": "STOPPED", "isRunning": False, "activeWorkers": 0}
    return await services.processor.status()


@router.get("/queue/stats")
async def queue_stats(services: Services = Depends(get_services)):
    stats = await services.queue.stats()
    return stats.model_dump(by_alias=True)


@router.get("/queue/deadletter")
async def list_dead_lettered(max_messages: int = 10, services: Services = Depends(get_services)):
    entries = await services.queue.list_dead_lettered(max_messages)
    return {"count": len(entries), "batches": [e.model_dump(mode="json", by_alias=True) for e in entries]}


@router.delete("/queue/deadletter")
async def clear_dead_letter(
    authorized: bool = Depends(require_api_key),
    services: Services = Depends(get_services),
):
    return {"cleared": await services.queue.clear_dead_letter()}


@router.post("/maintenance/cleanup")
async def run_cleanup(
    authorized: bool = Depends(require_api_key),
    services: Services = Depends(get_services),
):
    results = await services.storage.cleanup_expired()
    cache = await services.cache.cleanup_expired()
    return {"resultsDeleted": results, "cacheEntriesDeleted": cache}
