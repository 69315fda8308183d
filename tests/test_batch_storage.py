import pytest

from vmperf.batch_storage import batch_blob_name
from vmperf.errors import ResultDecodeError
from vmperf.schemas import JobState, JobStatusRecord


async def test_save_and_get_batch_result(storage):
    rows = [{"name": "vm-1", "cpuP95": 12.5}, {"name": "vm-2", "cpuP95": 80.1}]
    blob_name = await storage.save_batch_result("j1", 0, rows, metadata={"attempt": 1})
    assert blob_name == "j1/batch-0.json"

    result = await storage.get_batch_result("j1", 0)
    assert result.rows == rows
    assert result.metadata.vm_count == 2
    assert (result.metadata.expires_at - result.metadata.saved_at).total_seconds() == 24 * 3600
    assert result.metadata.model_extra["attempt"] == 1


async def test_get_missing_batch_returns_none(storage):
    assert await storage.get_batch_result("j1", 3) is None


async def test_rewrite_overwrites_instead_of_duplicating(storage):
    await storage.save_batch_result("j1", 0, [{"name": "old"}])
    await storage.save_batch_result("j1", 0, [{"name": "new-a"}, {"name": "new-b"}])

    batches = await storage.list_batches("j1")
    assert len(batches) == 1
    aggregated = await storage.aggregate_results("j1")
    assert aggregated.rows == [{"name": "new-a"}, {"name": "new-b"}]
    assert aggregated.summary.total_batches == 1


async def test_list_batches_sorted_by_index(storage):
    for index in (10, 2, 0, 1):
        await storage.save_batch_result("j1", index, [{"name": f"vm-{index}"}])
    await storage.save_job_status("j1", JobStatusRecord(job_id="j1", total_batches=11))
    await storage.save_batch_result("j10", 0, [{"name": "other job"}])

    batches = await storage.list_batches("j1")
    assert [b.batch_index for b in batches] == [0, 1, 2, 10]
    assert batches[0].metadata["jobId"] == "j1"


async def test_list_batches_prefers_most_recent_duplicate(storage, clock):
    await storage.container.upload("j1/batch-01.json", b"{}")
    clock.advance(5)
    await storage.save_batch_result("j1", 1, [{"name": "fresh"}])

    batches = await storage.list_batches("j1")
    assert len(batches) == 1
    assert batches[0].blob_name == "j1/batch-1.json"


async def test_partial_aggregation_counts_unreadable_batches(storage):
    for index in range(5):
        await storage.save_batch_result("j1", index, [{"name": f"vm-{index}"}])
    # one object corrupted, one removed after the listing would have seen it
    await storage.container.upload(batch_blob_name("j1", 1), b"{not valid json")
    original_list = storage.list_batches

    async def list_then_lose_one(job_id):
        listed = await original_list(job_id)
        await storage.container.delete(batch_blob_name("j1", 3))
        return listed

    storage.list_batches = list_then_lose_one
    aggregated = await storage.aggregate_results("j1")

    assert aggregated.summary.total_batches == 5
    assert aggregated.summary.successful_batches == 3
    assert aggregated.summary.failed_batches == 2
    assert aggregated.rows == [{"name": "vm-0"}, {"name": "vm-2"}, {"name": "vm-4"}]
    failed = [b.batch_index for b in aggregated.batches if b.status == "failed"]
    assert failed == [1, 3]


async def test_get_corrupt_batch_raises(storage):
    await storage.container.upload(batch_blob_name("j1", 0), b"garbage")
    with pytest.raises(ResultDecodeError):
        await storage.get_batch_result("j1", 0)


async def test_aggregate_unknown_job_is_empty(storage):
    aggregated = await storage.aggregate_results("nope")
    assert aggregated.rows == []
    assert aggregated.summary.total_batches == 0


async def test_job_status_round_trip(storage):
    assert await storage.get_job_status("j1") is None
    await storage.save_job_status("j1", JobStatusRecord(job_id="j1", total_batches=3))
    saved = await storage.save_job_status(
        "j1", JobStatusRecord(job_id="j1", status=JobState.IN_PROGRESS, total_batches=3, progress={"phase": "metrics"})
    )
    assert saved.updated_at is not None

    status = await storage.get_job_status("j1")
    assert status.status is JobState.IN_PROGRESS
    assert status.progress == {"phase": "metrics"}


async def test_failure_markers(storage):
    await storage.record_batch_failure("j1", 2, "boom")
    await storage.record_batch_failure("j1", 0, "boom")
    assert await storage.list_failed_batches("j1") == [0, 2]
    # markers are not batch results
    assert await storage.list_batches("j1") == []


async def test_cleanup_job_removes_everything_under_prefix(storage):
    await storage.save_batch_result("j1", 0, [])
    await storage.save_batch_result("j1", 1, [])
    await storage.save_job_status("j1", JobStatusRecord(job_id="j1"))
    await storage.record_batch_failure("j1", 2, "boom")
    await storage.save_batch_result("j2", 0, [])

    assert await storage.cleanup_job("j1") == 4
    assert await storage.list_batches("j1") == []
    assert len(await storage.list_batches("j2")) == 1


async def test_cleanup_expired(storage, clock):
    await storage.save_batch_result("old", 0, [])
    clock.advance(23 * 3600)
    await storage.save_batch_result("new", 0, [])
    clock.advance(2 * 3600)

    assert await storage.cleanup_expired() == 1
    assert await storage.list_batches("old") == []
    assert len(await storage.list_batches("new")) == 1


async def test_stats(storage):
    await storage.save_batch_result("j1", 0, [{"name": "a"}])
    await storage.save_batch_result("j2", 0, [{"name": "b"}])
    stats = await storage.stats()
    assert stats["totalBlobs"] == 2
    assert stats["activeJobs"] == 2
    assert stats["ttlHours"] == 24
