import asyncio
import json

import pytest

from vmperf.errors import MessageNotFoundError, PopReceiptMismatchError
from vmperf.schemas import Batch, JobParams


def make_batch(index=0, items=("vm-1", "vm-2"), job_id="j1"):
    return Batch(job_id=job_id, batch_index=index, work_items=list(items))


async def test_enqueue_and_receive_round_trip(queue):
    params = JobParams(time_range_days=7, workspace_id="ws-1")
    receipt = await queue.enqueue(make_batch(), params)
    assert receipt.message_id
    assert receipt.pop_receipt

    messages = await queue.receive(5)
    assert len(messages) == 1
    message = messages[0]
    assert message.message_id == receipt.message_id
    assert message.dequeue_count == 1

    batch = message.parse_batch()
    assert batch.job_id == "j1"
    assert batch.work_items == ["vm-1", "vm-2"]
    assert batch.job_params.workspace_id == "ws-1"
    assert batch.retry_count == 0
    assert batch.enqueued_at is not None

    wire = json.loads(message.content)
    assert {"jobId", "batchIndex", "workItems", "jobParams", "retryCount"} <= set(wire)


async def test_message_expires_after_ttl(queue, clock):
    await queue.enqueue(make_batch())
    clock.advance(queue.message_ttl + 1)
    assert await queue.receive(1) == []
    stats = await queue.stats()
    assert stats.batch_jobs_queue.approximate_messages_count == 0


async def test_received_message_is_hidden_until_visibility_timeout(queue, clock):
    await queue.enqueue(make_batch())
    first = await queue.receive(1)
    assert len(first) == 1
    assert await queue.receive(1) == []

    clock.advance(queue.visibility_timeout + 1)
    again = await queue.receive(1)
    assert len(again) == 1
    assert again[0].message_id == first[0].message_id
    assert again[0].dequeue_count == 2
    assert again[0].pop_receipt != first[0].pop_receipt


async def test_receive_is_capped_at_32(queue):
    for i in range(40):
        await queue.enqueue(make_batch(index=i))
    messages = await queue.receive(100)
    assert len(messages) == 32


async def test_complete_deletes_message(queue, clock):
    await queue.enqueue(make_batch())
    message = (await queue.receive(1))[0]
    await queue.complete(message.message_id, message.pop_receipt)

    clock.advance(queue.visibility_timeout + 1)
    assert await queue.receive(1) == []
    with pytest.raises(MessageNotFoundError):
        await queue.complete(message.message_id, message.pop_receipt)


async def test_complete_with_stale_receipt_fails(queue, clock):
    await queue.enqueue(make_batch())
    first = (await queue.receive(1))[0]
    clock.advance(queue.visibility_timeout + 1)
    second = (await queue.receive(1))[0]

    with pytest.raises(PopReceiptMismatchError):
        await queue.complete(first.message_id, first.pop_receipt)
    # the current lease holder can still acknowledge it
    await queue.complete(second.message_id, second.pop_receipt)


async def test_should_retry_bound(queue):
    await queue.enqueue(make_batch())
    message = (await queue.receive(1))[0]
    at_limit = message.model_copy(update={"dequeue_count": queue.max_dequeue_count})
    below_limit = message.model_copy(update={"dequeue_count": queue.max_dequeue_count - 1})
    assert queue.should_retry(at_limit) is False
    assert queue.should_retry(below_limit) is True


async def test_dead_letter_moves_message(queue, clock):
    await queue.enqueue(make_batch(index=4))
    message = (await queue.receive(1))[0]
    await queue.dead_letter(message, "query timed out")

    clock.advance(queue.visibility_timeout + 1)
    assert await queue.receive(1) == []

    dead = await queue.list_dead_lettered()
    assert len(dead) == 1
    assert dead[0].error == "query timed out"
    assert dead[0].original_message_id == message.message_id
    assert dead[0].content["batchIndex"] == 4
    assert dead[0].dequeue_count == 1

    stats = await queue.stats()
    assert stats.batch_jobs_queue.approximate_messages_count == 0
    assert stats.dead_letter_queue.approximate_messages_count == 1

    # listing is read-only
    assert len(await queue.list_dead_lettered()) == 1
    assert await queue.clear_dead_letter() == 1
    assert await queue.list_dead_lettered() == []


async def test_dead_letter_keeps_malformed_content(queue, redis_client):
    await queue.batch_jobs_queue.send_message("not json at all")
    message = (await queue.receive(1))[0]
    with pytest.raises(ValueError):
        message.parse_batch()
    await queue.dead_letter(message, "malformed")
    dead = await queue.list_dead_lettered()
    assert dead[0].content == "not json at all"


async def test_peek_does_not_consume(queue):
    await queue.enqueue(make_batch(index=0))
    await queue.enqueue(make_batch(index=1))
    peeked = await queue.peek(10)
    assert len(peeked) == 2
    assert all(m.dequeue_count == 0 for m in peeked)

    received = await queue.receive(10)
    assert len(received) == 2
    assert all(m.dequeue_count == 1 for m in received)
    # leased messages are not visible to peek
    assert await queue.peek(10) == []


async def test_enqueue_all_and_rerun_for_missing(queue):
    params = JobParams(subscription_id="sub-1")
    result = await queue.enqueue_all("j1", [["v1", "v2"], ["v3", "v4"], ["v5"]], params)
    assert result.batch_count == 3
    assert len(set(result.message_ids)) == 3

    messages = await queue.receive(10)
    batches = sorted((m.parse_batch() for m in messages), key=lambda b: b.batch_index)
    assert [b.batch_index for b in batches] == [0, 1, 2]
    assert all(b.total_batches == 3 for b in batches)
    assert batches[2].work_items == ["v5"]

    rerun = await queue.enqueue_all("j1", [["v1", "v2"], ["v3", "v4"], ["v5"]], params, only_indices={1})
    assert rerun.batch_count == 1
    message = (await queue.receive(10))[0]
    assert message.parse_batch().batch_index == 1


async def test_update_visibility_extends_lease(queue, clock):
    await queue.enqueue(make_batch())
    message = (await queue.receive(1))[0]
    new_receipt = await queue.update_visibility(message.message_id, message.pop_receipt, queue.visibility_timeout * 2)

    clock.advance(queue.visibility_timeout + 1)
    assert await queue.receive(1) == []

    with pytest.raises(PopReceiptMismatchError):
        await queue.complete(message.message_id, message.pop_receipt)
    await queue.complete(message.message_id, new_receipt)


async def test_receive_and_peek_nothing_when_asked_for_nothing(queue):
    await queue.enqueue(make_batch())
    assert await queue.receive(0) == []
    assert await queue.peek(0) == []
    # untouched, so the next claim is its first delivery
    messages = await queue.receive(1)
    assert messages[0].dequeue_count == 1


async def test_concurrent_receives_never_share_a_message(queue):
    for i in range(3):
        await queue.enqueue(make_batch(index=i))
    results = await asyncio.gather(*(queue.receive(2) for _ in range(4)))
    ids = [m.message_id for batch in results for m in batch]
    assert len(ids) == 3
    assert len(set(ids)) == 3


async def test_initialize_reindexes_orphaned_messages(queue, redis_client):
    receipt = await queue.enqueue(make_batch())
    transport = queue.batch_jobs_queue
    # a process died after the body was written but before it was scored
    await redis_client.zrem(transport.visibility_key, receipt.message_id)
    assert await queue.receive(1) == []

    await queue.initialize()
    messages = await queue.receive(1)
    assert [m.message_id for m in messages] == [receipt.message_id]
    assert await transport.reindex_orphans() == 0
