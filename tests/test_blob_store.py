import pytest

from vmperf.blob_store import RedisBlobContainer
from vmperf.errors import BlobNotFoundError


@pytest.fixture
def container(redis_client, clock):
    return RedisBlobContainer(redis_client, "c1", clock=clock)


async def test_upload_and_download(container, clock):
    props = await container.upload("a/0.json", b'{"x": 1}', metadata={"count": 3})
    assert props.content_length == 8
    assert props.created_on_epoch == clock.now
    assert await container.download("a/0.json") == b'{"x": 1}'
    # metadata values are stored as strings
    assert (await container.get_properties("a/0.json")).metadata == {"count": "3"}


async def test_binary_payload_survives(container):
    payload = bytes(range(256))
    await container.upload("bin", payload, content_encoding="gzip")
    assert await container.download("bin") == payload
    assert (await container.get_properties("bin")).content_encoding == "gzip"


async def test_missing_blob(container):
    assert not await container.exists("nope")
    with pytest.raises(BlobNotFoundError):
        await container.download("nope")
    with pytest.raises(BlobNotFoundError):
        await container.delete("nope")
    assert await container.delete_if_exists("nope") is False


async def test_list_by_prefix(container):
    for name in ["b/1", "a/2", "a/1", "ab/1"]:
        await container.upload(name, b"")
    assert [p.name for p in await container.list_blobs("a/")] == ["a/1", "a/2"]
    assert len(await container.list_blobs()) == 4

    await container.delete("a/1")
    assert [p.name for p in await container.list_blobs("a/")] == ["a/2"]
