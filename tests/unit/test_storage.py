import pytest

from chunked_upscaler.core.storage import LocalStorage, StorageFactory, get_storage


@pytest.mark.asyncio
async def test_local_storage_lifecycle(tmp_path):
    storage = LocalStorage(base_path=str(tmp_path))

    key = await storage.upload(b"png-bytes", "cat_UPSCALE_2x_2026-01-01T00-00-00.png", folder="jobs/abc")

    assert key == "jobs/abc/cat_UPSCALE_2x_2026-01-01T00-00-00.png"
    assert (tmp_path / key).read_bytes() == b"png-bytes"
    assert await storage.exists(key)
    assert await storage.get_url(key) == f"/static/storage/{key}"

    assert not await storage.exists("jobs/abc/missing.png")
    with pytest.raises(FileNotFoundError):
        await storage.get_url("jobs/abc/missing.png")


@pytest.mark.asyncio
async def test_upload_keeps_only_the_file_name(tmp_path):
    storage = LocalStorage(base_path=str(tmp_path))

    key = await storage.upload(b"x", "../../escape.png", folder="jobs/1")

    assert key == "jobs/1/escape.png"


def test_storage_factory_singleton():
    StorageFactory.reset()
    first = get_storage()

    assert get_storage() is first
    assert isinstance(first, LocalStorage)

    StorageFactory.reset()
    assert get_storage() is not first
