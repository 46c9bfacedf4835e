import re

import pytest

from bgflip.core.exceptions import StorageError
from bgflip.core.storage import LocalStorage, generate_storage_key


def test_generate_storage_key_is_fresh_and_keeps_extension():
    first = generate_storage_key("Cat.JPG")
    second = generate_storage_key("Cat.JPG")
    assert first != second
    assert re.fullmatch(r"\d+-[0-9a-f]{32}\.jpg", first)


def test_generate_storage_key_guesses_extension():
    assert generate_storage_key("upload", "image/png").endswith(".png")


@pytest.mark.asyncio
async def test_local_storage_roundtrip(tmp_path):
    storage = LocalStorage(str(tmp_path), "http://test/")

    key = await storage.upload("original-images", b"bytes", "cat.png", content_type="image/png")

    assert await storage.exists("original-images", key)
    assert await storage.download("original-images", key) == b"bytes"
    assert storage.get_public_url("original-images", key) == f"http://test/static/storage/original-images/{key}"

    assert await storage.delete("original-images", key) is True
    assert not await storage.exists("original-images", key)
    assert await storage.delete("original-images", key) is False


@pytest.mark.asyncio
async def test_local_storage_missing_key(tmp_path):
    with pytest.raises(StorageError):
        await LocalStorage(str(tmp_path)).download("original-images", "nope.png")


def test_local_storage_rejects_path_traversal(tmp_path):
    storage = LocalStorage(str(tmp_path / "storage"))
    with pytest.raises(StorageError, match="Invalid storage key"):
        storage._path("original-images", "../../etc/passwd")
