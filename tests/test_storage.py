from __future__ import annotations

from pathlib import Path

import pytest

from delivery_stock.config import Settings
from delivery_stock.storage import (
    BlobStore,
    DatabaseBlobStore,
    FileSystemBlobStore,
    MemoryBlobStore,
    ObjectAlreadyExists,
    ObjectNotFound,
    VersionConflict,
    create_blob_store,
    decode_json,
    encode_json,
)


@pytest.fixture(params=["memory", "filesystem", "database"])
def store(request, tmp_path: Path, database_store: DatabaseBlobStore) -> BlobStore:
    if request.param == "memory":
        return MemoryBlobStore()
    if request.param == "filesystem":
        return FileSystemBlobStore(tmp_path / "blobs")
    return database_store


async def test_put_and_read(store: BlobStore) -> None:
    version = await store.put("acc/folder/a.json", b"{}")
    stored = await store.read("acc/folder/a.json")

    assert stored.data == b"{}"
    assert stored.version == version
    assert await store.get("acc/folder/a.json") == b"{}"


async def test_read_missing_raises(store: BlobStore) -> None:
    with pytest.raises(ObjectNotFound):
        await store.read("acc/missing.json")
    with pytest.raises(KeyError):
        await store.get("acc/missing.json")


async def test_create_only_write(store: BlobStore) -> None:
    await store.put("acc/applied/x.json", b"first", fail_if_exists=True)

    with pytest.raises(ObjectAlreadyExists):
        await store.put("acc/applied/x.json", b"second", fail_if_exists=True)

    assert await store.get("acc/applied/x.json") == b"first"


async def test_conditional_write(store: BlobStore) -> None:
    first = await store.put("acc/stock.json", b"v1")
    second = await store.put("acc/stock.json", b"v2", if_version=first)

    assert second != first
    with pytest.raises(VersionConflict):
        await store.put("acc/stock.json", b"v3", if_version=first)
    assert await store.get("acc/stock.json") == b"v2"


async def test_conditional_write_on_missing_object(store: BlobStore) -> None:
    with pytest.raises(VersionConflict):
        await store.put("acc/none.json", b"x", if_version="1")


async def test_unconditional_overwrite(store: BlobStore) -> None:
    await store.put("acc/stock.json", b"old")
    await store.put("acc/stock.json", b"new")

    assert await store.get("acc/stock.json") == b"new"


async def test_list_returns_direct_children(store: BlobStore) -> None:
    await store.put("acc/stock/stock.json", b"{}")
    await store.put("acc/stock/applied/a.json", b"{}")
    await store.put("acc/stock/applied/b.json", b"{}")
    await store.put("acc/stockpile/c.json", b"{}")

    applied = sorted(entry.name for entry in await store.list("acc/stock/applied"))
    top = sorted(entry.name for entry in await store.list("acc/stock"))

    assert applied == ["a.json", "b.json"]
    assert top == ["stock.json"]
    assert await store.list("acc/unknown") == []


async def test_delete(store: BlobStore) -> None:
    await store.put("acc/a.json", b"{}")
    await store.delete("acc/a.json")

    with pytest.raises(ObjectNotFound):
        await store.read("acc/a.json")
    with pytest.raises(ObjectNotFound):
        await store.delete("acc/a.json")


async def test_filesystem_rejects_path_traversal(tmp_path: Path) -> None:
    store = FileSystemBlobStore(tmp_path / "blobs")

    with pytest.raises(ValueError):
        await store.put("../outside.json", b"{}")
    assert not (tmp_path / "outside.json").exists()


async def test_database_versions_are_counters(database_store: DatabaseBlobStore) -> None:
    assert await database_store.put("acc/a.json", b"1", fail_if_exists=True) == "1"
    assert await database_store.put("acc/a.json", b"2", if_version="1") == "2"
    assert await database_store.put("acc/a.json", b"3") == "3"


def test_json_helpers_keep_unicode() -> None:
    data = encode_json({"name": "牛乳"})

    assert "牛乳".encode("utf-8") in data
    assert decode_json(data) == {"name": "牛乳"}
    assert decode_json(b"") == {}


def test_create_blob_store_selects_adapter(tmp_path: Path) -> None:
    memory = create_blob_store(Settings(storage_backend="memory"))
    filesystem = create_blob_store(
        Settings(storage_backend="filesystem", storage_path=tmp_path / "fs")
    )

    assert isinstance(memory, MemoryBlobStore)
    assert isinstance(filesystem, FileSystemBlobStore)
    with pytest.raises(ValueError):
        create_blob_store(Settings(storage_backend="database"))
