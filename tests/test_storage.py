import os

import pytest

from outfit_archive.errors import StorageIOError, StorageUnavailable
from outfit_archive.storage import BlobStore, ObjectStore, open_storage


async def test_put_get_and_insertion_order(storage):
    await storage.put("items", {"id": 2, "memo": "second"})
    await storage.put("items", {"id": 1, "memo": "first"})

    assert await storage.get("items", 2) == {"id": 2, "memo": "second"}
    assert await storage.get("items", "1") == {"id": 1, "memo": "first"}
    assert await storage.get("items", 3) is None
    assert [r["id"] for r in await storage.get_all("items")] == [2, 1]


async def test_put_replaces_in_place(storage):
    await storage.put("items", {"id": 1, "memo": "a"})
    await storage.put("items", {"id": 2, "memo": "b"})
    await storage.put("items", {"id": 1, "memo": "changed"})

    records = await storage.get_all("items")
    assert [(r["id"], r["memo"]) for r in records] == [(1, "changed"), (2, "b")]


async def test_delete_is_quiet_for_missing_keys(storage):
    await storage.put("tags", {"name": "red"})
    await storage.delete("tags", "red")
    await storage.delete("tags", "never-there")
    assert await storage.get_all("tags") == []


async def test_replace_all_only_touches_one_collection(storage):
    await storage.put("items", {"id": 1})
    await storage.replace_all("tags", [{"name": "a"}, {"name": "b"}])
    await storage.replace_all("tags", [{"name": "c"}])

    assert await storage.get_all("tags") == [{"name": "c"}]
    assert await storage.get_all("items") == [{"id": 1}]


async def test_clear_all_wipes_every_collection(storage):
    await storage.put("items", {"id": 1})
    await storage.put("categories", {"key": "season", "label": "Season", "values": ["spring"], "multi": False})
    await storage.put("settings", {"key": "recent_tags", "tags": ["a"]})
    await storage.clear_all()

    for collection in ("items", "tags", "categories", "settings"):
        assert await storage.get_all(collection) == []


async def test_records_without_key_field_are_rejected(storage):
    with pytest.raises(ValueError):
        await storage.put("items", {"memo": "no id"})


async def test_blob_store_survives_reopen(tmp_path):
    path = str(tmp_path / "data" / "archive.json")
    store = BlobStore(path)
    await store.open()
    await store.put("items", {"id": 7, "memo": "kept"})

    reopened = BlobStore(path)
    await reopened.open()
    assert await reopened.get("items", 7) == {"id": 7, "memo": "kept"}


async def test_object_store_survives_reopen(tmp_path):
    url = f"sqlite:///{tmp_path / 'archive.db'}"
    store = ObjectStore(url)
    await store.open()
    await store.put("tags", {"name": "navy"})
    await store.close()

    reopened = ObjectStore(url)
    await reopened.open()
    assert await reopened.get_all("tags") == [{"name": "navy"}]
    await reopened.close()


async def test_blob_store_failed_write_keeps_previous_state(tmp_path, monkeypatch):
    store = BlobStore(str(tmp_path / "archive.json"))
    await store.open()
    await store.put("items", {"id": 1, "memo": "before"})

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(StorageIOError):
        await store.put("items", {"id": 1, "memo": "after"})
    monkeypatch.undo()

    assert await store.get("items", 1) == {"id": 1, "memo": "before"}


async def test_blob_store_rejects_corrupt_file(tmp_path):
    path = tmp_path / "archive.json"
    path.write_text("[not an object", encoding="utf-8")
    with pytest.raises(StorageUnavailable):
        await BlobStore(str(path)).open()


async def test_unopened_store_is_unavailable():
    with pytest.raises(StorageUnavailable):
        await ObjectStore("sqlite://").get_all("items")


async def test_open_storage_prefers_object_store(tmp_path):
    store = await open_storage(f"sqlite:///{tmp_path / 'archive.db'}", str(tmp_path / "archive.json"))
    assert isinstance(store, ObjectStore)
    await store.close()


async def test_open_storage_falls_back_to_blob_store(tmp_path):
    unreachable = f"sqlite:///{tmp_path / 'missing-dir' / 'nested' / 'archive.db'}"
    store = await open_storage(unreachable, str(tmp_path / "archive.json"))

    assert isinstance(store, BlobStore)
    await store.put("items", {"id": 1})
    assert await store.get_all("items") == [{"id": 1}]
