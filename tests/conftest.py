from collections import Counter

import pytest

from outfit_archive.archive import Archive
from outfit_archive.config import Settings, TagMatch
from outfit_archive.errors import StorageIOError
from outfit_archive.storage import BlobStore, ObjectStore, StoragePort


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        home=str(tmp_path),
        database_url=f"sqlite:///{tmp_path / 'archive.db'}",
        blob_path=str(tmp_path / "archive.json"),
        tag_match=TagMatch.EXACT,
        seed_default_tags=False,
    )
    values.update(overrides)
    return Settings(**values)


class FlakyStore(StoragePort):
    """Wraps a real store and fails the writes the test asks it to."""

    name = "flaky"

    def __init__(self, inner: StoragePort):
        self.inner = inner
        self.failing_item_ids = set()
        self.fail_all_writes = False
        self.failing_collections = set()

    def _check(self, collection, key=None):
        if (self.fail_all_writes or collection in self.failing_collections
                or (collection == "items" and key in self.failing_item_ids)):
            raise StorageIOError("disk full")

    async def open(self):
        await self.inner.open()

    async def close(self):
        await self.inner.close()

    async def get_all(self, collection):
        return await self.inner.get_all(collection)

    async def get(self, collection, key):
        return await self.inner.get(collection, key)

    async def put(self, collection, record):
        self._check(collection, record.get("id"))
        await self.inner.put(collection, record)

    async def delete(self, collection, key):
        self._check(collection, key)
        await self.inner.delete(collection, key)

    async def replace_all(self, collection, records):
        self._check(collection)
        await self.inner.replace_all(collection, records)

    async def clear_all(self):
        self._check(None)
        await self.inner.clear_all()


@pytest.fixture(params=["object-store", "blob-store"])
async def storage(request, tmp_path):
    if request.param == "object-store":
        store = ObjectStore(f"sqlite:///{tmp_path / 'archive.db'}")
    else:
        store = BlobStore(str(tmp_path / "archive.json"))
    await store.open()
    yield store
    await store.close()


@pytest.fixture
async def archive(storage, tmp_path):
    archive = Archive(storage, make_settings(tmp_path))
    await archive.load()
    return archive


@pytest.fixture
async def flaky_archive(tmp_path):
    store = FlakyStore(BlobStore(str(tmp_path / "flaky.json")))
    await store.open()
    archive = Archive(store, make_settings(tmp_path))
    await archive.load()
    yield archive
    await store.close()


@pytest.fixture
def check_usage():
    """Asserts that every cached usage count equals a fresh count over the items."""

    def _check(archive: Archive):
        items = archive.state.ordered_items()
        expected = Counter(t.casefold() for item in items for t in set(x.casefold() for x in item.free_tags))
        names = set(archive.state.vocabulary) | {t for item in items for t in item.free_tags}
        for name in names:
            assert archive.state.usage_of(name) == expected.get(name.casefold(), 0), name
        assert dict(archive.state.usage) == dict(expected)

    return _check
