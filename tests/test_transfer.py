import json

import pytest

from conftest import make_settings
from outfit_archive.archive import Archive
from outfit_archive.errors import BulkOperationError, ValidationError
from outfit_archive.models import EXPORT_VERSION, ExportBundle, MediaItem
from outfit_archive.storage import BlobStore
from outfit_archive.transfer import ImportMode, dump_bundle, parse_bundle

V1_EXPORT = {
    "version": 1,
    "exportDate": "2023-03-01T09:30:00.000Z",
    "images": [
        {
            "id": 1677663000000,
            "thumbnail": "data:image/jpeg;base64,AAAA",
            "original": "data:image/png;base64,BBBB",
            "tags": ["coat", "navy"],
            "memo": None,
            "createdAt": "2023-03-01T09:00:00.000Z",
        }
    ],
    "tags": ["coat", "navy", "knit"],
}


@pytest.fixture
async def fresh_archive(tmp_path):
    store = BlobStore(str(tmp_path / "target.json"))
    await store.open()
    archive = Archive(store, make_settings(tmp_path))
    await archive.load()
    return archive


async def populate(archive):
    await archive.add_category("Season", ["spring", "summer"], multi=True)
    await archive.add_category("Fit", ["slim", "regular"])
    first = await archive.add_item("t1", "o1", ["coat", "navy"], {"season": ["spring"], "fit": "slim"}, "office")
    second = await archive.add_item("t2", "o2", ["knit"], {"fit": None})
    await archive.add_tag("unused")
    return first, second


def records(bundle: ExportBundle):
    return (
        [item.to_record() for item in bundle.images],
        bundle.tags,
        {key: c.to_record() for key, c in bundle.categories.items()},
    )


async def test_export_contains_everything(archive):
    await populate(archive)
    bundle = await archive.export_bundle()

    assert bundle.version == EXPORT_VERSION
    assert bundle.export_date is not None
    assert len(bundle.images) == 2
    assert bundle.tags == ["coat", "knit", "navy", "unused"]
    assert set(bundle.categories) == {"season", "fit"}

    raw = json.loads(dump_bundle(bundle))
    assert set(raw) == {"version", "exportDate", "images", "tags", "categories"}
    assert set(raw["images"][0]) == {"id", "thumbnail", "original", "tags", "structuredTags", "memo", "createdAt"}


async def test_overwrite_round_trip_reproduces_catalog(archive, fresh_archive, check_usage):
    await populate(archive)
    exported = await archive.export_bundle()

    await fresh_archive.add_item("t", "o", ["stale"])
    await fresh_archive.import_bundle(parse_bundle(dump_bundle(exported)), ImportMode.OVERWRITE)

    reexported = await fresh_archive.export_bundle()
    assert records(reexported) == records(exported)
    assert "stale" not in fresh_archive.state.vocabulary
    assert list(fresh_archive.state.items) == [item.id for item in exported.images]
    assert await fresh_archive.usage_count("coat") == 1
    check_usage(fresh_archive)


async def test_merge_unions_and_incoming_wins(archive, fresh_archive):
    first, _ = await populate(archive)
    bundle = await archive.export_bundle()

    await fresh_archive.add_category("Fit", ["baggy"])
    await fresh_archive.add_tag("local-only")
    local = MediaItem(id=1, free_tags=["local-only"], created_at=first.created_at)
    # Same id as an incoming item but different content.
    clash = MediaItem(id=first.id, thumbnail="mine", created_at=first.created_at, memo="local")
    await fresh_archive.storage.put("items", local.to_record())
    await fresh_archive.storage.put("items", clash.to_record())
    await fresh_archive.load()

    result = await fresh_archive.import_bundle(bundle, ImportMode.MERGE)

    assert result.succeeded == 2
    assert fresh_archive.state.items[first.id].memo == "office"
    assert fresh_archive.state.items[first.id].thumbnail == "t1"
    assert local.id in fresh_archive.state.items
    assert len(fresh_archive.state.items) == 3
    assert fresh_archive.state.vocabulary == ["coat", "knit", "local-only", "navy", "unused"]
    assert fresh_archive.state.categories["fit"].values == ["slim", "regular"]
    assert "season" in fresh_archive.state.categories


async def test_version_one_export_imports(fresh_archive):
    bundle = parse_bundle(json.dumps(V1_EXPORT))
    await fresh_archive.import_bundle(bundle, ImportMode.OVERWRITE)

    (item,) = fresh_archive.state.ordered_items()
    assert item.free_tags == ["coat", "navy"]
    assert item.structured_tags == {}
    assert item.memo == ""
    assert fresh_archive.state.vocabulary == ["coat", "navy", "knit"]
    assert fresh_archive.state.categories == {}
    assert await fresh_archive.usage_count("navy") == 1


@pytest.mark.parametrize("raw", [
    "not json at all",
    json.dumps({"images": [{"id": "abc", "createdAt": "2023-01-01T00:00:00Z"}]}),
    json.dumps({"images": [{"id": 1}]}),
    json.dumps({"categories": {"fit": {"label": "Fit"}}}),
])
def test_invalid_bundles_are_rejected(raw):
    with pytest.raises(ValidationError):
        parse_bundle(raw)


async def test_failed_merge_still_reloads_state(flaky_archive, tmp_path):
    source_store = BlobStore(str(tmp_path / "source.json"))
    await source_store.open()
    source = Archive(source_store, make_settings(tmp_path))
    await source.load()
    first, second = await populate(source)
    bundle = await source.export_bundle()

    flaky_archive.storage.failing_item_ids.add(second.id)
    with pytest.raises(BulkOperationError) as excinfo:
        await flaky_archive.import_bundle(bundle, ImportMode.MERGE)

    assert (excinfo.value.succeeded, excinfo.value.failed) == (1, 1)
    assert list(flaky_archive.state.items) == [first.id]
    assert await flaky_archive.usage_count("coat") == 1


async def test_overwrite_import_keeps_an_empty_vocabulary(archive, tmp_path):
    await archive.add_item("t", "o")
    exported = await archive.export_bundle()
    assert exported.tags == []

    store = BlobStore(str(tmp_path / "seeded.json"))
    await store.open()
    target = Archive(store, make_settings(tmp_path, seed_default_tags=True))
    await target.load()
    assert "coat" in target.state.vocabulary

    await target.import_bundle(exported, ImportMode.OVERWRITE)

    assert target.state.vocabulary == []
    assert records(await target.export_bundle()) == records(exported)
