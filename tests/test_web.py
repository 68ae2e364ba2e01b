import base64
import io

import pytest
import requests
from fastapi.testclient import TestClient
from PIL import Image

from outfit_archive.web import app
from outfit_archive.web.routes import get_thumbnailer


def png_bytes(color="navy"):
    buffer = io.BytesIO()
    Image.new("RGB", (640, 480), color).save(buffer, "PNG")
    return buffer.getvalue()


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("OUTFIT_ARCHIVE_HOME", str(tmp_path))
    monkeypatch.setenv("OUTFIT_ARCHIVE_DATABASE_URL", f"sqlite:///{tmp_path / 'web.db'}")
    monkeypatch.setenv("OUTFIT_ARCHIVE_BLOB_PATH", str(tmp_path / "web.json"))
    monkeypatch.setenv("OUTFIT_ARCHIVE_SEED_TAGS", "0")
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def upload(client, tags="coat, navy", count=1):
    files = [("files", (f"look{i}.png", png_bytes(), "image/png")) for i in range(count)]
    response = client.post("/upload", files=files, data={"tags": tags})
    assert response.status_code == 200
    return response.json()


def item_ids(client):
    return [image["id"] for image in client.get("/api/items").json()["images"]]


def _decode(data_uri):
    return base64.b64decode(data_uri.split(",", 1)[1])


def test_root_reports_storage(client):
    body = client.get("/").json()
    assert body["storage"] == "object-store"
    assert body["item_count"] == 0


def test_upload_creates_thumbnails_and_skips_bad_files(client):
    files = [
        ("files", ("look.png", png_bytes(), "image/png")),
        ("files", ("notes.txt", b"hello", "text/plain")),
        ("files", ("broken.png", b"not an image", "image/png")),
    ]
    body = client.post("/upload", files=files, data={"tags": "coat, navy"}).json()

    assert body["uploaded_count"] == 1
    assert body["failed_files"] == ["notes.txt", "broken.png"]

    (item_id,) = item_ids(client)
    item = client.get(f"/api/items/{item_id}").json()
    assert item["tags"] == ["coat", "navy"]
    assert item["thumbnail"].startswith("data:image/jpeg;base64,")
    assert item["original"].startswith("data:image/png;base64,")
    with Image.open(io.BytesIO(_decode(item["thumbnail"]))) as thumb:
        assert max(thumb.size) == 300


def test_upload_from_url(client, monkeypatch):
    class FakeResponse:
        headers = {"content-type": "image/png; charset=binary"}
        content = png_bytes("red")

        def raise_for_status(self):
            pass

    monkeypatch.setattr(requests, "get", lambda url, timeout: FakeResponse())
    app.dependency_overrides[get_thumbnailer] = lambda: (lambda data: "data:image/jpeg;base64,stub")

    response = client.post("/api/upload_from_url", json={"image_url": "http://example.test/a.png", "tags": ["red"]})
    assert response.status_code == 201
    item = client.get(f"/api/items/{response.json()['id']}").json()
    assert item["thumbnail"] == "data:image/jpeg;base64,stub"
    assert item["original"].startswith("data:image/png;base64,")


def test_search_state_round_trip(client):
    upload(client, "coat, navy")
    upload(client, "knit")

    page = client.put("/api/search", json={"free_tags": ["COAT"], "mode": "and"}).json()
    assert page["total"] == 1
    assert page["catalog_total"] == 2
    assert page["quick_tags"] == ["coat", "navy"]
    assert "original" not in page["images"][0]

    assert client.get("/api/search").json()["free_tags"] == ["COAT"]
    assert client.get("/api/items").json()["total"] == 1

    assert client.put("/api/search", json={"free_tags": ["coat", "knit"], "mode": "or"}).json()["total"] == 2


def test_item_edit_and_batch_operations(client):
    upload(client, "coat", count=2)
    first, second = item_ids(client)

    response = client.patch(f"/api/items/{first}", json={"memo": "gift", "tags": ["coat", "wool"]})
    assert response.json()["item"]["memo"] == "gift"

    body = client.post("/api/items/batch_retag",
                       data={"image_ids": [first, second], "tags": "wool", "action": "add"}).json()
    assert (body["succeeded"], body["skipped"]) == (1, 1)

    summary = {t["name"]: t["usage_count"] for t in client.get("/api/tags/summary").json()["tags"]}
    assert summary == {"coat": 2, "wool": 2}
    assert client.get("/api/tags/recent").json()[0] == "wool"
    assert client.get("/api/tags/autocomplete", params={"q": "wo"}).json() == ["wool"]

    body = client.post("/api/items/batch_delete", data={"image_ids": [first, second]}).json()
    assert body["succeeded"] == 2
    assert item_ids(client) == []


def test_add_tags_to_vocabulary(client):
    assert client.post("/api/tags", json={"names": "coat, wool"}).json()["added"] == ["coat", "wool"]
    assert client.post("/api/tags", json={"names": "wool, linen"}).json()["added"] == ["linen"]
    names = [t["name"] for t in client.get("/api/tags/summary").json()["tags"]]
    assert names == ["coat", "linen", "wool"]


def test_rename_and_delete_tags(client):
    upload(client, "x")
    upload(client, "y")

    assert client.get("/api/tags/impact", params={"tag": "x"}).json()["count"] == 1
    body = client.post("/api/tags/rename", json={"old_name": "x", "new_name": "y"}).json()
    assert body["merged"] is True

    tags = client.get("/api/tags/summary").json()["tags"]
    assert [(t["name"], t["usage_count"]) for t in tags] == [("y", 2)]

    assert client.post("/api/tags/delete", json={"name": "y"}).json()["count"] == 2
    assert client.get("/api/tags/summary").json()["untagged_count"] == 2


def test_categories_crud(client):
    response = client.post("/api/categories", json={"label": "Season", "values": ["spring", "summer"], "multi": True})
    assert response.status_code == 201
    assert response.json()["key"] == "season"

    upload(client, "coat")
    (item_id,) = item_ids(client)
    client.patch(f"/api/items/{item_id}", json={"structured_tags": {"season": ["summer"]}})
    assert client.put("/api/search", json={"structured": {"season": ["summer"]}}).json()["total"] == 1

    updated = client.put("/api/categories/season", json={"values": ["spring", "summer", "fall"]}).json()
    assert updated["category"]["values"] == ["spring", "summer", "fall"]

    assert client.delete("/api/categories/season").json()["count"] == 1
    assert client.get("/api/categories").json() == []
    assert client.get("/api/search").json()["structured"] == {}
    assert client.get(f"/api/items/{item_id}").json()["structuredTags"] == {}


def test_export_then_overwrite_import(client):
    client.post("/api/categories", json={"label": "Fit", "values": ["slim"]})
    upload(client, "coat, navy", count=2)

    response = client.get("/api/export")
    assert response.headers["content-disposition"].startswith("attachment; filename=outfit-archive-")
    exported = response.content

    client.post("/api/clear_all")
    assert item_ids(client) == []
    assert client.get("/api/categories").json() == []

    body = client.post("/api/import", files={"file": ("export.json", exported, "application/json")},
                       data={"mode": "overwrite"}).json()
    assert body["succeeded"] == 2
    assert len(item_ids(client)) == 2
    assert [c["key"] for c in client.get("/api/categories").json()] == ["fit"]
    assert client.get("/api/export").json()["images"] == response.json()["images"]


def test_error_mapping(client):
    assert client.get("/api/items/12345").status_code == 404
    assert client.post("/api/tags/rename", json={"old_name": "ghost", "new_name": "x"}).status_code == 404
    assert client.delete("/api/categories/nope").status_code == 404

    client.post("/api/categories", json={"label": "Fit", "values": ["slim"]})
    duplicate = client.post("/api/categories", json={"label": "fit", "values": ["slim"]})
    assert duplicate.status_code == 409
    assert "already exists" in duplicate.json()["detail"]

    upload(client, "coat")
    (item_id,) = item_ids(client)
    invalid = client.patch(f"/api/items/{item_id}", json={"structured_tags": {"fit": "baggy"}})
    assert invalid.status_code == 400
    assert client.post("/api/tags", json={"names": " , "}).status_code == 400

    bad_import = client.post("/api/import", files={"file": ("x.json", b"{not json", "application/json")})
    assert bad_import.status_code == 400
