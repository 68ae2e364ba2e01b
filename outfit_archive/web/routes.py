import logging
from datetime import datetime
from typing import Callable, List, Optional

import requests
from fastapi import UploadFile, File, Form, Depends, Query, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

# Import app components from the web package
from . import app, get_archive
from ..archive import Archive
from ..errors import ArchiveError, ValidationError
from ..models import BulkResult, ItemPatch, MediaItem, SearchState
from ..query import quick_filter_tags
from ..transfer import ImportMode, dump_bundle, parse_bundle
from ..utils import create_thumbnail, to_data_uri

logger = logging.getLogger(__name__)

# --- Pydantic Models ---
class TagRequest(BaseModel):
    name: str

class TagsRequest(BaseModel):
    names: str

class RenameTagRequest(BaseModel):
    old_name: str
    new_name: str

class CategoryCreateRequest(BaseModel):
    label: str
    values: List[str] = []
    multi: bool = False

class CategoryUpdateRequest(BaseModel):
    label: Optional[str] = None
    values: Optional[List[str]] = None
    multi: Optional[bool] = None

class UploadFromUrlRequest(BaseModel):
    image_url: str
    tags: List[str] = []

# --- Dependencies ---
def get_thumbnailer() -> Callable[[bytes], str]:
    """The thumbnail encoder: takes the encoded upload and returns a data URI."""
    return create_thumbnail

# --- Helpers ---
def _split_tags(raw: str) -> List[str]:
    return [t.strip() for t in raw.split(',') if t.strip()]

def _item_summary(item: MediaItem) -> dict:
    """Everything but the full-size original, for gallery listings."""
    record = item.to_record()
    record.pop("original", None)
    return record

def _results_page(results: List[MediaItem], catalog_total: int, page: int, limit: int) -> JSONResponse:
    total = len(results)
    start = (page - 1) * limit
    return JSONResponse({
        "images": [_item_summary(item) for item in results[start:start + limit]],
        "page": page,
        "limit": limit,
        "total": total,
        "catalog_total": catalog_total,
        "has_more": (page * limit) < total,
        "quick_tags": quick_filter_tags(results),
    })

async def _add_upload(archive: Archive, thumbnailer, data: bytes, content_type: str, tags: List[str]) -> MediaItem:
    thumbnail = await run_in_threadpool(thumbnailer, data)
    return await archive.add_item(thumbnail, to_data_uri(data, content_type), tags)

# --- API Endpoints ---

@app.get("/")
async def read_root(archive: Archive = Depends(get_archive)):
    return {
        "message": "outfit-archive running",
        "version": app.version,
        "storage": archive.storage.name,
        "item_count": await archive.item_count(),
    }

@app.post("/upload")
async def upload_images(
    files: List[UploadFile] = File(...),
    tags: str = Form(""),
    archive: Archive = Depends(get_archive),
    thumbnailer: Callable[[bytes], str] = Depends(get_thumbnailer),
):
    """
    Adds every uploaded image as a new item with the given comma-separated tags.
    Files are processed one at a time; a bad file is counted and skipped.
    """
    tag_names = _split_tags(tags)
    uploaded_count = 0
    failed_files = []

    for file in files:
        try:
            if not file.content_type or not file.content_type.startswith("image/"):
                failed_files.append(file.filename)
                continue
            data = await file.read()
            await _add_upload(archive, thumbnailer, data, file.content_type, tag_names)
        except ArchiveError as e:
            logger.warning("Failed to process file '%s'. Reason: %s", file.filename, e.message)
            failed_files.append(file.filename)
            continue
        finally:
            await file.close()
        uploaded_count += 1

    failed_count = len(failed_files)
    message = f"Upload complete. {uploaded_count} file(s) succeeded, {failed_count} failed."
    return JSONResponse(
        {
            "message": message,
            "uploaded_count": uploaded_count,
            "failed_count": failed_count,
            "failed_files": failed_files,
        },
        status_code=200
    )

@app.post("/api/upload_from_url")
async def api_upload_from_url(
    request: UploadFromUrlRequest,
    archive: Archive = Depends(get_archive),
    thumbnailer: Callable[[bytes], str] = Depends(get_thumbnailer),
):
    """Downloads an image from a URL and adds it to the catalog."""

    def _download():
        response = requests.get(request.image_url, timeout=30)
        response.raise_for_status()  # Raise an HTTPError for bad responses (4xx or 5xx)
        return response.headers.get('content-type'), response.content

    try:
        # The download blocks, so it runs in a thread
        content_type, image_bytes = await run_in_threadpool(_download)
    except requests.exceptions.RequestException as e:
        raise HTTPException(status_code=502, detail=f"Failed to download image from URL. Reason: {e}")

    if not content_type or not content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail=f"URL did not point to a valid image. Content-Type: {content_type}")

    item = await _add_upload(archive, thumbnailer, image_bytes, content_type.split(';')[0], request.tags)
    return JSONResponse({"message": "Image from URL uploaded successfully.", "id": item.id}, status_code=201)

@app.get("/api/items")
async def api_get_items(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    archive: Archive = Depends(get_archive),
):
    """Runs the active search state against the catalog."""
    results = await archive.search()
    return _results_page(results, await archive.item_count(), page, limit)

@app.get("/api/search")
async def api_get_search_state(archive: Archive = Depends(get_archive)):
    search = await archive.get_search()
    return search.model_dump(mode="json")

@app.put("/api/search")
async def api_set_search_state(
    search: SearchState,
    limit: int = Query(50, ge=1, le=200),
    archive: Archive = Depends(get_archive),
):
    """Replaces the active filters and returns the first page of results."""
    results = await archive.set_search(search)
    return _results_page(results, await archive.item_count(), 1, limit)

@app.get("/api/items/{item_id}")
async def api_get_item(item_id: int, archive: Archive = Depends(get_archive)):
    item = await archive.get_item(item_id)
    return JSONResponse(item.to_record())

@app.patch("/api/items/{item_id}")
async def api_update_item(item_id: int, patch: ItemPatch, archive: Archive = Depends(get_archive)):
    """Updates memo, free tags and/or structured tags of one item."""
    item = await archive.update_item(item_id, patch)
    return JSONResponse({"message": "Item updated successfully.", "item": _item_summary(item)})

@app.delete("/api/items/{item_id}")
async def api_delete_item(item_id: int, archive: Archive = Depends(get_archive)):
    await archive.delete_item(item_id)
    return {"message": f"Successfully deleted item {item_id}."}

@app.post("/api/items/batch_delete")
async def api_batch_delete_items(image_ids: List[int] = Form(...), archive: Archive = Depends(get_archive)):
    if not image_ids:
        raise HTTPException(status_code=400, detail="No item IDs provided.")
    result = await archive.delete_items(image_ids)
    return {"message": f"Successfully deleted {result.succeeded} item(s).", **result.model_dump()}

@app.post("/api/items/batch_retag")
async def api_batch_retag(
    image_ids: List[int] = Form(...),
    tags: str = Form(""),
    action: str = Form(...),
    archive: Archive = Depends(get_archive),
):
    """Adds or removes each of the comma-separated tags on a batch of items."""
    if action not in {"add", "remove"}:
        raise HTTPException(status_code=400, detail="Invalid action specified.")
    if not image_ids:
        raise HTTPException(status_code=400, detail="No item IDs provided.")
    tag_names = _split_tags(tags)
    if not tag_names:
        raise ValidationError("Tag name cannot be empty.")

    total = BulkResult()
    for tag in tag_names:
        if action == "add":
            result = await archive.bulk_add_tag(image_ids, tag)
        else:
            result = await archive.bulk_remove_tag(image_ids, tag)
        total.succeeded += result.succeeded
        total.skipped += result.skipped
    return JSONResponse({"message": "Batch tags updated successfully.", **total.model_dump()})

@app.get("/api/tags/summary")
async def api_get_tags_summary(
    sort_by: str = Query('name', enum=['name', 'count']),
    archive: Archive = Depends(get_archive),
):
    entries, untagged_count = await archive.tag_summary(sort_by)
    tags_data = [entry.model_dump() for entry in entries]
    return JSONResponse({"tags": tags_data, "untagged_count": untagged_count})

@app.get("/api/tags/recent")
async def api_get_recent_tags(archive: Archive = Depends(get_archive)):
    """Returns the most recently used tags, most recent first."""
    return JSONResponse(await archive.recent_tags())

@app.get("/api/tags/autocomplete")
async def api_autocomplete_tags(
    q: Optional[str] = Query(None, min_length=1),
    limit: int = Query(10, ge=1, le=50),
    exclude: List[str] = Query([]),
    archive: Archive = Depends(get_archive),
):
    if not q:
        return []
    return await archive.suggest_tags(q, limit=limit, exclude=exclude)

@app.get("/api/tags/impact")
async def api_tag_impact(tag: str = Query(..., min_length=1), archive: Archive = Depends(get_archive)):
    """How many items a rename or delete of `tag` would touch, for the confirmation prompt."""
    count = await archive.tag_impact(tag)
    return {"tag": tag, "count": count, "message": f"This tag is used by {count} item(s)."}

@app.post("/api/tags")
async def api_add_tags(request: TagsRequest, archive: Archive = Depends(get_archive)):
    """Adds each of the comma-separated tags to the vocabulary; existing ones are skipped."""
    tag_names = _split_tags(request.names)
    if not tag_names:
        raise ValidationError("Tag name cannot be empty.")
    added = await archive.add_tags(tag_names)
    return {"added": added}

@app.post("/api/tags/rename")
async def api_rename_tag(request: RenameTagRequest, archive: Archive = Depends(get_archive)):
    result = await archive.rename_tag(request.old_name, request.new_name)
    if not result.changed:
        message = "Nothing to rename."
    elif result.merged:
        message = f"Tag '{result.old_name}' merged into '{result.new_name}'."
    else:
        message = f"Tag renamed to '{result.new_name}'."
    return {"message": message, **result.model_dump()}

@app.post("/api/tags/delete")
async def api_delete_tag(request: TagRequest, archive: Archive = Depends(get_archive)):
    count = await archive.delete_tag(request.name)
    return {"message": f"Tag '{request.name}' was removed from {count} item(s) and deleted.", "count": count}

@app.post("/api/tags/delete_unused")
async def api_delete_unused_tags(archive: Archive = Depends(get_archive)):
    """Deletes every vocabulary tag that no item uses."""
    deleted = await archive.delete_unused_tags()
    return JSONResponse({"message": f"Successfully deleted {len(deleted)} unused tag(s).", "tags": deleted})

@app.get("/api/categories")
async def api_get_categories(archive: Archive = Depends(get_archive)):
    categories = await archive.list_categories()
    return JSONResponse([c.to_record() for c in categories])

@app.post("/api/categories")
async def api_add_category(request: CategoryCreateRequest, archive: Archive = Depends(get_archive)):
    key = await archive.add_category(request.label, request.values, request.multi)
    category = await archive.get_category(key)
    return JSONResponse({"key": key, "category": category.to_record()}, status_code=201)

@app.put("/api/categories/{key}")
async def api_edit_category(key: str, request: CategoryUpdateRequest, archive: Archive = Depends(get_archive)):
    category = await archive.edit_category(key, request.label, request.values, request.multi)
    return {"message": f"Category '{key}' updated.", "category": category.to_record()}

@app.delete("/api/categories/{key}")
async def api_delete_category(key: str, archive: Archive = Depends(get_archive)):
    count = await archive.delete_category(key)
    return {"message": f"Category '{key}' deleted and removed from {count} item(s).", "count": count}

@app.get("/api/export")
async def api_export(archive: Archive = Depends(get_archive)):
    """Returns the whole catalog as a downloadable JSON bundle."""
    bundle = await archive.export_bundle()
    headers = {
        'Content-Disposition': f"attachment; filename=outfit-archive-{datetime.now().strftime('%Y-%m-%d')}.json"
    }
    return Response(dump_bundle(bundle), media_type="application/json", headers=headers)

@app.post("/api/import")
async def api_import(
    file: UploadFile = File(...),
    mode: ImportMode = Form(ImportMode.MERGE),
    archive: Archive = Depends(get_archive),
):
    """
    Imports a bundle produced by /api/export. 'merge' keeps existing data and
    lets the bundle win on conflicts; 'overwrite' replaces everything.
    """
    try:
        raw = await file.read()
    finally:
        await file.close()
    bundle = parse_bundle(raw)
    result = await archive.import_bundle(bundle, mode)
    return JSONResponse({
        "message": f"Import complete. Loaded {result.succeeded} item(s).",
        **result.model_dump(),
    })

@app.post("/api/clear_all")
async def api_clear_all(archive: Archive = Depends(get_archive)):
    await archive.clear_all()
    return JSONResponse({"message": "All data was deleted."})
