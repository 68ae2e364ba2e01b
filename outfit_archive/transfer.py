"""
Export and import of the whole catalog as one JSON bundle.

Both directions work directly against a StoragePort so the command-line
exporter can use them without starting the web application; `Archive`
reloads its in-memory state after an import.
"""

import logging
from enum import Enum
from typing import List, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError

from .errors import BulkOperationError, StorageError, StorageIOError, ValidationError
from .models import BulkResult, CategorySchema, ExportBundle, MediaItem
from .storage import StoragePort
from .utils import utcnow

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ImportMode(str, Enum):
    MERGE = "merge"
    OVERWRITE = "overwrite"


async def load_records(storage: StoragePort, collection: str, model: Type[ModelT]) -> List[ModelT]:
    records = await storage.get_all(collection)
    try:
        return [model.model_validate(r) for r in records]
    except PydanticValidationError as e:
        raise StorageIOError(f"Stored '{collection}' records are corrupt. Reason: {e}") from e


async def load_vocabulary(storage: StoragePort) -> List[str]:
    return [r["name"] for r in await storage.get_all("tags") if r.get("name")]


async def export_bundle(storage: StoragePort) -> ExportBundle:
    items = await load_records(storage, "items", MediaItem)
    categories = await load_records(storage, "categories", CategorySchema)
    return ExportBundle(
        export_date=utcnow(),
        images=items,
        tags=await load_vocabulary(storage),
        categories={c.key: c for c in categories},
    )


def dump_bundle(bundle: ExportBundle, indent: int = 2) -> str:
    return bundle.model_dump_json(by_alias=True, indent=indent)


def parse_bundle(raw: Union[str, bytes]) -> ExportBundle:
    try:
        return ExportBundle.model_validate_json(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"The file is not a valid archive export. Reason: {e.error_count()} invalid field(s).") from e


async def import_bundle(storage: StoragePort, bundle: ExportBundle, mode: ImportMode = ImportMode.MERGE) -> BulkResult:
    """
    'overwrite' wipes storage and loads the bundle verbatim. 'merge' upserts
    items by id and categories by key with the bundle winning, and unions
    the vocabulary.
    """
    mode = ImportMode(mode)
    result = BulkResult()

    if mode == ImportMode.OVERWRITE:
        await storage.clear_all()
        await storage.replace_all("items", [item.to_record() for item in bundle.images])
        await storage.replace_all("tags", [{"name": t} for t in dict.fromkeys(bundle.tags)])
        await storage.replace_all("categories", [c.to_record() for c in bundle.categories.values()])
        result.succeeded = len(bundle.images)
        logger.info("Imported %d item(s) over the existing catalog", result.succeeded)
        return result

    for item in bundle.images:
        try:
            await storage.put("items", item.to_record())
        except StorageError as e:
            logger.warning("Error importing item %s. Reason: %s", item.id, e.message)
            result.failed += 1
            continue
        result.succeeded += 1

    existing = await load_vocabulary(storage)
    vocabulary = sorted(dict.fromkeys(existing + list(bundle.tags)))
    await storage.replace_all("tags", [{"name": t} for t in vocabulary])
    for category in bundle.categories.values():
        await storage.put("categories", category.to_record())

    logger.info("Merged %d item(s) into the catalog", result.succeeded)
    if result.failed:
        raise BulkOperationError("Import was incomplete", result.succeeded, result.failed)
    return result
