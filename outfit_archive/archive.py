import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from .catalog import MediaCatalog
from .config import AUTOCOMPLETE_LIMIT, DEFAULT_TAGS, Settings
from .models import (
    BulkResult,
    CategorySchema,
    ExportBundle,
    ItemPatch,
    MediaItem,
    RenameResult,
    SearchState,
    StructuredValue,
    TagCatalogEntry,
)
from .query import run_query
from .state import CatalogState
from .storage import StoragePort, open_storage
from .tag_index import RECENT_TAGS_KEY, TagIndex
from .transfer import ImportMode, export_bundle, import_bundle, load_records, load_vocabulary

logger = logging.getLogger(__name__)


class Archive:
    """
    Owns the catalog state and the storage it mirrors.

    Every public coroutine holds the same lock for its whole duration, so a
    cascade (rename, merge, delete, import) always finishes before the next
    query, read or mutation sees the state. Callers outside the package read
    through these coroutines rather than through `state`.
    """

    def __init__(self, storage: StoragePort, settings: Settings):
        self.settings = settings
        self.storage = storage
        self.state = CatalogState()
        self.tags = TagIndex(storage, self.state, match=settings.tag_match, recent_limit=settings.recent_limit)
        self.catalog = MediaCatalog(storage, self.state, self.tags)
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, settings: Settings) -> "Archive":
        storage = await open_storage(settings.database_url, settings.blob_path)
        archive = cls(storage, settings)
        await archive.load()
        return archive

    async def close(self) -> None:
        await self.storage.close()

    async def _load(self) -> None:
        items = await load_records(self.storage, "items", MediaItem)
        categories = await load_records(self.storage, "categories", CategorySchema)
        settings = await self.storage.get("settings", RECENT_TAGS_KEY)

        self.state.reset()
        self.state.items = {item.id: item for item in items}
        self.state.vocabulary = await load_vocabulary(self.storage)
        self.state.categories = {c.key: c for c in categories}
        self.state.recent = list((settings or {}).get("tags") or [])[:self.settings.recent_limit]
        self.state.recount()
        logger.info("Loaded %d item(s), %d tag(s) and %d categories from %s",
                    len(self.state.items), len(self.state.vocabulary), len(self.state.categories), self.storage.name)

    async def load(self) -> None:
        """Loads the catalog from storage; an empty vocabulary gets the default tags when configured."""
        async with self._lock:
            await self._load()
            if self.settings.seed_default_tags:
                await self.tags.seed_defaults(DEFAULT_TAGS)

    # --- Queries ---

    async def search(self, search: Optional[SearchState] = None) -> List[MediaItem]:
        async with self._lock:
            return run_query(self.state.ordered_items(), self.state.categories, search or self.state.search)

    async def set_search(self, search: SearchState) -> List[MediaItem]:
        async with self._lock:
            self.state.search = search
            return run_query(self.state.ordered_items(), self.state.categories, search)

    async def get_item(self, item_id: int) -> MediaItem:
        async with self._lock:
            return self.catalog.get_item(item_id)

    async def get_search(self) -> SearchState:
        async with self._lock:
            return self.state.search.model_copy(deep=True)

    async def item_count(self) -> int:
        async with self._lock:
            return len(self.state.items)

    async def usage_count(self, tag: str) -> int:
        async with self._lock:
            return self.state.usage_of(tag)

    async def tag_summary(self, sort_by: str = "name") -> Tuple[List[TagCatalogEntry], int]:
        """The vocabulary with usage counts, and the number of items without any free tag."""
        async with self._lock:
            untagged = sum(1 for item in self.state.items.values() if not item.free_tags)
            return self.tags.summary(sort_by), untagged

    async def recent_tags(self) -> List[str]:
        async with self._lock:
            return list(self.state.recent)

    async def suggest_tags(self, text: str, limit: int = AUTOCOMPLETE_LIMIT, exclude: Iterable[str] = ()) -> List[str]:
        async with self._lock:
            return self.tags.suggest(text, limit=limit, exclude=exclude)

    async def get_category(self, key: str) -> CategorySchema:
        async with self._lock:
            return self.tags.get_category(key)

    async def list_categories(self) -> List[CategorySchema]:
        async with self._lock:
            return list(self.state.categories.values())

    # --- Items ---

    async def add_item(self, thumbnail: str, original: str, tags: Iterable[str] = (),
                       structured: Optional[Dict[str, StructuredValue]] = None, memo: str = "") -> MediaItem:
        async with self._lock:
            return await self.catalog.add_item(thumbnail, original, tags, structured, memo)

    async def update_item(self, item_id: int, patch: ItemPatch) -> MediaItem:
        async with self._lock:
            return await self.catalog.update_item(item_id, patch)

    async def delete_item(self, item_id: int) -> None:
        async with self._lock:
            await self.catalog.delete_item(item_id)

    async def delete_items(self, item_ids: Iterable[int]) -> BulkResult:
        async with self._lock:
            return await self.catalog.delete_items(item_ids)

    async def bulk_add_tag(self, item_ids: Iterable[int], tag: str) -> BulkResult:
        async with self._lock:
            return await self.catalog.bulk_add_tag(item_ids, tag)

    async def bulk_remove_tag(self, item_ids: Iterable[int], tag: str) -> BulkResult:
        async with self._lock:
            return await self.catalog.bulk_remove_tag(item_ids, tag)

    # --- Vocabulary ---

    async def add_tag(self, tag: str) -> bool:
        async with self._lock:
            return await self.tags.add_tag(tag)

    async def add_tags(self, tags: Iterable[str]) -> List[str]:
        async with self._lock:
            return await self.tags.add_tags(tags)

    async def record_usage(self, tag: str) -> None:
        async with self._lock:
            await self.tags.record_usage(tag)

    async def rename_tag(self, old_tag: str, new_tag: str) -> RenameResult:
        async with self._lock:
            return await self.tags.rename_tag(old_tag, new_tag)

    async def tag_impact(self, tag: str) -> int:
        async with self._lock:
            return self.tags.tag_impact(tag)

    async def delete_tag(self, tag: str) -> int:
        async with self._lock:
            return await self.tags.delete_tag(tag)

    async def delete_unused_tags(self) -> List[str]:
        async with self._lock:
            return await self.tags.delete_unused_tags()

    # --- Categories ---

    async def add_category(self, label: str, values: Iterable[str], multi: bool = False) -> str:
        async with self._lock:
            return await self.tags.add_category(label, values, multi)

    async def edit_category(self, key: str, label: Optional[str] = None, values: Optional[Iterable[str]] = None,
                            multi: Optional[bool] = None) -> CategorySchema:
        async with self._lock:
            return await self.tags.edit_category(key, label, values, multi)

    async def delete_category(self, key: str) -> int:
        async with self._lock:
            return await self.tags.delete_category(key)

    # --- Transfer ---

    async def export_bundle(self) -> ExportBundle:
        async with self._lock:
            return await export_bundle(self.storage)

    async def import_bundle(self, bundle: ExportBundle, mode: ImportMode = ImportMode.MERGE) -> BulkResult:
        async with self._lock:
            try:
                return await import_bundle(self.storage, bundle, mode)
            finally:
                # Whatever was written, memory must match storage again.
                await self._load()

    async def clear_all(self) -> None:
        async with self._lock:
            await self.storage.clear_all()
            self.state.reset()
            logger.info("Cleared all storage")
