import logging
import time
from typing import Dict, Iterable, Optional

from .errors import BulkOperationError, ItemNotFound, StorageError, ValidationError
from .models import BulkResult, ItemPatch, MediaItem, StructuredValue
from .state import CatalogState
from .storage import StoragePort
from .tag_index import TagIndex, persist_items
from .utils import clean_values, dedupe_tags, fold, normalize_tag, utcnow

logger = logging.getLogger(__name__)


class MediaCatalog:
    """
    Creates, edits and deletes media items. Every change is written to storage
    first and applied to the in-memory state only once the write succeeded.
    """

    def __init__(self, storage: StoragePort, state: CatalogState, tag_index: TagIndex):
        self.storage = storage
        self.state = state
        self.tag_index = tag_index

    def _next_id(self) -> int:
        candidate = int(time.time() * 1000)
        if self.state.items:
            candidate = max(candidate, max(self.state.items) + 1)
        return candidate

    def get_item(self, item_id: int) -> MediaItem:
        item = self.state.items.get(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        return item

    def validate_structured(self, values: Dict[str, StructuredValue]) -> Dict[str, StructuredValue]:
        """Checks structured answers against the current schema and coerces them to its cardinality."""
        result: Dict[str, StructuredValue] = {}
        for key, value in (values or {}).items():
            category = self.state.categories.get(key)
            if category is None:
                raise ValidationError(f"Unknown category '{key}'.")

            if category.multi:
                if value is None:
                    value = []
                elif isinstance(value, str):
                    value = [value]
                cleaned = clean_values(value)
                invalid = [v for v in cleaned if v not in category.values]
                result[key] = cleaned
            else:
                if isinstance(value, list):
                    if len(value) > 1:
                        raise ValidationError(f"Category '{category.label}' accepts a single value.")
                    value = value[0] if value else None
                value = (value or "").strip() or None
                invalid = [value] if value is not None and value not in category.values else []
                result[key] = value

            if invalid:
                raise ValidationError(
                    f"Value(s) {', '.join(invalid)} not allowed for category '{category.label}'."
                )
        return result

    async def _record_usage(self, tags: Iterable[str]) -> None:
        """
        Records the tags of an item that is already persisted. Vocabulary and
        recent-list write failures are logged, not raised.
        """
        for tag in tags:
            try:
                await self.tag_index.record_usage(tag)
            except StorageError as e:
                logger.warning("Could not record usage of tag '%s'. Reason: %s", tag, e.message)

    async def add_item(self, thumbnail: str, original: str, tags: Iterable[str] = (),
                       structured: Optional[Dict[str, StructuredValue]] = None, memo: str = "") -> MediaItem:
        item = MediaItem(
            id=self._next_id(),
            thumbnail=thumbnail,
            original=original,
            free_tags=list(tags),
            structured_tags=self.validate_structured(structured or {}),
            memo=memo or "",
            created_at=utcnow(),
        )
        await self.storage.put("items", item.to_record())
        self.state.items[item.id] = item
        self.state.apply_tag_diff([], item.free_tags)

        await self._record_usage(item.free_tags)
        return item

    async def update_item(self, item_id: int, patch: ItemPatch) -> MediaItem:
        item = self.get_item(item_id)
        update = {}
        if patch.memo is not None:
            update["memo"] = patch.memo
        if patch.tags is not None:
            update["free_tags"] = dedupe_tags(normalize_tag(t) for t in patch.tags)
        if patch.structured_tags is not None:
            update["structured_tags"] = {**item.structured_tags, **self.validate_structured(patch.structured_tags)}
        if not update:
            return item

        updated = item.model_copy(update=update)
        await self.storage.put("items", updated.to_record())
        self.state.items[item_id] = updated
        self.state.apply_tag_diff(item.free_tags, updated.free_tags)

        previous = {fold(t) for t in item.free_tags}
        await self._record_usage(t for t in updated.free_tags if fold(t) not in previous)
        return updated

    async def delete_item(self, item_id: int) -> None:
        item = self.get_item(item_id)
        await self.storage.delete("items", item_id)
        del self.state.items[item_id]
        # Vocabulary entries stay even when their usage drops to zero.
        self.state.apply_tag_diff(item.free_tags, [])

    async def delete_items(self, item_ids: Iterable[int]) -> BulkResult:
        result = BulkResult()
        for item_id in dict.fromkeys(item_ids):
            if item_id not in self.state.items:
                result.skipped += 1
                continue
            try:
                await self.delete_item(item_id)
            except StorageError as e:
                logger.warning("Could not delete item %s. Reason: %s", item_id, e.message)
                result.failed += 1
                continue
            result.succeeded += 1
        if result.failed:
            raise BulkOperationError("Batch delete was incomplete", result.succeeded, result.failed)
        return result

    async def _bulk_retag(self, item_ids: Iterable[int], tag: str, add: bool) -> BulkResult:
        tag = normalize_tag(tag)
        if not tag:
            raise ValidationError("Tag name cannot be empty.")
        if add:
            # Reuse the vocabulary's spelling so a bulk add does not introduce a case variant.
            tag = self.tag_index.find(tag) or tag
        folded = fold(tag)

        result = BulkResult()
        changed = []
        for item_id in dict.fromkeys(item_ids):
            item = self.state.items.get(item_id)
            if item is None:
                result.skipped += 1
                continue
            has_tag = folded in {fold(t) for t in item.free_tags}
            if has_tag == add:
                # Already in the requested state.
                result.skipped += 1
                continue
            if add:
                tags = item.free_tags + [tag]
            else:
                tags = [t for t in item.free_tags if fold(t) != folded]
            changed.append((item, item.model_copy(update={"free_tags": tags})))

        written = await persist_items(self.storage, self.state, [new for _, new in changed])
        for old, new in changed:
            if self.state.items.get(old.id) is new:
                self.state.apply_tag_diff(old.free_tags, new.free_tags)
        result.succeeded = written.succeeded
        result.failed = written.failed

        if add and result.succeeded:
            await self.tag_index.record_usage(tag)
        if result.failed:
            action = "add" if add else "remove"
            raise BulkOperationError(f"Batch {action} of tag '{tag}' was incomplete", result.succeeded, result.failed)
        return result

    async def bulk_add_tag(self, item_ids: Iterable[int], tag: str) -> BulkResult:
        return await self._bulk_retag(item_ids, tag, add=True)

    async def bulk_remove_tag(self, item_ids: Iterable[int], tag: str) -> BulkResult:
        return await self._bulk_retag(item_ids, tag, add=False)
