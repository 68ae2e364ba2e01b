"""
The Tag Index: free-tag vocabulary, usage counts, the recent-tags list and the
structured category schema, plus the cascades that keep items consistent when
any of them is renamed, merged or deleted.

Equality rules:
  - Whether a tag already exists in the vocabulary follows the `TagMatch`
    policy (exact string match by default, or case-folded).
  - Whether an item carries a tag is always decided case-insensitively, so
    usage counts, cascades and filters agree with each other.
"""

import logging
from typing import Iterable, List, Optional, Sequence

from .config import RECENT_TAGS_LIMIT, AUTOCOMPLETE_LIMIT, TagMatch
from .errors import (
    BulkOperationError,
    CategoryNotFound,
    DuplicateCategory,
    StorageError,
    TagNotFound,
    ValidationError,
)
from .models import BulkResult, CategorySchema, MediaItem, RenameResult, TagCatalogEntry
from .state import CatalogState
from .storage import StoragePort
from .utils import clean_values, dedupe_tags, derive_category_key, fold, normalize_tag

logger = logging.getLogger(__name__)

RECENT_TAGS_KEY = "recent_tags"


async def persist_items(storage: StoragePort, state: CatalogState, updated: Sequence[MediaItem]) -> BulkResult:
    """
    Writes each updated item, then swaps it into the in-memory state.
    An item whose write fails keeps its previous in-memory version; the
    remaining items are still attempted.
    """
    result = BulkResult()
    for item in updated:
        try:
            await storage.put("items", item.to_record())
        except StorageError as e:
            logger.warning("Could not persist item %s. Reason: %s", item.id, e.message)
            result.failed += 1
            continue
        state.items[item.id] = item
        result.succeeded += 1
    return result


class TagIndex:
    def __init__(self, storage: StoragePort, state: CatalogState, match: TagMatch = TagMatch.EXACT,
                 recent_limit: int = RECENT_TAGS_LIMIT):
        self.storage = storage
        self.state = state
        self.match = match
        self.recent_limit = recent_limit

    # --- Vocabulary helpers ---

    def same(self, a: str, b: str) -> bool:
        if self.match == TagMatch.CASEFOLD:
            return fold(a) == fold(b)
        return a == b

    def find(self, tag: str) -> Optional[str]:
        """Returns the vocabulary spelling equal to `tag` under the match policy."""
        for existing in self.state.vocabulary:
            if self.same(existing, tag):
                return existing
        return None

    async def _save_vocabulary(self, vocabulary: List[str]) -> None:
        vocabulary = sorted(vocabulary)
        await self.storage.replace_all("tags", [{"name": name} for name in vocabulary])
        self.state.vocabulary = vocabulary

    async def _save_recent(self, recent: List[str]) -> None:
        recent = recent[:self.recent_limit]
        await self.storage.put("settings", {"key": RECENT_TAGS_KEY, "tags": recent})
        self.state.recent = recent

    def _stale_spelling(self, tag: str, removed: str) -> bool:
        """
        True for the removed tag itself and for any case variant of it that no
        item carries any more once a cascade has run.
        """
        if self.same(tag, removed):
            return True
        return fold(tag) == fold(removed) and self.state.count_usage(tag) == 0

    def _recount(self, *tags: str) -> None:
        for tag in tags:
            count = self.state.count_usage(tag)
            if count:
                self.state.usage[fold(tag)] = count
            else:
                self.state.usage.pop(fold(tag), None)

    # --- Vocabulary operations ---

    async def record_usage(self, tag: str) -> None:
        """Adds `tag` to the vocabulary if it is new and moves it to the front of the recent list."""
        tag = normalize_tag(tag)
        if not tag:
            return
        existing = self.find(tag)
        if existing is None:
            await self._save_vocabulary(self.state.vocabulary + [tag])
            existing = tag
        recent = [existing] + [t for t in self.state.recent if not self.same(t, existing)]
        await self._save_recent(recent)

    async def add_tag(self, tag: str) -> bool:
        tag = normalize_tag(tag)
        if not tag or self.find(tag) is not None:
            return False
        await self._save_vocabulary(self.state.vocabulary + [tag])
        return True

    async def add_tags(self, tags: Iterable[str]) -> List[str]:
        added = []
        for tag in tags:
            if await self.add_tag(tag):
                added.append(normalize_tag(tag))
        return added

    async def seed_defaults(self, defaults: Iterable[str]) -> None:
        if self.state.vocabulary:
            return
        seeded = dedupe_tags(normalize_tag(t) for t in defaults)
        if seeded:
            await self._save_vocabulary(seeded)
            logger.info("Seeded vocabulary with %d default tags", len(seeded))

    def tag_impact(self, tag: str) -> int:
        """The number of items a rename or delete of `tag` would touch, counted from the items."""
        return self.state.count_usage(normalize_tag(tag))

    async def rename_tag(self, old_tag: str, new_tag: str) -> RenameResult:
        """
        Renames `old_tag` on every item. When `new_tag` is already in the
        vocabulary the two tags are merged and the existing spelling is kept.
        Items are all written before the vocabulary changes; if any write fails
        a BulkOperationError is raised and the vocabulary is left as it was.
        """
        new_tag = normalize_tag(new_tag)
        old_tag = normalize_tag(old_tag)
        if not new_tag or new_tag == old_tag:
            return RenameResult(old_name=old_tag, new_name=new_tag)

        old_in_vocabulary = self.find(old_tag)
        old_folded = fold(old_tag)
        affected = [item for item in self.state.ordered_items()
                    if old_folded in {fold(t) for t in item.free_tags}]
        if old_in_vocabulary is None and not affected:
            raise TagNotFound(old_tag)

        existing = self.find(new_tag)
        # A case-only respelling under the case-folded policy finds the old tag itself.
        merged = existing is not None and existing != old_in_vocabulary
        target = existing if merged else new_tag

        updated = []
        for item in affected:
            tags = dedupe_tags(target if fold(t) == old_folded else t for t in item.free_tags)
            updated.append(item.model_copy(update={"free_tags": tags}))
        result = await persist_items(self.storage, self.state, updated)
        self._recount(old_tag, target)
        if result.failed:
            raise BulkOperationError(f"Renaming '{old_tag}' to '{target}' was incomplete", result.succeeded, result.failed)

        vocabulary = [t for t in self.state.vocabulary
                      if t == target or not self._stale_spelling(t, old_tag)]
        if not merged and target not in vocabulary:
            vocabulary.append(target)
        await self._save_vocabulary(vocabulary)

        recent = dedupe_tags(target if t != target and self._stale_spelling(t, old_tag) else t
                             for t in self.state.recent)
        if recent != self.state.recent:
            await self._save_recent(recent)

        logger.info("%s tag '%s' into '%s' on %d item(s)", "Merged" if merged else "Renamed",
                    old_tag, target, len(affected))
        return RenameResult(old_name=old_tag, new_name=target, changed=True, merged=merged, affected=len(affected))

    async def delete_tag(self, tag: str) -> int:
        """Removes `tag` from every item and from the vocabulary. Returns the pre-deletion usage count."""
        tag = normalize_tag(tag)
        folded = fold(tag)
        affected = [item for item in self.state.ordered_items()
                    if folded in {fold(t) for t in item.free_tags}]
        if self.find(tag) is None and not affected:
            raise TagNotFound(tag)
        count = len(affected)

        updated = [item.model_copy(update={"free_tags": [t for t in item.free_tags if fold(t) != folded]})
                   for item in affected]
        result = await persist_items(self.storage, self.state, updated)
        self._recount(tag)
        if result.failed:
            raise BulkOperationError(f"Deleting tag '{tag}' was incomplete", result.succeeded, result.failed)

        await self._save_vocabulary([t for t in self.state.vocabulary if not self._stale_spelling(t, tag)])
        recent = [t for t in self.state.recent if not self._stale_spelling(t, tag)]
        if recent != self.state.recent:
            await self._save_recent(recent)

        logger.info("Deleted tag '%s' from %d item(s)", tag, count)
        return count

    async def delete_unused_tags(self) -> List[str]:
        """Explicitly removes every vocabulary entry no item uses."""
        unused = [t for t in self.state.vocabulary if self.state.count_usage(t) == 0]
        if unused:
            await self._save_vocabulary([t for t in self.state.vocabulary if t not in unused])
        return unused

    def summary(self, sort_by: str = "name") -> List[TagCatalogEntry]:
        recent = set(self.state.recent)
        entries = [TagCatalogEntry(name=t, usage_count=self.state.usage_of(t), recent=t in recent)
                   for t in self.state.vocabulary]
        if sort_by == "count":
            entries.sort(key=lambda e: (-e.usage_count, e.name))
        return entries

    def suggest(self, text: str, limit: int = AUTOCOMPLETE_LIMIT, exclude: Iterable[str] = ()) -> List[str]:
        """Vocabulary entries containing `text` case-insensitively, minus `exclude`."""
        needle = fold(text.strip())
        if not needle:
            return []
        excluded = {fold(t) for t in exclude}
        matches = [t for t in self.state.vocabulary if needle in fold(t) and fold(t) not in excluded]
        return matches[:limit]

    # --- Structured categories ---

    def get_category(self, key: str) -> CategorySchema:
        category = self.state.categories.get(key)
        if category is None:
            raise CategoryNotFound(key)
        return category

    async def add_category(self, label: str, values: Iterable[str], multi: bool = False) -> str:
        label = (label or "").strip()
        if not label:
            raise ValidationError("Category label cannot be empty.")
        cleaned = clean_values(values)
        if not cleaned:
            raise ValidationError("A category needs at least one value.")
        key = derive_category_key(label)
        if key in self.state.categories:
            raise DuplicateCategory(key)

        category = CategorySchema(key=key, label=label, values=cleaned, multi=bool(multi))
        await self.storage.put("categories", category.to_record())
        self.state.categories[key] = category
        return key

    async def edit_category(self, key: str, label: Optional[str] = None, values: Optional[Iterable[str]] = None,
                            multi: Optional[bool] = None) -> CategorySchema:
        """
        Updates a category. Changing the label or the cardinality resets every
        item's answer for the category to the empty value of the new cardinality.
        Removing an allowed value leaves items that already use it untouched.
        """
        category = self.get_category(key)
        new_label = category.label if label is None else label.strip()
        if not new_label:
            raise ValidationError("Category label cannot be empty.")
        new_values = category.values if values is None else clean_values(values)
        if not new_values:
            raise ValidationError("A category needs at least one value.")
        new_multi = category.multi if multi is None else bool(multi)

        updated = CategorySchema(key=key, label=new_label, values=new_values, multi=new_multi)
        if new_label != category.label or new_multi != category.multi:
            affected = [item for item in self.state.ordered_items() if key in item.structured_tags]
            reset = [item.model_copy(update={"structured_tags": {**item.structured_tags, key: updated.empty_value()}})
                     for item in affected]
            result = await persist_items(self.storage, self.state, reset)
            if result.failed:
                raise BulkOperationError(f"Resetting values of category '{key}' was incomplete",
                                         result.succeeded, result.failed)
            logger.info("Reset category '%s' on %d item(s)", key, len(affected))

        await self.storage.put("categories", updated.to_record())
        self.state.categories[key] = updated
        return updated

    async def delete_category(self, key: str) -> int:
        """Removes a category from the schema, from every item and from the active filters."""
        self.get_category(key)
        affected = [item for item in self.state.ordered_items() if key in item.structured_tags]
        stripped = [item.model_copy(update={"structured_tags": {k: v for k, v in item.structured_tags.items() if k != key}})
                    for item in affected]
        result = await persist_items(self.storage, self.state, stripped)
        if result.failed:
            raise BulkOperationError(f"Deleting category '{key}' was incomplete", result.succeeded, result.failed)

        await self.storage.delete("categories", key)
        del self.state.categories[key]
        self.state.search.structured.pop(key, None)
        logger.info("Deleted category '%s' from %d item(s)", key, len(affected))
        return len(affected)
