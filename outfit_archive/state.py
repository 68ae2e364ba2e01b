from collections import Counter
from typing import Dict, List

from .models import CategorySchema, MediaItem, SearchState
from .utils import fold


class CatalogState:
    """
    The in-memory snapshot of the catalog, owned by one `Archive`.

    Only the Tag Index and the Media Catalog write to it, and only after the
    corresponding storage write succeeded, so it always mirrors storage.
    """

    def __init__(self):
        # Insertion order is the collection order used as the sort tie-break.
        self.items: Dict[int, MediaItem] = {}
        self.vocabulary: List[str] = []
        # Usage counts keyed by the case-folded tag.
        self.usage: Counter = Counter()
        self.recent: List[str] = []
        self.categories: Dict[str, CategorySchema] = {}
        self.search = SearchState()

    def ordered_items(self) -> List[MediaItem]:
        return list(self.items.values())

    def usage_of(self, tag: str) -> int:
        return self.usage.get(fold(tag), 0)

    def count_usage(self, tag: str) -> int:
        """Counts the items carrying `tag` by scanning them, ignoring the cached index."""
        folded = fold(tag)
        return sum(1 for item in self.items.values() if folded in {fold(t) for t in item.free_tags})

    def recount(self) -> None:
        self.usage = Counter(fold(tag) for item in self.items.values() for tag in item.free_tags)

    def apply_tag_diff(self, before: List[str], after: List[str]) -> None:
        removed = {fold(t) for t in before} - {fold(t) for t in after}
        added = {fold(t) for t in after} - {fold(t) for t in before}
        for tag in removed:
            self.usage[tag] -= 1
            if self.usage[tag] <= 0:
                del self.usage[tag]
        for tag in added:
            self.usage[tag] += 1

    def reset(self) -> None:
        self.__init__()
