"""
The query engine: a pure function of the items, the category schema and the
active search state. Three independent passes (structured tags, free tags,
free text) are ANDed together and the survivors are stably sorted by creation
time, so items created at the same instant keep their collection order.
"""

import re
from typing import Dict, Iterable, List

from .models import CategorySchema, FilterMode, MediaItem, SearchState, SortOrder, StructuredValue
from .utils import dedupe_tags, fold

_QUERY_SPLIT_RE = re.compile(r"[\s,]+")


def _flatten(value: StructuredValue) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _filter_values(value: StructuredValue) -> List[str]:
    return [v.strip() for v in _flatten(value) if v and v.strip()]


def matches_structured(item: MediaItem, categories: Dict[str, CategorySchema],
                       filters: Dict[str, StructuredValue]) -> bool:
    for key, raw in filters.items():
        category = categories.get(key)
        # Filters bound to unknown categories are ignored.
        if category is None:
            continue
        wanted = _filter_values(raw)
        if not wanted:
            continue
        if key not in item.structured_tags:
            return False
        # Items saved before a cardinality change may still hold the other shape.
        have = _flatten(item.structured_tags[key])
        if category.multi:
            if not set(have) & set(wanted):
                return False
        elif not any(value in wanted for value in have):
            return False
    return True


def matches_free_tags(item: MediaItem, tags: Iterable[str], mode: FilterMode) -> bool:
    wanted = {fold(t.strip()) for t in tags if t and t.strip()}
    if not wanted:
        return True
    have = {fold(t) for t in item.free_tags}
    if mode == FilterMode.OR:
        return bool(wanted & have)
    return wanted <= have


def matches_text(item: MediaItem, text: str) -> bool:
    terms = [fold(term) for term in (text or "").split()]
    if not terms:
        return True
    haystack = [fold(t) for t in item.free_tags]
    haystack.append(fold(item.memo))
    for value in item.structured_tags.values():
        haystack.extend(fold(v) for v in _flatten(value))
    return all(any(term in field for field in haystack) for term in terms)


def sort_items(items: Iterable[MediaItem], sort: SortOrder = SortOrder.NEWEST) -> List[MediaItem]:
    # sorted() is stable in both directions, reverse included.
    return sorted(items, key=lambda item: item.created_at, reverse=(sort == SortOrder.NEWEST))


def run_query(items: Iterable[MediaItem], categories: Dict[str, CategorySchema],
              search: SearchState) -> List[MediaItem]:
    matched = [
        item for item in items
        if matches_structured(item, categories, search.structured)
        and matches_free_tags(item, search.free_tags, search.mode)
        and matches_text(item, search.text)
    ]
    return sort_items(matched, search.sort)


# --- Search box helpers ---

def parse_search_query(query: str) -> List[str]:
    """Splits a typed tag query on whitespace and commas into lowercase tags."""
    if not query or not query.strip():
        return []
    return [t.lower() for t in _QUERY_SPLIT_RE.split(query.strip()) if t]


def quick_filter_tags(items: Iterable[MediaItem]) -> List[str]:
    """Every free tag present in a result set, sorted, one spelling per tag."""
    return sorted(dedupe_tags(tag for item in items for tag in item.free_tags))


def toggle_tag(tags: List[str], tag: str) -> List[str]:
    folded = fold(tag)
    if any(fold(t) == folded for t in tags):
        return [t for t in tags if fold(t) != folded]
    return tags + [tag]
