"""
Pydantic models for the archive.

The export format uses the camelCase field names of the browser-based
catalog (``tags``, ``structuredTags``, ``createdAt``...), so the persisted
and exported records carry aliases while Python code uses snake_case names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import dedupe_tags, normalize_tag

# A single-select category holds one optional value, a multi-select one a list.
StructuredValue = Union[None, str, List[str]]

EXPORT_VERSION = 2


class FilterMode(str, Enum):
    AND = "and"
    OR = "or"


class SortOrder(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"


class MediaItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    thumbnail: str = ""
    original: str = ""
    free_tags: List[str] = Field(default_factory=list, alias="tags")
    structured_tags: Dict[str, StructuredValue] = Field(default_factory=dict, alias="structuredTags")
    memo: str = ""
    created_at: datetime = Field(alias="createdAt")

    @field_validator("free_tags")
    @classmethod
    def _dedupe_free_tags(cls, value: List[str]) -> List[str]:
        return dedupe_tags(normalize_tag(t) for t in value)

    @field_validator("memo", mode="before")
    @classmethod
    def _memo_not_null(cls, value):
        return value or ""

    @field_validator("created_at")
    @classmethod
    def _aware_created_at(cls, value: datetime) -> datetime:
        # Records imported from older exports may carry naive timestamps.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CategorySchema(BaseModel):
    key: str
    label: str
    values: List[str]
    multi: bool = False

    def empty_value(self) -> StructuredValue:
        return [] if self.multi else None

    def to_record(self) -> dict:
        return self.model_dump(mode="json")


class TagCatalogEntry(BaseModel):
    name: str
    usage_count: int = 0
    recent: bool = False


class SearchState(BaseModel):
    """The active filters. An empty value for any pass means "match all" for that pass."""

    free_tags: List[str] = Field(default_factory=list)
    mode: FilterMode = FilterMode.AND
    structured: Dict[str, StructuredValue] = Field(default_factory=dict)
    text: str = ""
    sort: SortOrder = SortOrder.NEWEST


class ItemPatch(BaseModel):
    """A partial update. Fields left as None are not touched."""

    memo: Optional[str] = None
    tags: Optional[List[str]] = None
    structured_tags: Optional[Dict[str, StructuredValue]] = None


class BulkResult(BaseModel):
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class RenameResult(BaseModel):
    old_name: str
    new_name: str
    changed: bool = False
    merged: bool = False
    affected: int = 0


class ExportBundle(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: int = EXPORT_VERSION
    export_date: Optional[datetime] = Field(None, alias="exportDate")
    images: List[MediaItem] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    categories: Dict[str, CategorySchema] = Field(default_factory=dict)
