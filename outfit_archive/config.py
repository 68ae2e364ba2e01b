import os
from enum import Enum

from pydantic import BaseModel

# --- Path Configuration ---
# Data files live in the project root unless OUTFIT_ARCHIVE_HOME points elsewhere.
_PACKAGE_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# --- Constants ---
RECENT_TAGS_LIMIT = 8
AUTOCOMPLETE_LIMIT = 10

# Seeded into an empty vocabulary on first start.
DEFAULT_TAGS = [
    "casual", "dressed-up",
    "cardigan", "dress", "skirt", "pants", "coat", "jacket", "knit",
    "sneakers", "boots", "loafers", "sandals", "bag", "scarf",
    "white", "black", "gray", "beige", "brown", "navy", "blue",
    "green", "olive", "khaki", "red", "pink",
]


class TagMatch(str, Enum):
    """How the vocabulary decides that a new tag already exists."""
    EXACT = "exact"
    CASEFOLD = "casefold"


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    home: str
    database_url: str
    blob_path: str
    tag_match: TagMatch = TagMatch.EXACT
    seed_default_tags: bool = True
    recent_limit: int = RECENT_TAGS_LIMIT

    @classmethod
    def from_env(cls) -> "Settings":
        home = os.path.abspath(os.getenv("OUTFIT_ARCHIVE_HOME") or _PACKAGE_ROOT)
        return cls(
            home=home,
            database_url=os.getenv("OUTFIT_ARCHIVE_DATABASE_URL") or f"sqlite:///{os.path.join(home, 'archive.db')}",
            blob_path=os.getenv("OUTFIT_ARCHIVE_BLOB_PATH") or os.path.join(home, "archive.json"),
            tag_match=TagMatch((os.getenv("OUTFIT_ARCHIVE_TAG_MATCH") or "exact").strip().lower()),
            seed_default_tags=_env_flag("OUTFIT_ARCHIVE_SEED_TAGS", True),
        )
