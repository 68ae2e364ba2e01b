import base64
import io
import re
from datetime import datetime, timezone
from typing import Iterable, List, Tuple

from PIL import Image as PILImage, UnidentifiedImageError

from .errors import ValidationError

THUMBNAIL_SIZE = (300, 300)
THUMBNAIL_QUALITY = 80

_WHITESPACE_RE = re.compile(r"\s+")

# --- Helper Functions ---

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def normalize_tag(raw: str) -> str:
    """Trims a tag and collapses runs of internal whitespace to a single space."""
    return _WHITESPACE_RE.sub(" ", (raw or "").strip())

def fold(tag: str) -> str:
    """The comparison form used wherever tags match case-insensitively."""
    return tag.casefold()

def dedupe_tags(tags: Iterable[str]) -> List[str]:
    """
    Drops empty entries and case-insensitive duplicates while keeping the
    first spelling and the original order.
    """
    seen = set()
    result = []
    for tag in tags:
        if not tag:
            continue
        folded = fold(tag)
        if folded in seen:
            continue
        seen.add(folded)
        result.append(tag)
    return result

def derive_category_key(label: str) -> str:
    """
    Builds the immutable key of a structured category from its label.
    'Season Worn' results in 'season_worn'.
    """
    return _WHITESPACE_RE.sub("_", (label or "").strip().casefold())

def clean_values(values: Iterable[str]) -> List[str]:
    """Trims allowed category values, removing blanks and exact duplicates."""
    result = []
    for value in values or []:
        value = (value or "").strip()
        if value and value not in result:
            result.append(value)
    return result

def to_data_uri(data: bytes, content_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"

def create_thumbnail(data: bytes, size: Tuple[int, int] = THUMBNAIL_SIZE, quality: int = THUMBNAIL_QUALITY) -> str:
    """
    Creates a JPEG thumbnail for an encoded image, preserving aspect ratio,
    and returns it as a data URI. Images smaller than `size` are not upscaled.
    """
    try:
        with PILImage.open(io.BytesIO(data)) as img:
            # Convert to RGB to avoid issues with paletted images (like GIFs) or PNGs with alpha
            img = img.convert("RGB")
            img.thumbnail(size)
            buffer = io.BytesIO()
            img.save(buffer, "JPEG", quality=quality)
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Could not create thumbnail. Reason: {e}") from e
    return to_data_uri(buffer.getvalue(), "image/jpeg")
