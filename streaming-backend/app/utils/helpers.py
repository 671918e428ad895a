# backend/app/utils/helpers.py

import hashlib
import logging
import math
import re
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from urllib.parse import quote, unquote, urlparse

from bson import ObjectId

from app.core.config import settings

logger = logging.getLogger(__name__)

SORRY_IMAGE = "/sorry-image-not-available.jpg"

# --- Video identifiers ---

def generate_normalized_video_id(video_url: Optional[str]) -> str:
    """
    Builds the stable identifier used to match playback entries against media,
    independent of URL encoding, host and letter case.

    The URL is decoded (twice, to undo double encoding), reduced to its path
    when it is an absolute URL, lowercased and hashed with SHA-256. The first
    16 hex characters of the digest are returned.

    Args:
        video_url: The raw video URL or path. May be None or empty.

    Returns:
        A 16-character hex string, or "" for empty input.
    """
    if not video_url:
        return ""

    try:
        normalized = unquote(unquote(video_url, errors="strict"), errors="strict")
    except UnicodeDecodeError:
        try:
            normalized = unquote(video_url, errors="strict")
        except UnicodeDecodeError:
            normalized = video_url

    parsed = urlparse(normalized)
    if parsed.scheme and parsed.netloc:
        normalized = parsed.path

    return hashlib.sha256(normalized.lower().encode("utf-8")).hexdigest()[:16]


# --- Images and links ---

def get_full_image_url(path: Optional[str], size: str = "w780") -> Optional[str]:
    """Returns the TMDB image URL for a poster/backdrop path, or None."""
    if not path:
        return None
    return f"{settings.TMDB_IMAGE_BASE_URL}/{size}{path}"


def encode_title(title: Optional[str]) -> str:
    """URL-encodes a title the way links in the media list are built."""
    return quote(title or "", safe="")


# --- Text Processing ---

def escape_regex(text: str) -> str:
    """Escapes user input so it can be embedded in a MongoDB $regex."""
    return re.escape(text)


# --- Time ---

def ensure_utc(dt: Optional[Any]) -> Optional[datetime]:
    """
    Coerces stored timestamps into timezone-aware UTC datetimes.
    Naive datetimes (as returned by PyMongo) are assumed to be UTC and ISO
    strings are parsed. Anything else gives None.
    """
    if dt is None:
        return None
    if isinstance(dt, str):
        try:
            dt = datetime.fromisoformat(dt.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable timestamp string: {dt}")
            return None
    if not isinstance(dt, datetime):
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(dt: Optional[Any]) -> Optional[int]:
    """Converts a datetime to epoch milliseconds."""
    aware = ensure_utc(dt)
    if aware is None:
        return None
    return int(aware.timestamp() * 1000)


# --- Pagination Helpers ---

def calculate_skip(page: int, limit: int, zero_based: bool = False) -> int:
    """
    Calculates the number of documents to skip for pagination.

    Args:
        page: The current page number (1-based unless zero_based is set).
        limit: The number of items per page.
        zero_based: Treat page 0 as the first page.

    Returns:
        The number of documents to skip.

    Raises:
        ValueError: If page or limit are out of range.
    """
    first_page = 0 if zero_based else 1
    if not isinstance(page, int) or page < first_page:
        raise ValueError(f"Page number must be an integer >= {first_page}.")
    if not isinstance(limit, int) or limit < 1:
        raise ValueError("Page limit must be a positive integer.")
    return (page - first_page) * limit


def calculate_total_pages(total_items: int, limit: int) -> int:
    """
    Calculates the total number of pages required.

    Raises:
        ValueError: If limit is not a positive integer.
    """
    if not isinstance(limit, int) or limit < 1:
        raise ValueError("Page limit must be a positive integer.")
    if total_items < 0:
        raise ValueError("Total items cannot be negative.")
    return math.ceil(total_items / limit)


# --- Data Structure Helpers ---

def stringify_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Returns a copy of a Mongo document with `_id` mapped to a string `id`."""
    if doc is None:
        return None
    result = {k: v for k, v in doc.items() if k != "_id"}
    if "_id" in doc:
        result["id"] = str(doc["_id"])
    return result


def serialize_document(value: Any) -> Any:
    """Recursively converts ObjectIds to strings so documents can be returned as JSON."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize_document(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_document(v) for v in value]
    return value
