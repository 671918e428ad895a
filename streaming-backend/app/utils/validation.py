# backend/app/utils/validation.py

import re
from datetime import datetime
from typing import List, Optional, Dict, Any

VALID_MEDIA_TYPES = ("movie", "tv")
VALID_PRIVACY_SETTINGS = ("private", "shared", "public")
VALID_PERMISSIONS = ("view", "add", "edit", "admin")

MAX_TITLE_LENGTH = 500
MAX_OVERVIEW_LENGTH = 2000
MAX_PLAYLIST_NAME_LENGTH = 100
MAX_PLAYLIST_DESCRIPTION_LENGTH = 500
MAX_COLLABORATORS = 20
MAX_GENRES = 10
MAX_NETWORKS = 5
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
OBJECT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class WatchlistValidationError(ValueError):
    """Invalid watchlist or playlist input. ``field`` names the offending field when known."""
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


def validation_error_response(error: WatchlistValidationError) -> Dict[str, Any]:
    return {"error": "Validation Error", "message": error.message, "field": error.field}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def is_valid_date_string(value: Any) -> bool:
    """True for real calendar dates written as YYYY-MM-DD."""
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def _media_type_error() -> WatchlistValidationError:
    return WatchlistValidationError(f"mediaType must be one of: {', '.join(VALID_MEDIA_TYPES)}", "mediaType")


def validate_watchlist_item(item: Any) -> Dict[str, Any]:
    """
    Validates and normalizes a watchlist item.

    Items need a mediaId (library media) or a tmdbId (external media); items
    with only a tmdbId are external unless ``isExternal`` says otherwise.

    Returns:
        The cleaned item with trimmed strings and an integer tmdbId.

    Raises:
        WatchlistValidationError: On the first invalid field.
    """
    if not isinstance(item, dict) or not item:
        raise WatchlistValidationError("Item data is required")

    validated: Dict[str, Any] = {}
    if not item.get("mediaId") and not item.get("tmdbId"):
        raise WatchlistValidationError("Either mediaId or tmdbId is required")

    if item.get("mediaId"):
        if not _non_empty_string(item["mediaId"]):
            raise WatchlistValidationError("mediaId must be a non-empty string", "mediaId")
        validated["mediaId"] = item["mediaId"].strip()
        validated["isExternal"] = False

    if item.get("tmdbId"):
        tmdb_id = _parse_int(item["tmdbId"])
        if tmdb_id is None or tmdb_id <= 0:
            raise WatchlistValidationError("tmdbId must be a positive integer", "tmdbId")
        validated["tmdbId"] = tmdb_id
        if "mediaId" not in validated:
            validated["isExternal"] = True

    if isinstance(item.get("isExternal"), bool):
        validated["isExternal"] = item["isExternal"]

    if not item.get("mediaType"):
        raise WatchlistValidationError("mediaType is required", "mediaType")
    if item["mediaType"] not in VALID_MEDIA_TYPES:
        raise _media_type_error()
    validated["mediaType"] = item["mediaType"]

    title = item.get("title")
    if not title:
        raise WatchlistValidationError("title is required", "title")
    if not _non_empty_string(title):
        raise WatchlistValidationError("title must be a non-empty string", "title")
    if len(title) > MAX_TITLE_LENGTH:
        raise WatchlistValidationError(f"title must be {MAX_TITLE_LENGTH} characters or less", "title")
    validated["title"] = title.strip()

    if item.get("posterURL"):
        if not _non_empty_string(item["posterURL"]):
            raise WatchlistValidationError("posterURL must be a non-empty string", "posterURL")
        poster_url = item["posterURL"].strip()
        if not (poster_url.startswith("http") or poster_url.startswith("/")):
            raise WatchlistValidationError("posterURL must be a valid URL or path", "posterURL")
        validated["posterURL"] = poster_url

    if item.get("playlistId"):
        if not _non_empty_string(item["playlistId"]):
            raise WatchlistValidationError("playlistId must be a non-empty string", "playlistId")
        validated["playlistId"] = item["playlistId"].strip()

    if validated.get("isExternal") and item.get("tmdbData"):
        validated["tmdbData"] = validate_tmdb_data(item["tmdbData"], validated["mediaType"])

    return validated


def validate_tmdb_data(tmdb_data: Any, media_type: str) -> Dict[str, Any]:
    """Keeps the well-formed subset of TMDB details stored with external items."""
    if not isinstance(tmdb_data, dict):
        return {}

    validated: Dict[str, Any] = {}
    if isinstance(tmdb_data.get("overview"), str) and tmdb_data["overview"]:
        validated["overview"] = tmdb_data["overview"][:MAX_OVERVIEW_LENGTH]
    for key in ("poster_path", "backdrop_path", "original_language"):
        if isinstance(tmdb_data.get(key), str) and tmdb_data[key]:
            validated[key] = tmdb_data[key]
    if isinstance(tmdb_data.get("genres"), list):
        validated["genres"] = tmdb_data["genres"][:MAX_GENRES]

    vote_average = tmdb_data.get("vote_average")
    if _is_number(vote_average) and 0 <= vote_average <= 10:
        validated["vote_average"] = vote_average
    vote_count = tmdb_data.get("vote_count")
    if _is_number(vote_count) and vote_count >= 0:
        validated["vote_count"] = vote_count

    if media_type == "movie" and is_valid_date_string(tmdb_data.get("release_date")):
        validated["release_date"] = tmdb_data["release_date"]

    if media_type == "tv":
        if is_valid_date_string(tmdb_data.get("first_air_date")):
            validated["first_air_date"] = tmdb_data["first_air_date"]
        for key in ("number_of_seasons", "number_of_episodes"):
            if _is_number(tmdb_data.get(key)) and tmdb_data[key] > 0:
                validated[key] = tmdb_data[key]
        if isinstance(tmdb_data.get("status"), str) and tmdb_data["status"]:
            validated["status"] = tmdb_data["status"]
        if isinstance(tmdb_data.get("networks"), list):
            validated["networks"] = tmdb_data["networks"][:MAX_NETWORKS]

    return validated


def validate_watchlist_query(params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Validates list query parameters; page is 0-based and defaults to 0, limit to 20."""
    params = params or {}
    validated: Dict[str, Any] = {}

    if params.get("page") is not None:
        page = _parse_int(params["page"])
        if page is None or page < 0:
            raise WatchlistValidationError("page must be a non-negative integer", "page")
        validated["page"] = page
    else:
        validated["page"] = 0

    if params.get("limit") is not None:
        limit = _parse_int(params["limit"])
        if limit is None or limit < 1 or limit > MAX_PAGE_SIZE:
            raise WatchlistValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", "limit")
        validated["limit"] = limit
    else:
        validated["limit"] = DEFAULT_PAGE_SIZE

    if params.get("mediaType"):
        if params["mediaType"] not in VALID_MEDIA_TYPES:
            raise _media_type_error()
        validated["mediaType"] = params["mediaType"]

    if params.get("playlistId"):
        if not _non_empty_string(params["playlistId"]):
            raise WatchlistValidationError("playlistId must be a non-empty string", "playlistId")
        validated["playlistId"] = params["playlistId"].strip()

    return validated


def validate_playlist_data(playlist: Any) -> Dict[str, Any]:
    if not isinstance(playlist, dict) or not playlist:
        raise WatchlistValidationError("Playlist data is required")

    name = playlist.get("name")
    if not name:
        raise WatchlistValidationError("Playlist name is required", "name")
    if not _non_empty_string(name):
        raise WatchlistValidationError("Playlist name must be a non-empty string", "name")
    if len(name) > MAX_PLAYLIST_NAME_LENGTH:
        raise WatchlistValidationError(
            f"Playlist name must be {MAX_PLAYLIST_NAME_LENGTH} characters or less", "name"
        )
    validated = {"name": name.strip()}

    description = playlist.get("description")
    if description is not None:
        if not isinstance(description, str):
            raise WatchlistValidationError("Playlist description must be a string", "description")
        if len(description) > MAX_PLAYLIST_DESCRIPTION_LENGTH:
            raise WatchlistValidationError(
                f"Playlist description must be {MAX_PLAYLIST_DESCRIPTION_LENGTH} characters or less", "description"
            )
        validated["description"] = description.strip()
    else:
        validated["description"] = ""

    privacy = playlist.get("privacy")
    if privacy is not None:
        if privacy not in VALID_PRIVACY_SETTINGS:
            raise WatchlistValidationError(
                f"Privacy setting must be one of: {', '.join(VALID_PRIVACY_SETTINGS)}", "privacy"
            )
        validated["privacy"] = privacy
    else:
        validated["privacy"] = "private"

    return validated


def validate_collaborators(collaborators: Any) -> List[Dict[str, str]]:
    """Validates share requests; returns ``[{email (lowercased), permission}]``."""
    if not isinstance(collaborators, list):
        raise WatchlistValidationError("Collaborators must be an array")
    if len(collaborators) > MAX_COLLABORATORS:
        raise WatchlistValidationError(f"Maximum {MAX_COLLABORATORS} collaborators allowed")

    validated = []
    for index, collab in enumerate(collaborators, start=1):
        if not isinstance(collab, dict):
            raise WatchlistValidationError(f"Collaborator {index} must be an object")
        email = collab.get("email")
        if not email:
            raise WatchlistValidationError(f"Collaborator {index} email is required")
        if not _non_empty_string(email):
            raise WatchlistValidationError(f"Collaborator {index} email must be a non-empty string")
        if not EMAIL_PATTERN.match(email):
            raise WatchlistValidationError(f"Collaborator {index} email must be valid")
        permission = collab.get("permission")
        if not permission:
            raise WatchlistValidationError(f"Collaborator {index} permission is required")
        if permission not in VALID_PERMISSIONS:
            raise WatchlistValidationError(
                f"Collaborator {index} permission must be one of: {', '.join(VALID_PERMISSIONS)}"
            )
        validated.append({"email": email.strip().lower(), "permission": permission})
    return validated


def validate_object_id(value: Any, field_name: str = "id") -> bool:
    if not value:
        raise WatchlistValidationError(f"{field_name} is required", field_name)
    if not isinstance(value, str):
        raise WatchlistValidationError(f"{field_name} must be a string", field_name)
    if not OBJECT_ID_PATTERN.match(value):
        raise WatchlistValidationError(f"{field_name} must be a valid ObjectId", field_name)
    return True
