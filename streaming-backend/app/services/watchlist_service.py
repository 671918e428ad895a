# backend/app/services/watchlist_service.py

import logging
from typing import List, Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError
from bson import ObjectId

from app.data_access.mongo_client import AUTHENTICATED_USERS, UserRepository
from app.utils.helpers import SORRY_IMAGE, encode_title, get_full_image_url, utc_now
from app.utils.validation import (
    WatchlistValidationError,
    validate_collaborators,
    validate_object_id,
    validate_playlist_data,
    validate_watchlist_item,
)

logger = logging.getLogger(__name__)

WATCHLIST = "Watchlist"
PLAYLISTS = "Playlists"
PLAYLIST_VISIBILITY = "PlaylistVisibility"
DEFAULT_PLAYLIST_NAME = "My Watchlist"
EDIT_PERMISSIONS = ("edit", "admin")
FAR_FUTURE_DATE = "9999-12-31"
MAX_APP_TITLE_LENGTH = 100


class ItemAlreadyExistsError(Exception):
    pass


class PlaylistNotFoundError(Exception):
    pass


class PlaylistPermissionError(Exception):
    pass


class DefaultPlaylistError(Exception):
    """Operation not allowed on a user's default playlist."""
    pass


def _oid(value: Any, field_name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    validate_object_id(value, field_name)
    return ObjectId(value)


def _stringify_playlist(playlist: Dict[str, Any]) -> Dict[str, Any]:
    result = {k: v for k, v in playlist.items() if k != "_id"}
    result["id"] = str(playlist["_id"])
    result["ownerId"] = str(playlist["ownerId"])
    result["collaborators"] = [
        {**c, "userId": str(c.get("userId"))} for c in playlist.get("collaborators") or []
    ]
    return result


def normalize_visibility_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keeps the well-formed visibility fields: showInApp, appOrder >= 0, appTitle <= 100, hideUnavailable."""
    payload = payload or {}
    normalized: Dict[str, Any] = {}
    if isinstance(payload.get("showInApp"), bool):
        normalized["showInApp"] = payload["showInApp"]
    if payload.get("appOrder") is not None:
        try:
            order = int(payload["appOrder"])
            if order >= 0:
                normalized["appOrder"] = order
        except (TypeError, ValueError):
            pass
    if "appTitle" in payload:
        title = payload["appTitle"]
        if title is None:
            normalized["appTitle"] = None
        elif isinstance(title, str) and len(title.strip()) <= MAX_APP_TITLE_LENGTH:
            normalized["appTitle"] = title.strip()
    if isinstance(payload.get("hideUnavailable"), bool):
        normalized["hideUnavailable"] = payload["hideUnavailable"]
    return normalized


def _visibility_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "userId": str(doc["userId"]),
        "playlistId": str(doc["playlistId"]),
        "showInApp": bool(doc.get("showInApp")),
        "appOrder": doc.get("appOrder") if isinstance(doc.get("appOrder"), int) else 0,
        "appTitle": doc.get("appTitle"),
        "hideUnavailable": bool(doc.get("hideUnavailable")),
        "dateCreated": doc.get("dateCreated"),
        "dateUpdated": doc.get("dateUpdated"),
    }


def _resolved_media_view(doc: Dict[str, Any], media_type: str) -> Dict[str, Any]:
    metadata = doc.get("metadata") or {}
    title = doc.get("title")
    return {
        "tmdbId": metadata.get("id"),
        "mediaType": media_type,
        "currentMediaId": str(doc["_id"]),
        "title": title,
        "posterURL": doc.get("posterURL") or get_full_image_url(metadata.get("poster_path"), "w500") or SORRY_IMAGE,
        "posterBlurhash": doc.get("posterBlurhash"),
        "backdropURL": doc.get("backdrop") or get_full_image_url(metadata.get("backdrop_path"), "original"),
        "backdropBlurhash": doc.get("backdropBlurhash"),
        "overview": metadata.get("overview"),
        "releaseDate": metadata.get("release_date") if media_type == "movie" else metadata.get("first_air_date"),
        "genres": metadata.get("genres") or [],
        "voteAverage": metadata.get("vote_average"),
        "isInternal": True,
        "url": f"/list/{media_type}/{encode_title(title)}",
        "link": encode_title(title),
    }


def _external_media_view(item: Dict[str, Any]) -> Dict[str, Any]:
    tmdb_data = item.get("tmdbData") or {}
    return {
        "tmdbId": item.get("tmdbId"),
        "mediaType": item.get("mediaType"),
        "currentMediaId": None,
        "title": item.get("title") or "Unknown Title",
        "posterURL": item.get("posterURL") or get_full_image_url(tmdb_data.get("poster_path"), "w500") or SORRY_IMAGE,
        "backdropURL": get_full_image_url(tmdb_data.get("backdrop_path"), "original"),
        "overview": tmdb_data.get("overview"),
        "releaseDate": tmdb_data.get("release_date") or tmdb_data.get("first_air_date"),
        "genres": tmdb_data.get("genres") or [],
        "voteAverage": tmdb_data.get("vote_average"),
        "isInternal": False,
        "isExternal": True,
        "url": None,
        "link": None,
        "tmdbMetadata": tmdb_data,
    }


def _watchlist_entry_view(item: Dict[str, Any], media: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(item["_id"]),
        "watchlistId": str(item["_id"]),
        "userId": str(item["userId"]),
        "playlistId": str(item["playlistId"]),
        "dateAdded": item.get("dateAdded"),
        "notes": item.get("notes"),
        "rating": item.get("rating"),
        **media,
    }


class WatchlistService:
    def __init__(self, media_db: AsyncIOMotorDatabase, users_db: AsyncIOMotorDatabase):
        """
        Watchlist items (Media.Watchlist), playlists (Media.Playlists) and the
        per-user playlist visibility preferences (Users.PlaylistVisibility).

        User ids are stored as ObjectIds and returned as strings.
        """
        self.media_db = media_db
        self.users_db = users_db
        self.watchlist = media_db[WATCHLIST]
        self.playlists = media_db[PLAYLISTS]
        self.visibility = users_db[PLAYLIST_VISIBILITY]
        self.users = UserRepository(users_db)

    # --- Default playlist ---

    async def ensure_default_playlist(self, user_id: str) -> Dict[str, Any]:
        """
        Returns the user's default playlist, creating it when missing.

        Duplicate defaults are merged first: the one with the most items (then
        the oldest) is kept and the others' items are moved onto it.
        """
        owner = _oid(user_id, "userId")
        now = utc_now()
        try:
            defaults = await self.playlists.find({"ownerId": owner, "isDefault": True}).to_list(length=None)
            if len(defaults) > 1:
                defaults.sort(key=lambda p: str(p.get("dateCreated") or ""))
                counts = {
                    p["_id"]: await self.watchlist.count_documents({"userId": owner, "playlistId": p["_id"]})
                    for p in defaults
                }
                defaults.sort(key=lambda p: counts[p["_id"]], reverse=True)
                keeper = defaults[0]
                duplicate_ids = [p["_id"] for p in defaults[1:]]
                await self.watchlist.update_many(
                    {"userId": owner, "playlistId": {"$in": duplicate_ids}},
                    {"$set": {"playlistId": keeper["_id"], "dateUpdated": now}},
                )
                await self.playlists.delete_many({"_id": {"$in": duplicate_ids}})
                logger.warning(f"Merged {len(duplicate_ids)} duplicate default playlists for user {user_id}")

            playlist = await self.playlists.find_one_and_update(
                {"ownerId": owner, "isDefault": True},
                {
                    "$setOnInsert": {
                        "name": DEFAULT_PLAYLIST_NAME,
                        "description": None,
                        "privacy": "private",
                        "collaborators": [],
                        "dateCreated": now,
                        "itemCount": 0,
                        "sortBy": "dateAdded",
                        "sortOrder": "desc",
                        "customOrder": [],
                    },
                    "$set": {"dateUpdated": now},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error(f"Database error ensuring default playlist for user {user_id}: {e}", exc_info=True)
            raise
        return _stringify_playlist(playlist)

    async def _resolve_playlist_id(self, user_id: str, playlist_id: Optional[str]) -> ObjectId:
        if not playlist_id or playlist_id == "default":
            default = await self.ensure_default_playlist(user_id)
            return ObjectId(default["id"])
        return _oid(playlist_id, "playlistId")

    # --- Media resolution ---

    async def find_tmdb_id_by_media_id(self, media_id: str, media_type: str) -> Optional[int]:
        if not media_id or not ObjectId.is_valid(str(media_id)):
            return None
        collection = "FlatMovies" if media_type == "movie" else "FlatTVShows"
        media = await self.media_db[collection].find_one({"_id": ObjectId(str(media_id))}, {"metadata.id": 1})
        return ((media or {}).get("metadata") or {}).get("id")

    async def resolve_media(self, items: List[Dict[str, Any]]) -> Dict[tuple, Dict[str, Any]]:
        """Looks items up in the flat collections by TMDB id; keys are ``(mediaType, tmdbId)``."""
        resolved: Dict[tuple, Dict[str, Any]] = {}
        for media_type, collection in (("movie", "FlatMovies"), ("tv", "FlatTVShows")):
            tmdb_ids = list({int(i["tmdbId"]) for i in items if i.get("mediaType") == media_type and i.get("tmdbId")})
            if not tmdb_ids:
                continue
            docs = await self.media_db[collection].find({"metadata.id": {"$in": tmdb_ids}}).to_list(length=None)
            for doc in docs:
                tmdb_id = (doc.get("metadata") or {}).get("id")
                if tmdb_id:
                    resolved[(media_type, tmdb_id)] = _resolved_media_view(doc, media_type)
        return resolved

    async def _entry_views(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        resolved = await self.resolve_media(items)
        views = []
        for item in items:
            media = resolved.get((item.get("mediaType"), item.get("tmdbId")))
            views.append(_watchlist_entry_view(item, media or _external_media_view(item)))
        return views

    # --- Items ---

    async def get_user_watchlist(
        self,
        user_id: str,
        page: int = 0,
        limit: int = 20,
        media_type: Optional[str] = None,
        playlist_id: Optional[str] = None,
        count_only: bool = False,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
        internal_only: bool = False,
    ) -> Any:
        """
        Lists a playlist's items with their resolved media, 0-based pages.

        ``internal_only`` keeps items available in the library. Sorting by
        dateAdded happens in the query; custom, title and releaseDate orders are
        applied to the page in memory.
        """
        playlist_oid = await self._resolve_playlist_id(user_id, playlist_id)
        query: Dict[str, Any] = {"playlistId": playlist_oid}
        if media_type:
            query["mediaType"] = media_type

        try:
            if internal_only:
                entries = await self.watchlist.find(query, {"tmdbId": 1, "mediaType": 1}).to_list(length=None)
                available = await self.resolve_media(entries)
                available_ids = list({tmdb_id for (_, tmdb_id) in available.keys()})
                if count_only:
                    return len(available_ids)
                query["tmdbId"] = {"$in": available_ids}

            if count_only:
                return await self.watchlist.count_documents(query)

            playlist = await self.playlists.find_one({"_id": playlist_oid}, {"sortBy": 1, "sortOrder": 1, "customOrder": 1})
            final_sort_by = sort_by or (playlist or {}).get("sortBy") or "dateAdded"
            final_sort_order = sort_order or (playlist or {}).get("sortOrder") or "desc"
            direction = ASCENDING if final_sort_by == "dateAdded" and final_sort_order == "asc" else DESCENDING

            items = await self.watchlist.find(query).sort("dateAdded", direction) \
                .skip(page * limit).limit(limit).to_list(length=limit)
        except PyMongoError as e:
            logger.error(f"Database error fetching watchlist for user {user_id}: {e}", exc_info=True)
            raise

        views = await self._entry_views(items)
        reverse = final_sort_order != "asc"
        custom_order = (playlist or {}).get("customOrder") or []
        if final_sort_by == "custom" and custom_order:
            positions = {item_id: index for index, item_id in enumerate(custom_order)}
            views.sort(key=lambda v: positions.get(v["id"], len(positions)))
        elif final_sort_by == "title":
            views.sort(key=lambda v: (v.get("title") or "").lower(), reverse=reverse)
        elif final_sort_by == "releaseDate":
            views.sort(key=lambda v: v.get("releaseDate") or FAR_FUTURE_DATE, reverse=reverse)
        return views

    async def add_to_watchlist(self, user_id: str, item: Dict[str, Any]) -> Dict[str, Any]:
        """
        Adds an item to a playlist (the default playlist when none is given).

        Raises:
            WatchlistValidationError: If the item is malformed.
            ItemAlreadyExistsError: If the playlist already holds this TMDB id.
        """
        validated = validate_watchlist_item(item)
        if not validated.get("tmdbId"):
            validated["tmdbId"] = await self.find_tmdb_id_by_media_id(validated.get("mediaId"), validated["mediaType"])
            if not validated["tmdbId"]:
                raise WatchlistValidationError("TMDB ID and media type are required", "tmdbId")

        owner = _oid(user_id, "userId")
        playlist_oid = await self._resolve_playlist_id(user_id, validated.get("playlistId"))
        now = utc_now()
        try:
            existing = await self.watchlist.find_one(
                {"userId": owner, "playlistId": playlist_oid, "tmdbId": validated["tmdbId"]}
            )
            if existing:
                raise ItemAlreadyExistsError("Item already exists in this playlist")

            doc: Dict[str, Any] = {
                "userId": owner,
                "playlistId": playlist_oid,
                "tmdbId": validated["tmdbId"],
                "mediaType": validated["mediaType"],
                "title": validated["title"],
                "isExternal": bool(validated.get("isExternal")),
                "dateAdded": now,
                "dateUpdated": now,
            }
            if validated.get("mediaId") and ObjectId.is_valid(validated["mediaId"]):
                doc["mediaId"] = ObjectId(validated["mediaId"])
            for key in ("posterURL", "tmdbData"):
                if validated.get(key):
                    doc[key] = validated[key]
            for key in ("notes", "rating"):
                if item.get(key):
                    doc[key] = item[key]

            result = await self.watchlist.insert_one(doc)
            doc["_id"] = result.inserted_id
        except PyMongoError as e:
            logger.error(f"Database error adding to watchlist for user {user_id}: {e}", exc_info=True)
            raise

        logger.info(f"User {user_id} added {doc['mediaType']} {doc['tmdbId']} to playlist {playlist_oid}")
        return (await self._entry_views([doc]))[0]

    async def remove_from_watchlist(self, user_id: str, item_id: str) -> bool:
        result = await self.watchlist.delete_one({"_id": _oid(item_id), "userId": _oid(user_id, "userId")})
        return result.deleted_count > 0

    async def toggle_watchlist(self, user_id: str, item: Dict[str, Any]) -> Dict[str, Any]:
        """Removes the item when it is already in the playlist, otherwise adds it."""
        existing = await self.check_watchlist_status(
            user_id, item.get("mediaId"), item.get("tmdbId"), item.get("playlistId")
        )
        if existing:
            await self.remove_from_watchlist(user_id, existing["id"])
            return {"action": "removed", "item": existing}
        return {"action": "added", "item": await self.add_to_watchlist(user_id, item)}

    async def check_watchlist_status(
        self,
        user_id: str,
        media_id: Optional[str] = None,
        tmdb_id: Any = None,
        playlist_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        query: Dict[str, Any] = {
            "userId": _oid(user_id, "userId"),
            "playlistId": await self._resolve_playlist_id(user_id, playlist_id),
        }
        if tmdb_id:
            try:
                query["tmdbId"] = int(tmdb_id)
            except (TypeError, ValueError):
                return None
        elif media_id and ObjectId.is_valid(str(media_id)):
            query["mediaId"] = ObjectId(str(media_id))
        else:
            return None

        item = await self.watchlist.find_one(query)
        if not item:
            return None
        result = {k: v for k, v in item.items() if k != "_id"}
        result.update({
            "id": str(item["_id"]),
            "userId": str(item["userId"]),
            "playlistId": str(item["playlistId"]),
            "mediaId": str(item["mediaId"]) if item.get("mediaId") else None,
        })
        return result

    async def get_watchlist_stats(self, user_id: str) -> Dict[str, int]:
        owner = _oid(user_id, "userId")
        try:
            total = await self.watchlist.count_documents({"userId": owner})
            movies = await self.watchlist.count_documents({"userId": owner, "mediaType": "movie"})
            shows = await self.watchlist.count_documents({"userId": owner, "mediaType": "tv"})
        except PyMongoError as e:
            logger.error(f"Database error computing watchlist stats for user {user_id}: {e}", exc_info=True)
            raise
        return {"total": total, "movieCount": movies, "tvCount": shows}

    async def bulk_update_watchlist(self, user_id: str, updates: List[Dict[str, Any]]) -> Dict[str, int]:
        """Applies ``[{id, updates: {...}}]`` to the caller's items."""
        owner = _oid(user_id, "userId")
        matched = modified = 0
        for update in updates:
            fields = {k: v for k, v in (update.get("updates") or {}).items() if k not in ("_id", "userId")}
            result = await self.watchlist.update_one(
                {"_id": _oid(update.get("id")), "userId": owner},
                {"$set": {**fields, "dateUpdated": utc_now()}},
            )
            matched += result.matched_count
            modified += result.modified_count
        return {"matchedCount": matched, "modifiedCount": modified}

    async def bulk_remove_from_watchlist(self, user_id: str, item_ids: List[str]) -> int:
        result = await self.watchlist.delete_many({
            "_id": {"$in": [_oid(i) for i in item_ids]},
            "userId": _oid(user_id, "userId"),
        })
        return result.deleted_count

    async def move_items_to_playlist(self, user_id: str, item_ids: List[str], target_playlist_id: Optional[str]) -> int:
        """
        Moves items into another playlist. Items already in the target are
        dropped from the source; moved items get a fresh dateAdded.
        """
        owner = _oid(user_id, "userId")
        target = await self._resolve_playlist_id(user_id, target_playlist_id)
        try:
            items = await self.watchlist.find({
                "_id": {"$in": [_oid(i) for i in item_ids]}, "userId": owner,
            }).to_list(length=None)

            moved = 0
            for item in items:
                if item.get("playlistId") == target:
                    continue
                target_query: Dict[str, Any] = {"userId": owner, "playlistId": target}
                if item.get("tmdbId"):
                    target_query["tmdbId"] = item["tmdbId"]
                elif item.get("mediaId"):
                    target_query["mediaId"] = item["mediaId"]
                else:
                    continue

                if not await self.watchlist.find_one(target_query):
                    now = utc_now()
                    copy = {k: v for k, v in item.items() if k != "_id"}
                    copy.update({"playlistId": target, "dateAdded": now, "dateUpdated": now})
                    await self.watchlist.insert_one(copy)
                await self.watchlist.delete_one({"_id": item["_id"]})
                moved += 1
        except PyMongoError as e:
            logger.error(f"Database error moving items for user {user_id}: {e}", exc_info=True)
            raise
        logger.info(f"Moved {moved} items to playlist {target} for user {user_id}")
        return moved

    # --- Playlists ---

    async def create_playlist(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        validated = validate_playlist_data(data)
        now = utc_now()
        playlist = {
            **validated,
            "isDefault": False,
            "ownerId": _oid(user_id, "userId"),
            "collaborators": [],
            "dateCreated": now,
            "dateUpdated": now,
            "itemCount": 0,
            "sortBy": "dateAdded",
            "sortOrder": "desc",
            "customOrder": [],
        }
        result = await self.playlists.insert_one(playlist)
        playlist["_id"] = result.inserted_id
        logger.info(f"User {user_id} created playlist {result.inserted_id}")
        return _stringify_playlist(playlist)

    async def _decorate_playlists(self, playlists: List[Dict[str, Any]], user: Dict[str, Any]) -> List[Dict[str, Any]]:
        viewer = _oid(user["id"], "userId")
        owner_names: Dict[str, str] = {}
        owner_ids = list({p["ownerId"] for p in playlists})
        if owner_ids:
            owners = await self.users_db[AUTHENTICATED_USERS].find(
                {"_id": {"$in": owner_ids}}, {"name": 1, "email": 1}
            ).to_list(length=None)
            owner_names = {str(o["_id"]): o.get("name") or o.get("email") or "Unknown User" for o in owners}

        decorated = []
        for playlist in playlists:
            item_count = await self.watchlist.count_documents({"playlistId": playlist["_id"]})
            is_owner = playlist["ownerId"] == viewer
            permission = next(
                (c.get("permission") for c in playlist.get("collaborators") or [] if c.get("userId") == viewer),
                None,
            )
            is_collaborator = not is_owner and permission is not None
            view = _stringify_playlist(playlist)
            view.update({
                "ownerName": owner_names.get(str(playlist["ownerId"]), "Unknown User"),
                "itemCount": item_count,
                "isOwner": is_owner,
                "isCollaborator": is_collaborator,
                "isPublic": playlist.get("privacy") == "public" and not is_owner and not is_collaborator,
                "canEdit": is_owner or permission in EDIT_PERMISSIONS or bool(user.get("admin")),
            })
            decorated.append(view)
        return decorated

    async def get_user_playlists(
        self, user: Dict[str, Any], include_shared: bool = True, include_public: bool = True
    ) -> List[Dict[str, Any]]:
        """Own playlists plus, optionally, shared and public ones, most recently updated first."""
        viewer = _oid(user["id"], "userId")
        conditions: List[Dict[str, Any]] = [{"ownerId": viewer}]
        if include_shared:
            conditions.append({"collaborators.userId": viewer})
        if include_public:
            conditions.append({"privacy": "public"})
        try:
            playlists = await self.playlists.find({"$or": conditions}).sort("dateUpdated", DESCENDING).to_list(length=None)
            return await self._decorate_playlists(playlists, user)
        except PyMongoError as e:
            logger.error(f"Database error listing playlists for user {user['id']}: {e}", exc_info=True)
            raise

    async def get_playlist_by_id(self, user: Dict[str, Any], playlist_id: str) -> Dict[str, Any]:
        """
        Raises:
            PlaylistNotFoundError: If the playlist does not exist or is not visible to the user.
        """
        viewer = _oid(user["id"], "userId")
        playlist = await self.playlists.find_one({
            "_id": _oid(playlist_id, "playlistId"),
            "$or": [{"ownerId": viewer}, {"collaborators.userId": viewer}, {"privacy": "public"}],
        })
        if not playlist:
            raise PlaylistNotFoundError(f"Playlist {playlist_id} not found")
        return (await self._decorate_playlists([playlist], user))[0]

    async def _get_editable_playlist(self, user_id: str, playlist_id: str) -> Dict[str, Any]:
        playlist = await self.playlists.find_one({"_id": _oid(playlist_id, "playlistId")})
        if not playlist:
            raise PlaylistNotFoundError(f"Playlist {playlist_id} not found")
        editor = _oid(user_id, "userId")
        if playlist["ownerId"] == editor:
            return playlist
        for collaborator in playlist.get("collaborators") or []:
            if collaborator.get("userId") == editor and collaborator.get("permission") in EDIT_PERMISSIONS:
                return playlist
        raise PlaylistPermissionError("You do not have permission to edit this playlist")

    async def update_playlist(self, user_id: str, playlist_id: str, updates: Dict[str, Any]) -> bool:
        playlist = await self._get_editable_playlist(user_id, playlist_id)
        merged = {
            "name": playlist.get("name"),
            "description": playlist.get("description"),
            "privacy": playlist.get("privacy"),
            **{k: v for k, v in updates.items() if v is not None},
        }
        fields = validate_playlist_data(merged)
        result = await self.playlists.update_one(
            {"_id": playlist["_id"]}, {"$set": {**fields, "dateUpdated": utc_now()}}
        )
        return result.modified_count > 0

    async def update_playlist_sorting(self, user_id: str, playlist_id: str, sort_by: str, sort_order: str) -> bool:
        playlist = await self._get_editable_playlist(user_id, playlist_id)
        result = await self.playlists.update_one(
            {"_id": playlist["_id"]},
            {"$set": {"sortBy": sort_by, "sortOrder": sort_order, "dateUpdated": utc_now()}},
        )
        return result.modified_count > 0

    async def update_playlist_order(self, user_id: str, playlist_id: str, item_ids: List[str]) -> bool:
        """Stores a manual item order and switches the playlist to custom sorting."""
        playlist = await self._get_editable_playlist(user_id, playlist_id)
        result = await self.playlists.update_one(
            {"_id": playlist["_id"]},
            {"$set": {"customOrder": list(item_ids), "sortBy": "custom", "dateUpdated": utc_now()}},
        )
        return result.modified_count > 0

    async def delete_playlist(self, user_id: str, playlist_id: str) -> bool:
        """
        Deletes an owned playlist and moves its items to the default playlist.

        Raises:
            DefaultPlaylistError: For the default playlist.
        """
        owner = _oid(user_id, "userId")
        playlist_oid = _oid(playlist_id, "playlistId")
        playlist = await self.playlists.find_one({"_id": playlist_oid, "ownerId": owner})
        if not playlist:
            return False
        if playlist.get("isDefault"):
            raise DefaultPlaylistError("Cannot delete default playlist")

        result = await self.playlists.delete_one({"_id": playlist_oid, "ownerId": owner})
        if result.deleted_count > 0:
            default = await self.ensure_default_playlist(user_id)
            await self.watchlist.update_many(
                {"userId": owner, "playlistId": playlist_oid},
                {"$set": {"playlistId": ObjectId(default["id"]), "dateUpdated": utc_now()}},
            )
            await self.visibility.delete_many({"playlistId": playlist_oid})
            logger.info(f"User {user_id} deleted playlist {playlist_id}")
        return result.deleted_count > 0

    async def share_playlist(self, user_id: str, playlist_id: str, collaborators: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Adds collaborators by email. Unknown emails are reported back, not added.

        Raises:
            PlaylistNotFoundError: If the caller does not own the playlist.
        """
        requested = validate_collaborators(collaborators)
        owner = _oid(user_id, "userId")
        playlist_oid = _oid(playlist_id, "playlistId")
        if not await self.playlists.find_one({"_id": playlist_oid, "ownerId": owner}):
            raise PlaylistNotFoundError(f"Playlist {playlist_id} not found")

        users = await self.users.find_by_emails([c["email"] for c in requested])
        users_by_email = {u["email"].lower(): u for u in users if u.get("email")}
        now = utc_now()
        to_add = [
            {"userId": users_by_email[c["email"]]["_id"], "email": c["email"], "permission": c["permission"], "dateAdded": now}
            for c in requested if c["email"] in users_by_email
        ]
        not_found = [c["email"] for c in requested if c["email"] not in users_by_email]

        if to_add:
            await self.playlists.update_one(
                {"_id": playlist_oid, "ownerId": owner},
                {"$addToSet": {"collaborators": {"$each": to_add}}, "$set": {"dateUpdated": now}},
            )
        return {"shared": len(to_add), "notFound": not_found}

    # --- App visibility ---

    async def get_playlist_visibility(self, user_id: str, playlist_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.visibility.find_one({
            "userId": _oid(user_id, "userId"), "playlistId": _oid(playlist_id, "playlistId"),
        })
        return _visibility_view(doc) if doc else None

    async def set_playlist_visibility(self, user_id: str, playlist_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Upserts the user's app preferences for a playlist; unspecified fields keep their defaults."""
        user_oid = _oid(user_id, "userId")
        playlist_oid = _oid(playlist_id, "playlistId")
        normalized = normalize_visibility_payload(payload)
        defaults = {"showInApp": False, "appOrder": 0, "appTitle": None, "hideUnavailable": False}
        now = utc_now()
        await self.visibility.update_one(
            {"userId": user_oid, "playlistId": playlist_oid},
            {
                "$setOnInsert": {
                    "dateCreated": now,
                    **{k: v for k, v in defaults.items() if k not in normalized},
                },
                "$set": {**normalized, "dateUpdated": now},
            },
            upsert=True,
        )
        return await self.get_playlist_visibility(user_id, playlist_id)

    async def list_visible_playlists(self, user_id: str) -> List[Dict[str, Any]]:
        docs = await self.visibility.find({"userId": _oid(user_id, "userId"), "showInApp": True}) \
            .sort([("appOrder", ASCENDING), ("dateUpdated", DESCENDING)]).to_list(length=None)
        return [_visibility_view(doc) for doc in docs]
