# backend/app/services/media_service.py

import logging
import random
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from bson import ObjectId

from app.core.config import settings
from app.data_access.mongo_client import AUTHENTICATED_USERS
from app.data_access.redis_client import CacheRepository
from app.utils.helpers import (
    SORRY_IMAGE,
    encode_title,
    ensure_utc,
    generate_normalized_video_id,
    get_full_image_url,
    serialize_document,
    stringify_id,
    to_millis,
    utc_now,
)

logger = logging.getLogger(__name__)

FLAT_MOVIES = "FlatMovies"
FLAT_TV_SHOWS = "FlatTVShows"
FLAT_SEASONS = "FlatSeasons"
FLAT_EPISODES = "FlatEpisodes"
PLAYBACK_STATUS = "PlaybackStatus"

RECENTLY_ADDED_CAP = 50
RECENTLY_ADDED_TOTAL_CAP = 100
BANNER_SIZE = 8
MEDIA_COUNTS_CACHE_KEY = "media:counts"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

POSTER_PROJECTION = {
    "_id": 1,
    "title": 1,
    "posterURL": 1,
    "posterBlurhash": 1,
    "posterBlurhashSource": 1,
    "backdrop": 1,
    "backdropBlurhash": 1,
    "metadata": 1,
}
MOVIE_POSTER_PROJECTION = {**POSTER_PROJECTION, "hdr": 1, "videoURL": 1, "normalizedVideoId": 1}

SORT_MAPPINGS = {
    "newest": {"field": "metadata.release_date", "order": -1, "tv_field": "metadata.first_air_date"},
    "oldest": {"field": "metadata.release_date", "order": 1, "tv_field": "metadata.first_air_date"},
    "title": {"field": "title", "order": 1},
    "rating": {"field": "metadata.vote_average", "order": -1},
}


class MediaNotFoundError(Exception):
    """Raised when requested media does not exist."""
    pass


class UserNotFoundError(Exception):
    pass


def blurhash_data_uri(blurhash: Optional[str]) -> Optional[str]:
    if not blurhash:
        return None
    return f"data:image/png;base64,{blurhash}"


def _parse_number(value: Any, prefix: str) -> Optional[int]:
    """Parses "Season 2" / "Episode 5" / "2" / 2 into an int."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).replace(prefix, "").strip())
    except ValueError:
        return None


def _collections_for(media_type: str) -> List[Dict[str, str]]:
    collections = []
    if media_type in ("all", "movie"):
        collections.append({"name": FLAT_MOVIES, "type": "movie"})
    if media_type in ("all", "tv"):
        collections.append({"name": FLAT_TV_SHOWS, "type": "tv"})
    return collections


def _poster_with_fallback(item: Dict[str, Any]) -> str:
    return (
        item.get("posterURL")
        or get_full_image_url((item.get("metadata") or {}).get("poster_path"))
        or SORRY_IMAGE
    )


def _backdrop_with_fallback(item: Dict[str, Any]) -> Optional[str]:
    return item.get("backdrop") or get_full_image_url(
        (item.get("metadata") or {}).get("backdrop_path"), "original"
    )


def add_custom_url_to_flat_media(
    items: List[Dict[str, Any]],
    media_type: str,
    preserve_additional: bool = False,
) -> List[Dict[str, Any]]:
    """
    Decorates flat media documents for list views.

    Every item gets a string ``id``, ``url`` (``/list/{type}/{title}``), ``link``,
    ``type`` and ``description``. Posters fall back to the TMDB poster_path and
    then to the placeholder image; TV items with an episode thumbnail show the
    thumbnail instead. ``preserve_additional`` keeps videoURL and duration on movies.
    """
    decorated = []
    for item in items:
        metadata = item.get("metadata") or {}
        title = item.get("title")
        item_type = item.get("type") or media_type

        poster = item.get("posterURL") or get_full_image_url(metadata.get("poster_path")) or SORRY_IMAGE
        if item_type == "tv":
            thumbnail = (item.get("episodeData") or {}).get("thumbnail") or item.get("thumbnail")
            if thumbnail:
                poster = thumbnail

        result = {
            "id": str(item.get("_id") or item.get("id")),
            "title": title,
            "url": f"/list/{item_type}/{encode_title(title)}",
            "link": encode_title(title),
            "type": item_type,
            "posterURL": poster,
            "posterBlurhash": item.get("posterBlurhash"),
            "backdrop": _backdrop_with_fallback(item),
            "backdropBlurhash": item.get("backdropBlurhash"),
            "description": metadata.get("overview"),
            "metadata": metadata,
        }
        for key in ("normalizedVideoId", "hdr", "logo", "isOwned", "mediaLastModified", "episodeData"):
            if key in item:
                result[key] = item[key]
        if preserve_additional and item_type == "movie":
            result["videoURL"] = item.get("videoURL")
            result["duration"] = item.get("duration")
        decorated.append(serialize_document(result))
    return decorated


def merge_collection_with_ownership(
    owned_movies: List[Dict[str, Any]], tmdb_collection: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Marks which parts of a TMDB collection are in the library.

    Owned parts keep the library document and gain ``isOwned``, ``mediaId``,
    ``tmdbId`` and ``tmdbData``; the rest are built from TMDB data with an
    ``id`` of ``tmdb-{id}``. Parts are sorted newest first.
    """
    owned_by_tmdb_id = {}
    for movie in owned_movies:
        tmdb_id = (movie.get("metadata") or {}).get("id")
        if tmdb_id:
            owned_by_tmdb_id[tmdb_id] = movie

    parts = []
    for tmdb_movie in tmdb_collection.get("parts") or []:
        owned = owned_by_tmdb_id.get(tmdb_movie.get("id"))
        if owned:
            parts.append({
                **owned,
                "isOwned": True,
                "mediaId": owned.get("id") or str(owned.get("_id")),
                "tmdbId": tmdb_movie.get("id"),
                "tmdbData": tmdb_movie,
                "posterURL": owned.get("posterURL") or get_full_image_url(tmdb_movie.get("poster_path")),
                "backdrop": owned.get("backdrop") or get_full_image_url(tmdb_movie.get("backdrop_path"), "original"),
            })
        else:
            parts.append({
                "id": f"tmdb-{tmdb_movie.get('id')}",
                "title": tmdb_movie.get("title"),
                "isOwned": False,
                "mediaId": None,
                "tmdbId": tmdb_movie.get("id"),
                "tmdbData": tmdb_movie,
                "metadata": {
                    "id": tmdb_movie.get("id"),
                    "overview": tmdb_movie.get("overview"),
                    "release_date": tmdb_movie.get("release_date"),
                    "genres": tmdb_movie.get("genres") or [],
                    "vote_average": tmdb_movie.get("vote_average"),
                    "vote_count": tmdb_movie.get("vote_count"),
                },
                "posterURL": get_full_image_url(tmdb_movie.get("poster_path")),
                "backdrop": get_full_image_url(tmdb_movie.get("backdrop_path"), "original"),
                "type": "movie",
            })

    def release_date(part: Dict[str, Any]) -> str:
        return (part.get("metadata") or {}).get("release_date") or (part.get("tmdbData") or {}).get("release_date") or ""

    parts.sort(key=release_date, reverse=True)
    owned_count = sum(1 for part in parts if part["isOwned"])
    total = len(parts)
    return {
        **tmdb_collection,
        "parts": parts,
        "ownershipStats": {
            "owned": owned_count,
            "total": total,
            "percentage": round(owned_count / total * 100) if total else 0,
        },
    }


def augment_items_with_watch_history(
    items: List[Dict[str, Any]], lookup: Dict[str, Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Attaches ``watchHistory`` to each item, matching by normalizedVideoId then video URL."""
    augmented = []
    for item in items:
        watch = None
        video_url = item.get("videoURL")
        episode_url = (item.get("episode") or {}).get("videoURL")
        if item.get("normalizedVideoId") and item["normalizedVideoId"] in lookup:
            watch = lookup[item["normalizedVideoId"]]
        elif video_url and video_url in lookup:
            watch = lookup[video_url]
        elif item.get("type") == "tv" and episode_url and episode_url in lookup:
            watch = lookup[episode_url]
        elif video_url and not item.get("normalizedVideoId"):
            watch = lookup.get(generate_normalized_video_id(video_url))

        if watch is None:
            watch = {"playbackTime": 0, "lastWatched": None, "isWatched": False, "normalizedVideoId": None}
        augmented.append({**item, "watchHistory": dict(watch)})
    return augmented


class MediaService:
    def __init__(
        self,
        media_db: AsyncIOMotorDatabase,
        users_db: Optional[AsyncIOMotorDatabase] = None,
        cache: Optional[CacheRepository] = None,
    ):
        """
        Read and aggregation layer over the flat media collections.

        Args:
            media_db: The Media database (FlatMovies, FlatTVShows, FlatSeasons,
                FlatEpisodes, PlaybackStatus).
            users_db: The Users database, used to confirm users exist.
            cache: Optional Redis cache for expensive statistics.
        """
        self.db = media_db
        self.users_db = users_db
        self.cache = cache

    # --- Posters and lists ---

    async def get_flat_posters(
        self, media_type: str = "movie", count_only: bool = False, page: int = 0, limit: int = 0
    ) -> Any:
        """
        Returns poster cards for movies or TV shows.

        ``page`` is 0-based; ``limit`` of 0 returns everything.
        """
        collection_name = FLAT_MOVIES if media_type == "movie" else FLAT_TV_SHOWS
        collection = self.db[collection_name]
        try:
            if count_only:
                return await collection.count_documents({})

            projection = MOVIE_POSTER_PROJECTION if media_type == "movie" else POSTER_PROJECTION
            cursor = collection.find({}, projection)
            if limit > 0:
                cursor = cursor.skip(page * limit).limit(limit)
            docs = await cursor.to_list(length=None)
        except PyMongoError as e:
            logger.error(f"Database error fetching {media_type} posters: {e}", exc_info=True)
            raise

        posters = []
        for doc in docs:
            poster = stringify_id(doc)
            poster["posterURL"] = _poster_with_fallback(doc)
            poster["link"] = encode_title(doc.get("title"))
            poster["type"] = media_type
            posters.append(serialize_document(poster))
        logger.debug(f"Fetched {len(posters)} {media_type} posters (page {page}, limit {limit})")
        return posters

    # --- Single media lookups ---

    async def find_tv_show_by_title_or_original(self, title: str) -> Optional[Dict[str, Any]]:
        show = await self.db[FLAT_TV_SHOWS].find_one({"title": title})
        if show:
            return show
        show = await self.db[FLAT_TV_SHOWS].find_one({"originalTitle": title})
        if show:
            show["foundByOriginalTitle"] = True
        return show

    async def get_flat_requested_media(
        self,
        media_type: str,
        title: Optional[str] = None,
        season: Any = None,
        episode: Any = None,
        media_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Resolves a movie, TV show, season or episode view.

        Returns None when the media (or any part of the season/episode path)
        does not exist.
        """
        if not title and not media_id:
            return None
        if media_id and not title and not ObjectId.is_valid(media_id):
            logger.warning(f"Invalid media ID format: {media_id}")
            return None
        try:
            if media_type == "movie":
                return await self._get_movie(title, media_id)
            if media_type == "tv":
                return await self._get_tv(title, season, episode, media_id)
            return None
        except PyMongoError as e:
            logger.error(f"Database error resolving {media_type} '{title or media_id}': {e}", exc_info=True)
            raise

    async def _get_movie(self, title: Optional[str], media_id: Optional[str]) -> Optional[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if title:
            query["title"] = title
        if media_id:
            query["_id"] = ObjectId(media_id)
        movie = await self.db[FLAT_MOVIES].find_one(query)
        if not movie:
            return None
        result = stringify_id(movie)
        result["type"] = "movie"
        cast = (movie.get("metadata") or {}).get("cast")
        if cast:
            result["cast"] = cast
        return serialize_document(result)

    async def _get_tv(self, title, season, episode, media_id) -> Optional[Dict[str, Any]]:
        if title:
            show = await self.find_tv_show_by_title_or_original(title)
        else:
            show = await self.db[FLAT_TV_SHOWS].find_one({"_id": ObjectId(media_id)})
        if not show:
            return None
        found_by_original = show.pop("foundByOriginalTitle", False)

        if season is None:
            result = await self._build_show_view(show)
        else:
            season_number = _parse_number(season, "Season")
            if season_number is None:
                return None
            season_doc = await self.db[FLAT_SEASONS].find_one({"showId": show["_id"], "seasonNumber": season_number})
            if not season_doc:
                return None
            if episode is None:
                result = self._build_season_view(show, season_doc)
            else:
                episode_number = _parse_number(episode, "Episode")
                if episode_number is None:
                    return None
                result = await self._build_episode_view(show, season_doc, episode_number)
                if result is None:
                    return None

        if found_by_original:
            result["foundByOriginalTitle"] = True
        return serialize_document(result)

    async def _build_show_view(self, show: Dict[str, Any]) -> Dict[str, Any]:
        seasons = await self.db[FLAT_SEASONS].find({"showId": show["_id"]}).sort("seasonNumber", ASCENDING).to_list(length=None)
        result = stringify_id(show)
        result["type"] = "tv"
        result["seasons"] = [stringify_id(s) for s in seasons]

        main_cast = (show.get("metadata") or {}).get("cast")
        if main_cast:
            episodes = await self.db[FLAT_EPISODES].find(
                {"showId": show["_id"], "metadata.guest_stars": {"$exists": True, "$ne": []}},
                {"metadata.guest_stars": 1},
            ).to_list(length=None)
            cast_by_id: Dict[Any, Dict[str, Any]] = {}
            for member in main_cast:
                cast_by_id.setdefault(member.get("id"), member)
            for ep in episodes:
                for member in (ep.get("metadata") or {}).get("guest_stars") or []:
                    cast_by_id.setdefault(member.get("id"), member)
            result["cast"] = list(cast_by_id.values())
        return result

    def _build_season_view(self, show: Dict[str, Any], season_doc: Dict[str, Any]) -> Dict[str, Any]:
        show_meta = show.get("metadata") or {}
        result = stringify_id(season_doc)
        result.update({
            "showId": str(season_doc.get("showId")),
            "title": show.get("title"),
            "originalTitle": show.get("originalTitle"),
            "type": "tv",
            "metadata": {
                **(season_doc.get("metadata") or {}),
                "tvOverview": show_meta.get("overview"),
                "trailer_url": show_meta.get("trailer_url"),
            },
            "posterURL": season_doc.get("posterURL") or show.get("posterURL") or get_full_image_url(show_meta.get("poster_path")),
        })
        return result

    async def _build_episode_view(
        self, show: Dict[str, Any], season_doc: Dict[str, Any], episode_number: int
    ) -> Optional[Dict[str, Any]]:
        episodes = self.db[FLAT_EPISODES]
        episode_doc = await episodes.find_one({
            "showId": show["_id"], "seasonId": season_doc["_id"], "episodeNumber": episode_number,
        })
        if not episode_doc:
            return None
        next_episode = await episodes.find_one(
            {"showId": show["_id"], "seasonId": season_doc["_id"], "episodeNumber": {"$gt": episode_number}},
            sort=[("episodeNumber", ASCENDING)],
        )

        show_meta = show.get("metadata") or {}
        episode_meta = episode_doc.get("metadata") or {}
        show_poster = show.get("posterURL") or get_full_image_url(show_meta.get("poster_path"))
        thumbnail = episode_doc.get("thumbnail")

        result = stringify_id(episode_doc)
        result.update({
            "showId": str(episode_doc.get("showId")),
            "showTitle": show.get("title"),
            "showMediaId": str(show["_id"]),
            "showTmdbId": show_meta.get("id"),
            "seasonId": str(episode_doc.get("seasonId")),
            "originalTitle": show.get("originalTitle"),
            "logo": show.get("logo"),
            "seasonNumber": season_doc.get("seasonNumber"),
            "episodeNumber": episode_number,
            "type": "tv",
            "posterURL": season_doc.get("posterURL") or show_poster,
            "posterBlurhash": season_doc.get("posterBlurhash") or show.get("posterBlurhash"),
            "thumbnail": thumbnail,
            "thumbnailBlurhash": episode_doc.get("thumbnailBlurhash"),
            "backdrop": thumbnail or show.get("backdrop"),
            "backdropBlurhash": episode_doc.get("thumbnailBlurhash") or show.get("backdropBlurhash"),
            "metadata": {
                **episode_meta,
                "backdrop_path": episode_meta.get("backdrop_path") or show_meta.get("backdrop_path"),
                "rating": show_meta.get("rating"),
                "trailer_url": show_meta.get("trailer_url"),
            },
        })

        if next_episode:
            next_thumbnail = (
                next_episode.get("thumbnail")
                or (next_episode.get("metadata") or {}).get("still_path")
                or season_doc.get("posterURL")
                or show_poster
            )
            next_blurhash = blurhash_data_uri(next_episode.get("thumbnailBlurhash"))
            if next_blurhash is None:
                if next_thumbnail == show.get("posterURL") and show.get("posterBlurhash"):
                    next_blurhash = blurhash_data_uri(show["posterBlurhash"])
                elif next_thumbnail == season_doc.get("posterURL") and season_doc.get("posterBlurhash"):
                    next_blurhash = blurhash_data_uri(season_doc["posterBlurhash"])
            result.update({
                "hasNextEpisode": True,
                "nextEpisodeThumbnail": next_thumbnail,
                "nextEpisodeTitle": next_episode.get("title") or (next_episode.get("metadata") or {}).get("name"),
                "nextEpisodeNumber": next_episode.get("episodeNumber"),
            })
            if next_blurhash:
                result["nextEpisodeThumbnailBlurhash"] = next_blurhash
        else:
            result["hasNextEpisode"] = False

        main_cast = show_meta.get("cast")
        if main_cast:
            guest_stars = episode_meta.get("guest_stars") or []
            guest_ids = {star.get("id") for star in guest_stars}
            result["cast"] = [member for member in main_cast if member.get("id") not in guest_ids]
            result["guestStars"] = guest_stars
        return result

    async def get_flat_tv_season_with_episodes(
        self, show_title: str, season_number: Any
    ) -> Optional[Dict[str, Any]]:
        """Season view plus its episodes ordered by episode number."""
        show = await self.get_flat_requested_media("tv", title=show_title)
        if not show:
            return None
        number = _parse_number(season_number, "Season")
        matching = next((s for s in show.get("seasons", []) if s.get("seasonNumber") == number), None)
        if not matching:
            return None

        season = await self.get_flat_requested_media("tv", title=show["title"], season=number)
        if not season:
            return None
        try:
            episodes = await self.db[FLAT_EPISODES].find(
                {"seasonId": ObjectId(matching["id"])}
            ).sort("episodeNumber", ASCENDING).to_list(length=None)
        except PyMongoError as e:
            logger.error(f"Database error fetching episodes for '{show_title}' season {number}: {e}", exc_info=True)
            raise
        season["episodes"] = [serialize_document(stringify_id(ep)) for ep in episodes]
        season["showTitle"] = show["title"]
        return season

    # --- Recently watched ---

    async def _require_user(self, user_id: str) -> ObjectId:
        if not ObjectId.is_valid(str(user_id)):
            raise UserNotFoundError(f"Invalid user ID: {user_id}")
        user_oid = ObjectId(str(user_id))
        if self.users_db is not None:
            user = await self.users_db[AUTHENTICATED_USERS].find_one({"_id": user_oid}, {"_id": 1})
            if not user:
                raise UserNotFoundError(f"User {user_id} not found")
        return user_oid

    async def get_flat_recently_watched_for_user(
        self, user_id: str, page: int = 0, limit: int = 15, count_only: bool = False
    ) -> Any:
        """
        Returns the user's watched movies and episodes, newest first.

        Raises:
            UserNotFoundError: If the user does not exist.
            PyMongoError: If a database error occurs.
        """
        user_oid = await self._require_user(user_id)
        try:
            playback = await self.db[PLAYBACK_STATUS].find_one({"userId": user_oid})
        except PyMongoError as e:
            logger.error(f"Database error fetching playback for user {user_id}: {e}", exc_info=True)
            raise

        videos = [v for v in (playback or {}).get("videosWatched") or [] if v.get("isValid") is True]
        if count_only:
            return len(videos)

        videos.sort(key=lambda v: v.get("videoId") or "")
        videos.sort(key=lambda v: ensure_utc(v.get("lastUpdated")) or EPOCH, reverse=True)
        page_videos = videos[page * limit:(page + 1) * limit]
        if not page_videos:
            return []

        normalized_ids = [v.get("normalizedVideoId") or generate_normalized_video_id(v.get("videoId")) for v in page_videos]
        video_urls = [v.get("videoId") for v in page_videos if v.get("videoId")]
        match = {"$or": [{"normalizedVideoId": {"$in": normalized_ids}}, {"videoURL": {"$in": video_urls}}]}

        try:
            movies = await self.db[FLAT_MOVIES].find(match).to_list(length=None)
            episodes = await self.db[FLAT_EPISODES].find(match).to_list(length=None)
            season_ids = list({ep["seasonId"] for ep in episodes if ep.get("seasonId")})
            show_ids = list({ep["showId"] for ep in episodes if ep.get("showId")})
            seasons = await self.db[FLAT_SEASONS].find({"_id": {"$in": season_ids}}).to_list(length=None) if season_ids else []
            shows = await self.db[FLAT_TV_SHOWS].find({"_id": {"$in": show_ids}}).to_list(length=None) if show_ids else []
        except PyMongoError as e:
            logger.error(f"Database error resolving recently watched for user {user_id}: {e}", exc_info=True)
            raise

        seasons_by_id = {s["_id"]: s for s in seasons}
        shows_by_id = {s["_id"]: s for s in shows}

        results = []
        for video, normalized_id in zip(page_videos, normalized_ids):
            video_url = video.get("videoId")
            movie = next(
                (m for m in movies if m.get("normalizedVideoId") == normalized_id or m.get("videoURL") == video_url),
                None,
            )
            if movie:
                results.append(self._sanitize_watched_movie(movie, video))
                continue
            episode = next(
                (e for e in episodes if e.get("normalizedVideoId") == normalized_id or e.get("videoURL") == video_url),
                None,
            )
            if episode is None:
                logger.debug(f"No media found for watched video {normalized_id}")
                continue
            show = shows_by_id.get(episode.get("showId"))
            season = seasons_by_id.get(episode.get("seasonId"))
            if not show or not season:
                continue
            results.append(self._sanitize_watched_episode(show, season, episode, video))
        return [serialize_document(r) for r in results]

    @staticmethod
    def _watch_info(video: Dict[str, Any]) -> Dict[str, Any]:
        last_updated = ensure_utc(video.get("lastUpdated"))
        return {
            "lastWatchedDate": last_updated.isoformat() if last_updated else None,
            "playbackTime": video.get("playbackTime") or 0,
        }

    def _sanitize_watched_movie(self, movie: Dict[str, Any], video: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": str(movie["_id"]),
            "normalizedVideoId": movie.get("normalizedVideoId"),
            "videoURL": movie.get("videoURL"),
            "link": encode_title(movie.get("title")),
            "duration": movie.get("duration") or 0,
            "posterURL": _poster_with_fallback(movie),
            "posterBlurhash": movie.get("posterBlurhash"),
            "backdrop": _backdrop_with_fallback(movie),
            "backdropBlurhash": movie.get("backdropBlurhash"),
            "title": movie.get("title"),
            "type": "movie",
            "metadata": movie.get("metadata") or {},
            "hdr": movie.get("hdr"),
            **self._watch_info(video),
        }

    def _sanitize_watched_episode(
        self,
        show: Dict[str, Any],
        season: Dict[str, Any],
        episode: Dict[str, Any],
        video: Dict[str, Any],
    ) -> Dict[str, Any]:
        season_number = season.get("seasonNumber") or 0
        episode_number = episode.get("episodeNumber") or 0
        title = show.get("title")
        episode_view = {**stringify_id(episode), "videoURL": video.get("videoId")}
        return {
            "id": str(show["_id"]),
            "showId": str(show["_id"]),
            "showTmdbId": (show.get("metadata") or {}).get("id"),
            "title": title,
            "showTitleFormatted": f"{title} S{season_number:02d}E{episode_number:02d}",
            "seasonNumber": season_number,
            "episodeNumber": episode_number,
            "seasons": [{**stringify_id(season), "episodes": [episode_view]}],
            "episode": episode_view,
            "normalizedVideoId": episode.get("normalizedVideoId"),
            "link": f"{encode_title(title)}/{season_number}/{episode_number}",
            "duration": episode.get("duration") or 0,
            "thumbnail": episode.get("thumbnail"),
            "posterURL": episode.get("thumbnail") or _poster_with_fallback(show),
            "posterBlurhash": episode.get("thumbnailBlurhash") or show.get("posterBlurhash"),
            "backdrop": _backdrop_with_fallback(show),
            "backdropBlurhash": show.get("backdropBlurhash"),
            "logo": show.get("logo"),
            "metadata": show.get("metadata") or {},
            "hdr": episode.get("hdr"),
            "type": "tv",
            **self._watch_info(video),
        }

    # --- Recently added ---

    async def get_flat_recently_added_media(
        self, page: int = 0, limit: int = 15, count_only: bool = False
    ) -> Any:
        """
        Newest movies and the shows with the newest episodes, merged by
        ``mediaLastModified``. ``page`` is 0-based.
        """
        has_modified = {"mediaLastModified": {"$exists": True}}
        try:
            if count_only:
                movie_count = await self.db[FLAT_MOVIES].count_documents(has_modified)
                show_ids = await self.db[FLAT_EPISODES].distinct("showId", has_modified)
                return min(
                    min(movie_count, RECENTLY_ADDED_CAP) + min(len(show_ids), RECENTLY_ADDED_CAP),
                    RECENTLY_ADDED_TOTAL_CAP,
                )

            pool_size = (page + 1) * limit * 2
            movies = await self.db[FLAT_MOVIES].find(has_modified, dict(MOVIE_POSTER_PROJECTION, mediaLastModified=1)) \
                .sort("mediaLastModified", DESCENDING).limit(pool_size).to_list(length=None)

            groups = await self.db[FLAT_EPISODES].aggregate([
                {"$match": has_modified},
                {"$group": {"_id": "$showId", "lastModified": {"$max": "$mediaLastModified"}}},
                {"$sort": {"lastModified": -1}},
                {"$limit": pool_size},
            ]).to_list(length=None)
            last_modified_by_show = {g["_id"]: g["lastModified"] for g in groups if g.get("_id")}
            shows = []
            if last_modified_by_show:
                shows = await self.db[FLAT_TV_SHOWS].find(
                    {"_id": {"$in": list(last_modified_by_show.keys())}}, POSTER_PROJECTION
                ).to_list(length=None)
        except PyMongoError as e:
            logger.error(f"Database error fetching recently added media: {e}", exc_info=True)
            raise

        for movie in movies:
            movie["type"] = "movie"
        for show in shows:
            show["type"] = "tv"
            show["mediaLastModified"] = last_modified_by_show[show["_id"]]

        merged = sorted(movies + shows, key=lambda m: ensure_utc(m.get("mediaLastModified")) or EPOCH, reverse=True)
        page_items = merged[page * limit:(page + 1) * limit]

        results = []
        for item in page_items:
            decorated = add_custom_url_to_flat_media([item], item["type"])[0]
            added = ensure_utc(item.get("mediaLastModified"))
            decorated["addedDate"] = added.isoformat() if added else None
            decorated.pop("mediaLastModified", None)
            results.append(decorated)
        return results

    # --- Banner ---

    async def get_flat_banner_media(self) -> List[Dict[str, Any]]:
        """
        The newest movies by release date, for the home page banner.

        Raises:
            MediaNotFoundError: If there are no movies.
        """
        try:
            movies = await self.db[FLAT_MOVIES].find({}).sort("metadata.release_date", DESCENDING) \
                .limit(BANNER_SIZE).to_list(length=BANNER_SIZE)
        except PyMongoError as e:
            logger.error(f"Database error fetching banner media: {e}", exc_info=True)
            raise
        if not movies:
            raise MediaNotFoundError("No media found")

        banner = []
        for movie in movies:
            item = stringify_id(movie)
            item["type"] = "movie"
            item["backdrop"] = _backdrop_with_fallback(movie)
            banner.append(serialize_document(item))
        return banner

    async def get_flat_random_banner(self) -> Dict[str, Any]:
        collection = random.choice([
            {"name": FLAT_MOVIES, "type": "movie"},
            {"name": FLAT_TV_SHOWS, "type": "tv"},
        ])
        try:
            sample = await self.db[collection["name"]].aggregate([{"$sample": {"size": 1}}]).to_list(length=1)
        except PyMongoError as e:
            logger.error(f"Database error sampling banner media: {e}", exc_info=True)
            raise
        if not sample:
            raise MediaNotFoundError("No media found")
        item = stringify_id(sample[0])
        item["type"] = collection["type"]
        item["backdrop"] = _backdrop_with_fallback(sample[0])
        return serialize_document(item)

    # --- Counts and timestamps ---

    async def _sum_durations(self, collection_name: str) -> Dict[str, int]:
        result = await self.db[collection_name].aggregate([
            {"$group": {"_id": None, "count": {"$sum": 1}, "totalDuration": {"$sum": "$duration"}}},
        ]).to_list(length=1)
        if not result:
            return {"count": 0, "totalDuration": 0}
        return {"count": result[0]["count"], "totalDuration": result[0]["totalDuration"] or 0}

    async def get_flat_movies_count(self) -> Dict[str, int]:
        try:
            return await self._sum_durations(FLAT_MOVIES)
        except PyMongoError as e:
            logger.error(f"Database error counting movies: {e}", exc_info=True)
            return {"count": 0, "totalDuration": 0}

    async def get_flat_tv_count(self) -> Dict[str, int]:
        try:
            episodes = await self._sum_durations(FLAT_EPISODES)
            show_count = await self.db[FLAT_TV_SHOWS].count_documents({})
        except PyMongoError as e:
            logger.error(f"Database error counting TV shows: {e}", exc_info=True)
            return {"count": 0, "episodeCount": 0, "totalDuration": 0}
        return {"count": show_count, "episodeCount": episodes["count"], "totalDuration": episodes["totalDuration"]}

    async def get_media_counts(self) -> Dict[str, int]:
        """Library totals, cached for CACHE_TTL_MEDIA_STATS seconds when Redis is available."""
        if self.cache:
            cached = await self.cache.get(MEDIA_COUNTS_CACHE_KEY)
            if isinstance(cached, dict):
                return cached

        movies = await self.get_flat_movies_count()
        tv = await self.get_flat_tv_count()
        counts = {
            "moviesCount": movies["count"],
            "tvShowsCount": tv["count"],
            "total": movies["count"] + tv["count"],
            "movieHours": round(movies["totalDuration"] / 3.6e6),
            "tvHours": round(tv["totalDuration"] / 3.6e6),
            "totalHours": round((movies["totalDuration"] + tv["totalDuration"]) / 3.6e6),
        }
        if self.cache:
            await self.cache.set(MEDIA_COUNTS_CACHE_KEY, counts, ttl_seconds=settings.CACHE_TTL_MEDIA_STATS)
        return counts

    async def _newest_modified(self, collection_name: str) -> int:
        doc = await self.db[collection_name].find_one(
            {"mediaLastModified": {"$exists": True}}, sort=[("mediaLastModified", DESCENDING)]
        )
        if not doc:
            return 0
        return to_millis(doc.get("mediaLastModified")) or 0

    async def get_last_updated(self, media_type: str) -> int:
        """Newest mediaLastModified (epoch ms) for movies or TV, else the current time."""
        now_ms = to_millis(utc_now())
        try:
            if media_type == "movie":
                newest = await self._newest_modified(FLAT_MOVIES)
            else:
                newest = max(
                    await self._newest_modified(FLAT_TV_SHOWS),
                    await self._newest_modified(FLAT_EPISODES),
                )
        except PyMongoError as e:
            logger.error(f"Database error reading last updated for {media_type}: {e}", exc_info=True)
            return now_ms
        return newest or now_ms

    async def count_unique_viewers_by_normalized_id(self, normalized_video_id: str) -> int:
        try:
            return await self.db[PLAYBACK_STATUS].count_documents({
                "videosWatched": {
                    "$elemMatch": {"normalizedVideoId": normalized_video_id, "isValid": {"$ne": False}}
                }
            })
        except PyMongoError as e:
            logger.error(f"Database error counting viewers for {normalized_video_id}: {e}", exc_info=True)
            return 0

    # --- Genres ---

    async def get_flat_available_genres(
        self, media_type: str = "all", include_counts: bool = True, count_only: bool = False
    ) -> Any:
        collections = _collections_for(media_type)
        genres: Dict[str, Dict[str, Any]] = {}
        try:
            for collection in collections:
                results = await self.db[collection["name"]].aggregate([
                    {"$unwind": "$metadata.genres"},
                    {"$group": {
                        "_id": {"id": "$metadata.genres.id", "name": "$metadata.genres.name"},
                        "count": {"$sum": 1},
                    }},
                ]).to_list(length=None)
                for row in results:
                    name = row["_id"].get("name")
                    if not name:
                        continue
                    entry = genres.setdefault(name, {
                        "id": row["_id"].get("id"),
                        "name": name,
                        "movieCount": 0,
                        "tvShowCount": 0,
                        "totalCount": 0,
                    })
                    if collection["type"] == "movie":
                        entry["movieCount"] += row["count"]
                    else:
                        entry["tvShowCount"] += row["count"]
                    entry["totalCount"] += row["count"]

            if count_only:
                return len(genres)

            available = sorted(genres.values(), key=lambda g: g["name"].lower())
            if not include_counts:
                return [{"id": g["id"], "name": g["name"]} for g in available]

            movie_count = await self.db[FLAT_MOVIES].count_documents({}) if media_type in ("all", "movie") else 0
            tv_count = await self.db[FLAT_TV_SHOWS].count_documents({}) if media_type in ("all", "tv") else 0
        except PyMongoError as e:
            logger.error(f"Database error aggregating genres: {e}", exc_info=True)
            raise

        return {
            "availableGenres": available,
            "totalGenres": len(available),
            "mediaTypeCounts": {"movies": movie_count, "tvShows": tv_count, "total": movie_count + tv_count},
        }

    async def get_flat_genre_statistics(
        self, media_type: str = "all", genres: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        data = await self.get_flat_available_genres(media_type, include_counts=True)
        breakdown = data["availableGenres"]
        if genres:
            breakdown = [g for g in breakdown if g["name"] in genres]
        return {
            "genreBreakdown": breakdown,
            "totalGenres": len(breakdown),
            "mediaTypeCounts": data["mediaTypeCounts"],
            "topGenres": {
                "byTotalContent": sorted(breakdown, key=lambda g: g["totalCount"], reverse=True)[:10],
                "byMovieContent": sorted(breakdown, key=lambda g: g["movieCount"], reverse=True)[:10],
                "byTVContent": sorted(breakdown, key=lambda g: g["tvShowCount"], reverse=True)[:10],
            },
        }

    async def get_flat_content_by_genres(
        self,
        genres: List[str],
        media_type: str = "all",
        page: int = 0,
        limit: int = 30,
        sort_by: str = "newest",
        sort_order: str = "desc",
        preserve_additional: bool = False,
        count_only: bool = False,
    ) -> Any:
        """
        Lists movies and/or shows carrying any of ``genres``.

        Raises:
            ValueError: If ``genres`` is empty.
        """
        if not genres:
            raise ValueError("Genres parameter must be a non-empty array")
        query = {"metadata.genres.name": {"$in": genres}}
        sort_config = SORT_MAPPINGS.get(sort_by, SORT_MAPPINGS["newest"])
        direction = sort_config["order"] * (1 if sort_order == "asc" else -1)

        content: List[Dict[str, Any]] = []
        try:
            if count_only:
                total = 0
                for collection in _collections_for(media_type):
                    total += await self.db[collection["name"]].count_documents(query)
                return total

            if media_type in ("all", "movie"):
                projection = dict(MOVIE_POSTER_PROJECTION, duration=1)
                movies = await self.db[FLAT_MOVIES].find(query, projection) \
                    .sort(sort_config["field"], direction).to_list(length=None)
                content.extend(add_custom_url_to_flat_media(
                    [{**m, "type": "movie"} for m in movies], "movie", preserve_additional
                ))
            if media_type in ("all", "tv"):
                tv_field = sort_config.get("tv_field", sort_config["field"])
                shows = await self.db[FLAT_TV_SHOWS].find(query).sort(tv_field, direction).to_list(length=None)
                content.extend(add_custom_url_to_flat_media(
                    [{**s, "type": "tv"} for s in shows], "tv", preserve_additional
                ))
        except PyMongoError as e:
            logger.error(f"Database error fetching content for genres {genres}: {e}", exc_info=True)
            raise

        if media_type == "all":
            content.sort(key=lambda item: self._genre_sort_value(item, sort_by), reverse=direction < 0)

        page = max(page, 0)
        return {
            "items": content[page * limit:(page + 1) * limit],
            "totalResults": len(content),
            "currentPage": page,
            "totalPages": -(-len(content) // limit),
        }

    @staticmethod
    def _genre_sort_value(item: Dict[str, Any], sort_by: str) -> Any:
        metadata = item.get("metadata") or {}
        if sort_by == "title":
            return (item.get("title") or "").lower()
        if sort_by == "rating":
            return metadata.get("vote_average") or 0
        return metadata.get("release_date") or metadata.get("first_air_date") or ""

    # --- Collections ---

    async def get_flat_movies_by_collection_id(self, collection_id: Any) -> List[Dict[str, Any]]:
        try:
            collection_id = int(collection_id)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid collection ID: {collection_id}")
        try:
            movies = await self.db[FLAT_MOVIES].find(
                {"metadata.belongs_to_collection.id": collection_id}
            ).to_list(length=None)
        except PyMongoError as e:
            logger.error(f"Database error fetching collection {collection_id}: {e}", exc_info=True)
            raise
        return add_custom_url_to_flat_media(
            [{**m, "type": "movie", "isOwned": True} for m in movies], "movie"
        )

    # --- Watch history ---

    async def create_watch_history_lookup(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        """Maps normalizedVideoId and raw videoId to the user's valid watch entries."""
        if not ObjectId.is_valid(str(user_id)):
            return {}
        try:
            playback = await self.db[PLAYBACK_STATUS].find_one({"userId": ObjectId(str(user_id))})
        except PyMongoError as e:
            logger.warning(f"Could not load watch history for user {user_id}: {e}")
            return {}

        lookup: Dict[str, Dict[str, Any]] = {}
        for entry in (playback or {}).get("videosWatched") or []:
            if entry.get("isValid") is False:
                continue
            normalized_id = entry.get("normalizedVideoId") or generate_normalized_video_id(entry.get("videoId"))
            last_watched = ensure_utc(entry.get("lastUpdated"))
            info = {
                "playbackTime": entry.get("playbackTime") or 0,
                "lastWatched": last_watched.isoformat() if last_watched else None,
                "isWatched": True,
                "normalizedVideoId": normalized_id or None,
            }
            if entry.get("mediaType") == "tv" and entry.get("showId"):
                info.update({
                    "showId": str(entry["showId"]),
                    "seasonNumber": entry.get("seasonNumber"),
                    "episodeNumber": entry.get("episodeNumber"),
                })
            if normalized_id:
                lookup[normalized_id] = info
            if entry.get("videoId"):
                lookup[entry["videoId"]] = info
        return lookup

    async def augment_with_watch_history(self, items: List[Dict[str, Any]], user_id: str) -> List[Dict[str, Any]]:
        lookup = await self.create_watch_history_lookup(user_id)
        return augment_items_with_watch_history(items, lookup)
