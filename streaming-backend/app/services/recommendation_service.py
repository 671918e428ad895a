# backend/app/services/recommendation_service.py

import logging
import math
from collections import Counter
from datetime import datetime
from typing import List, Optional, Dict, Tuple, Any, Iterable

import numpy as np
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import PyMongoError
from bson import ObjectId

from app.data_access.redis_client import CacheRepository
from app.services.media_service import (
    FLAT_EPISODES,
    FLAT_MOVIES,
    FLAT_SEASONS,
    FLAT_TV_SHOWS,
    PLAYBACK_STATUS,
    add_custom_url_to_flat_media,
)
from app.utils.helpers import encode_title, ensure_utc, utc_now

logger = logging.getLogger(__name__)

# --- Constants ---
DEFAULT_TOP_N = 30
TOP_GENRE_COUNT = 3
RECENCY_DECAY = 0.1
MAX_WATCH_COUNT = 100
SCORE_THRESHOLD = 0.3
DIVERSITY_RATIO = 0.2
CANDIDATE_POOL_MIN = 100
CANDIDATE_POOL_MAX = 500
USER_REC_CACHE_TTL_SECONDS = 3600  # 1 hour
USER_REC_CACHE_PREFIX = "rec:user:"

# Order matches the columns of the feature matrix built in score_items
SCORE_WEIGHTS = np.array([0.3, 0.2, 0.15, 0.15, 0.1], dtype=np.float64)
NEXT_EPISODE_BOOST = 0.5


class RecommendationServiceError(Exception):
    """Custom exception for recommendation service errors."""
    pass


# --- Scoring ---

def calculate_recency_score(timestamp: Any, decay_factor: float = RECENCY_DECAY, now: Optional[datetime] = None) -> float:
    """Exponential decay over the age in days; 0 without a timestamp."""
    moment = ensure_utc(timestamp)
    if moment is None:
        return 0.0
    age_days = ((now or utc_now()) - moment).total_seconds() / 86400
    return math.exp(-decay_factor * age_days)


def calculate_completion_score(playback_time: Optional[float], total_duration: Optional[float]) -> float:
    if not playback_time or not total_duration or total_duration <= 0:
        return 0.0
    ratio = playback_time / total_duration
    if ratio >= 0.9:
        return 1.0
    if ratio < 0.1:
        return 0.2
    return ratio


def calculate_genre_similarity(user_genres: Iterable[Any], content_genres: Iterable[Any]) -> float:
    """Jaccard index of the two genre sets."""
    user_set = set(user_genres or [])
    content_set = set(content_genres or [])
    if not user_set or not content_set:
        return 0.0
    union = user_set | content_set
    return len(user_set & content_set) / len(union)


def calculate_diversity_score(item_id: Optional[str], recently_watched_ids: Optional[Iterable[str]]) -> float:
    if not item_id or recently_watched_ids is None:
        return 1.0
    return 0.2 if item_id in set(recently_watched_ids) else 1.0


def calculate_popularity_score(watch_count: Optional[int], max_watch_count: int = MAX_WATCH_COUNT) -> float:
    if not watch_count or watch_count <= 0:
        return 0.0
    return min(watch_count / max_watch_count, 1.0)


def calculate_recommendation_score(
    genre_similarity: float = 0.0,
    recency: float = 0.0,
    completion: float = 0.0,
    popularity: float = 0.0,
    diversity: float = 1.0,
    is_next_episode: bool = False,
) -> float:
    features = np.array([genre_similarity, recency, completion, popularity, diversity], dtype=np.float64)
    score = float(features @ SCORE_WEIGHTS)
    if is_next_episode:
        score += NEXT_EPISODE_BOOST
    return min(max(score, 0.0), 1.0)


def genre_keys(metadata: Optional[Dict[str, Any]]) -> List[Any]:
    """Genre identifiers of a TMDB metadata block (id, else name)."""
    keys = []
    for genre in (metadata or {}).get("genres") or []:
        if isinstance(genre, dict):
            key = genre.get("id") or genre.get("name")
        else:
            key = genre
        if key is not None:
            keys.append(key)
    return keys


def score_items(items: List[Dict[str, Any]], preferences: Optional[Dict[str, Any]] = None) -> np.ndarray:
    """
    Scores every item in one pass.

    Builds an ``(n, 5)`` feature matrix of genre similarity, recency,
    completion, popularity and diversity, applies the weights, adds the
    next-episode boost and clips to [0, 1].
    """
    if not items:
        return np.zeros(0, dtype=np.float64)
    preferences = preferences or {}
    user_genres = preferences.get("genres") or []
    recently_watched = set(preferences.get("recentlyWatchedIds") or [])
    now = utc_now()

    features = np.array([
        [
            calculate_genre_similarity(user_genres, genre_keys(item.get("metadata"))),
            calculate_recency_score(item.get("lastUpdated"), now=now),
            calculate_completion_score(item.get("playbackTime"), item.get("duration")),
            calculate_popularity_score(item.get("watchCount")),
            calculate_diversity_score(item.get("id"), recently_watched),
        ]
        for item in items
    ], dtype=np.float64)
    boosts = np.array([NEXT_EPISODE_BOOST if item.get("isNextEpisode") else 0.0 for item in items])
    return np.clip(features @ SCORE_WEIGHTS + boosts, 0.0, 1.0)


def sort_recommendations_by_score(
    items: List[Dict[str, Any]], preferences: Optional[Dict[str, Any]] = None
) -> List[Dict[str, Any]]:
    """Returns copies of the items with a ``score`` field, best first. Ties keep their order."""
    scores = score_items(items, preferences)
    scored = [{**item, "score": round(float(score), 6)} for item, score in zip(items, scores)]
    return sorted(scored, key=lambda item: item["score"], reverse=True)


def add_diversity(
    personalized: List[Dict[str, Any]],
    diverse: List[Dict[str, Any]],
    diversity_ratio: float = DIVERSITY_RATIO,
) -> List[Dict[str, Any]]:
    """
    Replaces the tail of the personalized list with diverse items, then swaps
    each diverse item at position i with position floor(i * 0.7).
    """
    if not personalized:
        return list(diverse or [])
    if not diverse:
        return list(personalized)

    diverse_count = round(len(personalized) * diversity_ratio)
    personalized_count = len(personalized) - diverse_count
    combined = list(personalized[:personalized_count])
    taken = {item.get("uniqueId") for item in combined}
    combined.extend([item for item in diverse if item.get("uniqueId") not in taken][:diverse_count])

    for i in range(personalized_count, len(combined)):
        swap_index = math.floor(i * 0.7)
        if swap_index < i:
            combined[i], combined[swap_index] = combined[swap_index], combined[i]
    return combined


def generate_unique_id(item: Dict[str, Any]) -> str:
    unique_id = f"{item.get('type')}-{item.get('id')}"
    if item.get("type") == "tv" and item.get("seasonNumber") is not None:
        unique_id += f"-s{item['seasonNumber']}e{item.get('episodeNumber')}"
    return unique_id


def remove_duplicates(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for item in items:
        if item["uniqueId"] in seen:
            continue
        seen.add(item["uniqueId"])
        unique.append(item)
    return unique


class RecommendationService:
    def __init__(self, media_db: AsyncIOMotorDatabase, cache: Optional[CacheRepository] = None):
        """
        Initializes the Recommendation Service.

        Args:
            media_db: The Media database (flat media and playback history).
            cache: Optional cache for per-user results.
        """
        self.db = media_db
        self.cache = cache

    # --- Helper Methods ---

    async def _watch_counts(self) -> Counter:
        """Number of users that watched each video URL."""
        counts: Counter = Counter()
        async for row in self.db[PLAYBACK_STATUS].aggregate([
            {"$unwind": "$videosWatched"},
            {"$group": {"_id": "$videosWatched.videoId", "count": {"$sum": 1}}},
        ]):
            if row.get("_id"):
                counts[row["_id"]] = row["count"]
        return counts

    async def _ordered_episodes(self, show_id: ObjectId) -> List[Tuple[int, Dict[str, Any]]]:
        """All episodes of a show as ``(seasonNumber, episode)``, in viewing order."""
        seasons = await self.db[FLAT_SEASONS].find({"showId": show_id}).sort("seasonNumber", ASCENDING).to_list(length=None)
        ordered = []
        for season in seasons:
            episodes = await self.db[FLAT_EPISODES].find({"seasonId": season["_id"]}) \
                .sort("episodeNumber", ASCENDING).to_list(length=None)
            ordered.extend((season.get("seasonNumber") or 0, episode) for episode in episodes)
        return ordered

    @staticmethod
    def find_next_episode(
        ordered_episodes: List[Tuple[int, Dict[str, Any]]], watched_urls: set
    ) -> Optional[Tuple[int, Dict[str, Any]]]:
        """The first unwatched episode after the furthest watched one."""
        last_watched = -1
        for index, (_, episode) in enumerate(ordered_episodes):
            if episode.get("videoURL") in watched_urls:
                last_watched = index
        for season_number, episode in ordered_episodes[last_watched + 1:]:
            if episode.get("videoURL") not in watched_urls:
                return season_number, episode
        return None

    @staticmethod
    def _episode_item(show: Dict[str, Any], season_number: int, episode: Dict[str, Any], **flags) -> Dict[str, Any]:
        item = add_custom_url_to_flat_media([show], "tv")[0]
        episode_number = episode.get("episodeNumber") or 0
        item.update({
            "seasonNumber": season_number,
            "episodeNumber": episode_number,
            "episode": {
                "id": str(episode["_id"]),
                "title": episode.get("title"),
                "videoURL": episode.get("videoURL"),
                "thumbnail": episode.get("thumbnail"),
                "duration": episode.get("duration"),
            },
            "link": f"{encode_title(show.get('title'))}/{season_number}/{episode_number}",
            "mediaId": str(show["_id"]),
            **flags,
        })
        if episode.get("thumbnail"):
            item["posterURL"] = episode["thumbnail"]
        return item

    async def _first_episode_item(self, show: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ordered = await self._ordered_episodes(show["_id"])
        if not ordered:
            return None
        season_number, episode = ordered[0]
        return self._episode_item(show, season_number, episode, isNewShow=True)

    # --- Public API ---

    async def get_random_recommendations(self, limit: int) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        half = max(1, math.ceil(limit / 2))
        movies = await self.db[FLAT_MOVIES].aggregate([{"$sample": {"size": half}}]).to_list(length=half)
        shows = await self.db[FLAT_TV_SHOWS].aggregate([{"$sample": {"size": half}}]).to_list(length=half)
        return (add_custom_url_to_flat_media(movies, "movie") + add_custom_url_to_flat_media(shows, "tv"))[:limit]

    async def get_most_popular_content(self, page: int = 0, limit: int = DEFAULT_TOP_N) -> List[Dict[str, Any]]:
        """Movies and shows ranked by how many users watched them; 0-based pages."""
        try:
            counts = await self._watch_counts()
            if not counts:
                return []
            urls = list(counts.keys())
            movies = await self.db[FLAT_MOVIES].find({"videoURL": {"$in": urls}}).to_list(length=None)
            episodes = await self.db[FLAT_EPISODES].find(
                {"videoURL": {"$in": urls}}, {"showId": 1, "videoURL": 1}
            ).to_list(length=None)
        except PyMongoError as e:
            logger.error(f"Database error computing popular content: {e}", exc_info=True)
            raise RecommendationServiceError("Failed to compute popular content") from e

        show_counts: Counter = Counter()
        for episode in episodes:
            if episode.get("showId"):
                show_counts[episode["showId"]] += counts[episode["videoURL"]]
        shows = await self.db[FLAT_TV_SHOWS].find({"_id": {"$in": list(show_counts.keys())}}).to_list(length=None)

        items = []
        for movie, decorated in zip(movies, add_custom_url_to_flat_media(movies, "movie")):
            items.append({**decorated, "watchCount": counts[movie["videoURL"]]})
        for show, decorated in zip(shows, add_custom_url_to_flat_media(shows, "tv")):
            items.append({**decorated, "watchCount": show_counts[show["_id"]]})
        items.sort(key=lambda item: item["watchCount"], reverse=True)
        return items[page * limit:(page + 1) * limit]

    async def get_genre_based_recommendations(
        self, user_id: str, page: int = 0, limit: int = DEFAULT_TOP_N
    ) -> Dict[str, Any]:
        """
        Recommends unwatched library media in the user's top three genres.

        Next episodes of shows the user has started are included (and boosted).
        When the genre pool is too small it is topped up with random picks.
        Items are scored, sorted, diversified and paginated (0-based).

        Returns:
            ``{"hasWatched": bool, "items": [...], "genres": [...]}``
        """
        if not ObjectId.is_valid(str(user_id)):
            return {"hasWatched": False, "items": [], "genres": []}

        cache_key = f"{USER_REC_CACHE_PREFIX}{user_id}:{page}:{limit}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        try:
            result = await self._build_genre_recommendations(ObjectId(str(user_id)), page, limit)
        except PyMongoError as e:
            logger.error(f"Database error building recommendations for user {user_id}: {e}", exc_info=True)
            raise RecommendationServiceError("Failed to build recommendations") from e

        if self.cache is not None and result["items"]:
            await self.cache.set(cache_key, result, ttl_seconds=USER_REC_CACHE_TTL_SECONDS)
        return result

    async def _build_genre_recommendations(self, user_oid: ObjectId, page: int, limit: int) -> Dict[str, Any]:
        playback = await self.db[PLAYBACK_STATUS].find_one({"userId": user_oid})
        watched = [v for v in (playback or {}).get("videosWatched") or [] if v.get("videoId")]
        if not watched:
            return {"hasWatched": False, "items": [], "genres": []}

        watched_urls = {v["videoId"] for v in watched}
        watched_movies = await self.db[FLAT_MOVIES].find({"videoURL": {"$in": list(watched_urls)}}).to_list(length=None)
        watched_episodes = await self.db[FLAT_EPISODES].find(
            {"videoURL": {"$in": list(watched_urls)}}, {"showId": 1}
        ).to_list(length=None)
        show_ids = list({ep["showId"] for ep in watched_episodes if ep.get("showId")})
        watched_shows = await self.db[FLAT_TV_SHOWS].find({"_id": {"$in": show_ids}}).to_list(length=None)
        if not watched_movies and not watched_shows:
            return {"hasWatched": False, "items": [], "genres": []}

        genre_counts = Counter()
        for doc in watched_movies + watched_shows:
            genre_counts.update(genre_keys(doc.get("metadata")))
        if not genre_counts:
            return {"hasWatched": True, "items": [], "genres": []}
        top_genres = [genre for genre, _ in genre_counts.most_common(TOP_GENRE_COUNT)]
        logger.debug(f"Top genres for user {user_oid}: {top_genres}")

        genre_match = {"$or": [
            {"metadata.genres.id": {"$in": top_genres}},
            {"metadata.genres.name": {"$in": top_genres}},
        ]}
        fetch_limit = min(CANDIDATE_POOL_MAX, max(CANDIDATE_POOL_MIN, limit * 5))
        half = math.ceil(limit / 2)

        movies = await self.db[FLAT_MOVIES].find({
            "_id": {"$nin": [m["_id"] for m in watched_movies]}, **genre_match,
        }).sort("title", ASCENDING).limit(fetch_limit).to_list(length=fetch_limit)

        tv_items = []
        for show in watched_shows:
            next_episode = self.find_next_episode(await self._ordered_episodes(show["_id"]), watched_urls)
            if next_episode:
                tv_items.append(self._episode_item(show, next_episode[0], next_episode[1], isNextEpisode=True))
        if len(tv_items) < half:
            new_shows = await self.db[FLAT_TV_SHOWS].find({
                "_id": {"$nin": show_ids}, **genre_match,
            }).limit(half - len(tv_items)).to_list(length=None)
            for show in new_shows:
                first = await self._first_episode_item(show)
                if first:
                    tv_items.append(first)

        counts = await self._watch_counts()
        recommendations = [
            {**item, "watchCount": counts.get(movie.get("videoURL"), 0)}
            for movie, item in zip(movies, add_custom_url_to_flat_media(movies, "movie"))
        ] + tv_items
        if len(recommendations) < limit:
            logger.info(f"Only {len(recommendations)} genre matches for user {user_oid}, adding random picks")
            recommendations += await self.get_random_recommendations(limit - len(recommendations))

        recommendations = remove_duplicates([{**item, "uniqueId": generate_unique_id(item)} for item in recommendations])
        preferences = {
            "genres": top_genres,
            "recentlyWatchedIds": [str(m["_id"]) for m in watched_movies] + [str(s) for s in show_ids],
        }
        scored = sort_recommendations_by_score(recommendations, preferences)
        diversified = add_diversity(
            [item for item in scored if item["score"] >= SCORE_THRESHOLD],
            [item for item in scored if item["score"] < SCORE_THRESHOLD],
        )
        return {
            "hasWatched": True,
            "items": diversified[page * limit:(page + 1) * limit],
            "genres": top_genres,
        }
