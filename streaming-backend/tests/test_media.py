from datetime import datetime, timezone

import pytest
from bson import ObjectId

from app.services.media_service import (
    MediaNotFoundError,
    MediaService,
    UserNotFoundError,
    add_custom_url_to_flat_media,
    augment_items_with_watch_history,
    merge_collection_with_ownership,
)
from app.utils.helpers import generate_normalized_video_id

from conftest import USER_ID

SHOW_ID = ObjectId()
SEASON_ID = ObjectId()
MATRIX_ID = ObjectId()
HEAT_ID = ObjectId()

MATRIX_URL = "https://cdn.example.com/movies/The Matrix/matrix.mp4"
EPISODE_ONE_URL = "https://cdn.example.com/tv/Severance/S01E01.mp4"
ACTION = {"id": 28, "name": "Action"}
DRAMA = {"id": 18, "name": "Drama"}


def _dt(day):
    return datetime(2024, 1, day, tzinfo=timezone.utc)


@pytest.fixture
async def library(media_db):
    await media_db["FlatMovies"].insert_many([
        {
            "_id": MATRIX_ID, "title": "The Matrix", "videoURL": MATRIX_URL,
            "normalizedVideoId": generate_normalized_video_id(MATRIX_URL),
            "duration": 8_160_000, "mediaLastModified": _dt(5),
            "metadata": {"id": 603, "overview": "Red pill.", "release_date": "1999-03-31",
                         "genres": [ACTION], "vote_average": 8.2, "poster_path": "/matrix.jpg",
                         "belongs_to_collection": {"id": 2344}},
        },
        {
            "_id": HEAT_ID, "title": "Heat", "posterURL": "/posters/heat.jpg", "duration": 10_200_000,
            "mediaLastModified": _dt(2),
            "metadata": {"id": 949, "release_date": "1995-12-15", "genres": [ACTION, DRAMA], "vote_average": 7.9},
        },
    ])
    await media_db["FlatTVShows"].insert_one({
        "_id": SHOW_ID, "title": "Severance", "originalTitle": "Severance (US)",
        "posterURL": "/posters/severance.jpg", "posterBlurhash": "SHOWHASH",
        "metadata": {"id": 95396, "overview": "Work-life balance.", "first_air_date": "2022-02-18",
                     "genres": [DRAMA], "cast": [{"id": 1, "name": "Adam Scott"}, {"id": 2, "name": "Britt Lower"}]},
    })
    await media_db["FlatSeasons"].insert_one({
        "_id": SEASON_ID, "showId": SHOW_ID, "seasonNumber": 1, "metadata": {"name": "Season 1"},
    })
    await media_db["FlatEpisodes"].insert_many([
        {
            "showId": SHOW_ID, "seasonId": SEASON_ID, "episodeNumber": 1, "title": "Good News About Hell",
            "videoURL": EPISODE_ONE_URL, "normalizedVideoId": generate_normalized_video_id(EPISODE_ONE_URL),
            "duration": 3_600_000, "thumbnail": "/thumbs/s01e01.jpg", "mediaLastModified": _dt(9),
            "metadata": {"guest_stars": [{"id": 2, "name": "Britt Lower"}, {"id": 3, "name": "Guest"}]},
        },
        {
            "showId": SHOW_ID, "seasonId": SEASON_ID, "episodeNumber": 2, "title": "Half Loop",
            "videoURL": "https://cdn.example.com/tv/Severance/S01E02.mp4", "duration": 3_600_000,
            "mediaLastModified": _dt(8), "metadata": {},
        },
    ])


def test_custom_urls_and_poster_fallbacks():
    items = add_custom_url_to_flat_media([
        {"_id": MATRIX_ID, "title": "The Matrix", "metadata": {"poster_path": "/m.jpg"}, "videoURL": "v", "duration": 5},
        {"_id": HEAT_ID, "title": "Heat", "metadata": {}},
        {"_id": SHOW_ID, "title": "Severance", "type": "tv", "posterURL": "/p.jpg", "episodeData": {"thumbnail": "/t.jpg"}},
    ], "movie", preserve_additional=True)

    assert items[0]["url"] == "/list/movie/The%20Matrix"
    assert items[0]["posterURL"] == "https://image.tmdb.org/t/p/w780/m.jpg"
    assert items[0]["videoURL"] == "v"
    assert items[1]["posterURL"] == "/sorry-image-not-available.jpg"
    assert items[2]["posterURL"] == "/t.jpg"
    assert items[2]["id"] == str(SHOW_ID)


def test_collection_merge_marks_ownership():
    owned = [{"id": "abc", "title": "The Matrix", "metadata": {"id": 603, "release_date": "1999-03-31"}}]
    collection = {"id": 2344, "name": "The Matrix Collection", "parts": [
        {"id": 603, "title": "The Matrix", "release_date": "1999-03-31"},
        {"id": 604, "title": "The Matrix Reloaded", "release_date": "2003-05-15", "poster_path": "/r.jpg"},
    ]}

    merged = merge_collection_with_ownership(owned, collection)

    assert [p["tmdbId"] for p in merged["parts"]] == [604, 603]
    assert merged["parts"][0]["id"] == "tmdb-604"
    assert merged["parts"][0]["isOwned"] is False
    assert merged["parts"][1]["mediaId"] == "abc"
    assert merged["ownershipStats"] == {"owned": 1, "total": 2, "percentage": 50}


def test_watch_history_defaults_when_unwatched():
    lookup = {"abc": {"playbackTime": 12, "lastWatched": None, "isWatched": True, "normalizedVideoId": "abc"}}
    items = augment_items_with_watch_history([{"normalizedVideoId": "abc"}, {"title": "x"}], lookup)
    assert items[0]["watchHistory"]["playbackTime"] == 12
    assert items[1]["watchHistory"] == {
        "playbackTime": 0, "lastWatched": None, "isWatched": False, "normalizedVideoId": None,
    }


async def test_posters_paginate_and_count(media_db, library):
    service = MediaService(media_db)
    assert await service.get_flat_posters("movie", count_only=True) == 2
    first_page = await service.get_flat_posters("movie", page=0, limit=1)
    assert len(first_page) == 1
    assert first_page[0]["type"] == "movie"
    shows = await service.get_flat_posters("tv")
    assert shows[0]["link"] == "Severance"


async def test_requested_movie_and_episode(media_db, library):
    service = MediaService(media_db)

    movie = await service.get_flat_requested_media("movie", title="The Matrix")
    assert movie["id"] == str(MATRIX_ID)
    assert movie["type"] == "movie"

    episode = await service.get_flat_requested_media("tv", title="Severance", season="Season 1", episode="Episode 1")
    assert episode["episodeNumber"] == 1
    assert episode["hasNextEpisode"] is True
    assert episode["nextEpisodeTitle"] == "Half Loop"
    assert episode["nextEpisodeThumbnail"] == "/posters/severance.jpg"
    assert episode["nextEpisodeThumbnailBlurhash"] == "data:image/png;base64,SHOWHASH"
    assert [c["name"] for c in episode["cast"]] == ["Adam Scott"]
    assert len(episode["guestStars"]) == 2

    last = await service.get_flat_requested_media("tv", title="Severance", season="1", episode="2")
    assert last["hasNextEpisode"] is False

    assert await service.get_flat_requested_media("tv", title="Severance", season="3") is None
    assert await service.get_flat_requested_media("movie", media_id="not-an-id") is None


async def test_show_found_by_original_title_merges_guest_cast(media_db, library):
    show = await MediaService(media_db).get_flat_requested_media("tv", title="Severance (US)")
    assert show["foundByOriginalTitle"] is True
    assert {c["id"] for c in show["cast"]} == {1, 2, 3}
    assert show["seasons"][0]["seasonNumber"] == 1


async def test_season_with_episodes(media_db, library):
    season = await MediaService(media_db).get_flat_tv_season_with_episodes("Severance", 1)
    assert season["showTitle"] == "Severance"
    assert [e["episodeNumber"] for e in season["episodes"]] == [1, 2]
    assert await MediaService(media_db).get_flat_tv_season_with_episodes("Severance", 2) is None


async def test_recently_watched_resolves_movies_and_episodes(media_db, users_db, users, library):
    await media_db["PlaybackStatus"].insert_one({
        "userId": USER_ID,
        "videosWatched": [
            {"videoId": MATRIX_URL, "playbackTime": 300, "lastUpdated": _dt(3), "isValid": True},
            {"videoId": EPISODE_ONE_URL, "playbackTime": 60, "lastUpdated": _dt(6), "isValid": True},
            {"videoId": "https://cdn.example.com/broken.mp4", "playbackTime": 1, "lastUpdated": _dt(7), "isValid": False},
        ],
    })
    service = MediaService(media_db, users_db)

    assert await service.get_flat_recently_watched_for_user(str(USER_ID), count_only=True) == 2
    watched = await service.get_flat_recently_watched_for_user(str(USER_ID))
    assert [w["type"] for w in watched] == ["tv", "movie"]
    assert watched[0]["showTitleFormatted"] == "Severance S01E01"
    assert watched[0]["link"] == "Severance/1/1"
    assert watched[1]["playbackTime"] == 300

    with pytest.raises(UserNotFoundError):
        await service.get_flat_recently_watched_for_user(str(ObjectId()))


async def test_recently_added_merges_movies_and_shows(media_db, library):
    service = MediaService(media_db)
    added = await service.get_flat_recently_added_media(limit=10)
    assert [a["title"] for a in added] == ["Severance", "The Matrix", "Heat"]
    assert added[0]["posterURL"] == "/posters/severance.jpg"
    assert added[0]["addedDate"].startswith("2024-01-09")
    assert await service.get_flat_recently_added_media(count_only=True) == 3


async def test_banner_requires_movies(media_db, library):
    banner = await MediaService(media_db).get_flat_banner_media()
    assert banner[0]["title"] == "The Matrix"
    await media_db["FlatMovies"].delete_many({})
    with pytest.raises(MediaNotFoundError):
        await MediaService(media_db).get_flat_banner_media()


async def test_media_counts_are_cached(media_db, cache, library):
    service = MediaService(media_db, cache=cache)
    counts = await service.get_media_counts()
    assert counts["moviesCount"] == 2
    assert counts["tvShowsCount"] == 1
    assert counts["movieHours"] == 5
    assert counts["tvHours"] == 2

    await media_db["FlatMovies"].delete_many({})
    assert (await service.get_media_counts())["moviesCount"] == 2


async def test_last_updated_and_viewers(media_db, library):
    service = MediaService(media_db)
    assert await service.get_last_updated("movie") == int(_dt(5).timestamp() * 1000)
    assert await service.get_last_updated("tv") == int(_dt(9).timestamp() * 1000)

    normalized = generate_normalized_video_id(MATRIX_URL)
    await media_db["PlaybackStatus"].insert_many([
        {"userId": ObjectId(), "videosWatched": [{"normalizedVideoId": normalized, "isValid": True}]},
        {"userId": ObjectId(), "videosWatched": [{"normalizedVideoId": normalized, "isValid": False}]},
    ])
    assert await service.count_unique_viewers_by_normalized_id(normalized) == 1


async def test_genres_and_content(media_db, library):
    service = MediaService(media_db)

    genres = await service.get_flat_available_genres("all")
    by_name = {g["name"]: g for g in genres["availableGenres"]}
    assert by_name["Action"]["movieCount"] == 2
    assert by_name["Drama"] == {"id": 18, "name": "Drama", "movieCount": 1, "tvShowCount": 1, "totalCount": 2}
    assert genres["mediaTypeCounts"] == {"movies": 2, "tvShows": 1, "total": 3}
    assert await service.get_flat_available_genres("tv", count_only=True) == 1

    content = await service.get_flat_content_by_genres(["Drama"], sort_by="title", sort_order="asc")
    assert [i["title"] for i in content["items"]] == ["Heat", "Severance"]
    assert content["totalPages"] == 1

    with pytest.raises(ValueError):
        await service.get_flat_content_by_genres([])


async def test_collection_and_watch_history_lookup(media_db, library):
    service = MediaService(media_db)
    owned = await service.get_flat_movies_by_collection_id("2344")
    assert [m["title"] for m in owned] == ["The Matrix"]
    assert owned[0]["isOwned"] is True

    await media_db["PlaybackStatus"].insert_one({
        "userId": USER_ID,
        "videosWatched": [{"videoId": MATRIX_URL, "playbackTime": 42, "lastUpdated": _dt(1), "isValid": True}],
    })
    augmented = await service.augment_with_watch_history(owned, str(USER_ID))
    assert augmented[0]["watchHistory"]["playbackTime"] == 42
    assert augmented[0]["watchHistory"]["isWatched"] is True


async def test_media_routes_require_sign_in(client, users, auth_state, library):
    assert (await client.get("/api/media/posters/movie")).status_code == 401

    auth_state.user = users["viewer"]
    response = await client.get("/api/media/posters/movie", params={"countOnly": True})
    assert response.json() == {"count": 2}

    details = await client.get("/api/media/details/movie", params={"title": "Nope"})
    assert details.status_code == 404

    merged = await client.post("/api/media/collections/2344/ownership", json={
        "id": 2344, "name": "The Matrix Collection", "parts": [{"id": 603, "title": "The Matrix"}],
    })
    assert merged.json()["ownershipStats"]["owned"] == 1
