from datetime import timedelta

import pytest
from bson import ObjectId

from app.services.watchlist_service import (
    DefaultPlaylistError,
    ItemAlreadyExistsError,
    PlaylistNotFoundError,
    PlaylistPermissionError,
    WatchlistService,
    normalize_visibility_payload,
)
from app.utils.helpers import utc_now
from app.utils.validation import WatchlistValidationError

from conftest import OTHER_USER_ID, USER_ID

VIEWER = str(USER_ID)
FRIEND = str(OTHER_USER_ID)
MATRIX_ID = ObjectId()


@pytest.fixture
async def service(media_db, users_db, users):
    await media_db["FlatMovies"].insert_one({
        "_id": MATRIX_ID, "title": "The Matrix",
        "metadata": {"id": 603, "release_date": "1999-03-31", "poster_path": "/matrix.jpg", "genres": [{"id": 28, "name": "Action"}]},
    })
    return WatchlistService(media_db, users_db)


def _movie(tmdb_id, title, **extra):
    return {"tmdbId": tmdb_id, "mediaType": "movie", "title": title, **extra}


def test_visibility_payload_normalization():
    assert normalize_visibility_payload({
        "showInApp": True, "appOrder": "3", "appTitle": "  Kids  ", "hideUnavailable": "yes",
    }) == {"showInApp": True, "appOrder": 3, "appTitle": "Kids"}
    assert normalize_visibility_payload({"appOrder": -1, "appTitle": "x" * 101}) == {}
    assert normalize_visibility_payload({"appTitle": None}) == {"appTitle": None}


async def test_default_playlist_created_once(service, media_db):
    first = await service.ensure_default_playlist(VIEWER)
    second = await service.ensure_default_playlist(VIEWER)
    assert first["id"] == second["id"]
    assert first["name"] == "My Watchlist"
    assert first["ownerId"] == VIEWER
    assert await media_db["Playlists"].count_documents({"ownerId": USER_ID, "isDefault": True}) == 1


async def test_duplicate_default_playlists_are_merged_into_the_fullest(service, media_db):
    newer_id, older_id = ObjectId(), ObjectId()
    now = utc_now()
    await media_db["Playlists"].insert_many([
        {"_id": newer_id, "ownerId": USER_ID, "isDefault": True, "itemCount": 0, "dateCreated": now},
        {"_id": older_id, "ownerId": USER_ID, "isDefault": True, "itemCount": 5, "dateCreated": now - timedelta(days=1)},
    ])
    await media_db["Watchlist"].insert_many([
        {"userId": USER_ID, "playlistId": newer_id, "tmdbId": 1, "mediaType": "movie"},
        {"userId": USER_ID, "playlistId": newer_id, "tmdbId": 2, "mediaType": "movie"},
        {"userId": USER_ID, "playlistId": older_id, "tmdbId": 3, "mediaType": "tv"},
    ])

    default = await service.ensure_default_playlist(VIEWER)

    assert default["id"] == str(newer_id)
    assert await media_db["Playlists"].count_documents({"ownerId": USER_ID}) == 1
    assert await media_db["Watchlist"].count_documents({"playlistId": newer_id}) == 3


async def test_equally_full_default_playlists_keep_the_oldest(service, media_db):
    newer_id, older_id = ObjectId(), ObjectId()
    now = utc_now()
    await media_db["Playlists"].insert_many([
        {"_id": newer_id, "ownerId": USER_ID, "isDefault": True, "dateCreated": now},
        {"_id": older_id, "ownerId": USER_ID, "isDefault": True, "dateCreated": now - timedelta(days=1)},
    ])

    default = await service.ensure_default_playlist(VIEWER)

    assert default["id"] == str(older_id)


async def test_add_resolves_library_media_and_rejects_duplicates(service):
    item = await service.add_to_watchlist(VIEWER, {"mediaId": str(MATRIX_ID), "mediaType": "movie", "title": "The Matrix"})
    assert item["tmdbId"] == 603
    assert item["isInternal"] is True
    assert item["currentMediaId"] == str(MATRIX_ID)
    assert item["url"] == "/list/movie/The%20Matrix"
    assert item["posterURL"] == "https://image.tmdb.org/t/p/w500/matrix.jpg"

    with pytest.raises(ItemAlreadyExistsError):
        await service.add_to_watchlist(VIEWER, _movie(603, "The Matrix"))


async def test_external_items_use_stored_tmdb_data(service):
    item = await service.add_to_watchlist(VIEWER, _movie(
        27205, "Inception", tmdbData={"overview": "Dreams.", "release_date": "2010-07-16", "poster_path": "/inc.jpg"},
    ))
    assert item["isExternal"] is True
    assert item["isInternal"] is False
    assert item["overview"] == "Dreams."
    assert item["releaseDate"] == "2010-07-16"
    assert item["posterURL"] == "https://image.tmdb.org/t/p/w500/inc.jpg"


async def test_add_requires_resolvable_tmdb_id(service):
    with pytest.raises(WatchlistValidationError) as exc_info:
        await service.add_to_watchlist(VIEWER, {"mediaId": str(ObjectId()), "mediaType": "movie", "title": "Ghost"})
    assert exc_info.value.field == "tmdbId"


async def test_listing_sorts_and_filters(service, media_db):
    await service.add_to_watchlist(VIEWER, _movie(603, "The Matrix"))
    await service.add_to_watchlist(VIEWER, _movie(11, "Alien", tmdbData={"release_date": "1979-05-25"}))
    await service.add_to_watchlist(VIEWER, {"tmdbId": 1399, "mediaType": "tv", "title": "Game of Thrones"})
    base = utc_now()
    for hours, tmdb_id in enumerate((603, 11, 1399)):
        await media_db["Watchlist"].update_one({"tmdbId": tmdb_id}, {"$set": {"dateAdded": base + timedelta(hours=hours)}})

    newest_first = await service.get_user_watchlist(VIEWER)
    assert [i["title"] for i in newest_first] == ["Game of Thrones", "Alien", "The Matrix"]

    by_title = await service.get_user_watchlist(VIEWER, sort_by="title", sort_order="asc")
    assert [i["title"] for i in by_title] == ["Alien", "Game of Thrones", "The Matrix"]

    by_release = await service.get_user_watchlist(VIEWER, media_type="movie", sort_by="releaseDate", sort_order="asc")
    assert [i["title"] for i in by_release] == ["Alien", "The Matrix"]

    assert await service.get_user_watchlist(VIEWER, count_only=True) == 3
    assert await service.get_user_watchlist(VIEWER, count_only=True, internal_only=True) == 1
    internal = await service.get_user_watchlist(VIEWER, internal_only=True)
    assert [i["title"] for i in internal] == ["The Matrix"]


async def test_custom_order(service):
    first = await service.add_to_watchlist(VIEWER, _movie(1, "One"))
    second = await service.add_to_watchlist(VIEWER, _movie(2, "Two"))
    default = await service.ensure_default_playlist(VIEWER)

    assert await service.update_playlist_order(VIEWER, default["id"], [first["id"], second["id"]])
    ordered = await service.get_user_watchlist(VIEWER)
    assert [i["id"] for i in ordered] == [first["id"], second["id"]]


async def test_toggle_status_and_stats(service):
    added = await service.toggle_watchlist(VIEWER, _movie(603, "The Matrix"))
    assert added["action"] == "added"

    status = await service.check_watchlist_status(VIEWER, tmdb_id="603")
    assert status["id"] == added["item"]["id"]
    assert status["userId"] == VIEWER

    await service.add_to_watchlist(VIEWER, {"tmdbId": 1399, "mediaType": "tv", "title": "Game of Thrones"})
    assert await service.get_watchlist_stats(VIEWER) == {"total": 2, "movieCount": 1, "tvCount": 1}

    removed = await service.toggle_watchlist(VIEWER, _movie(603, "The Matrix"))
    assert removed["action"] == "removed"
    assert await service.check_watchlist_status(VIEWER, tmdb_id=603) is None
    assert await service.check_watchlist_status(VIEWER) is None


async def test_bulk_operations_only_touch_own_items(service):
    mine = await service.add_to_watchlist(VIEWER, _movie(1, "One"))
    theirs = await service.add_to_watchlist(FRIEND, _movie(2, "Two"))

    result = await service.bulk_update_watchlist(VIEWER, [
        {"id": mine["id"], "updates": {"notes": "rewatch"}},
        {"id": theirs["id"], "updates": {"notes": "hijack"}},
    ])
    assert result == {"matchedCount": 1, "modifiedCount": 1}

    assert await service.bulk_remove_from_watchlist(VIEWER, [mine["id"], theirs["id"]]) == 1
    assert await service.get_watchlist_stats(FRIEND) == {"total": 1, "movieCount": 1, "tvCount": 0}


async def test_move_items_between_playlists(service):
    weekend = await service.create_playlist(VIEWER, {"name": "Weekend"})
    one = await service.add_to_watchlist(VIEWER, _movie(1, "One"))
    two = await service.add_to_watchlist(VIEWER, _movie(2, "Two"))
    await service.add_to_watchlist(VIEWER, _movie(2, "Two", playlistId=weekend["id"]))

    moved = await service.move_items_to_playlist(VIEWER, [one["id"], two["id"]], weekend["id"])

    assert moved == 2
    assert await service.get_user_watchlist(VIEWER, count_only=True) == 0
    assert await service.get_user_watchlist(VIEWER, playlist_id=weekend["id"], count_only=True) == 2


async def test_playlist_permissions_and_sharing(service):
    playlist = await service.create_playlist(VIEWER, {"name": "Heists", "privacy": "shared"})
    assert playlist["isDefault"] is False

    shared = await service.share_playlist(VIEWER, playlist["id"], [
        {"email": "friend@example.com", "permission": "view"},
        {"email": "nobody@example.com", "permission": "edit"},
    ])
    assert shared == {"shared": 1, "notFound": ["nobody@example.com"]}

    with pytest.raises(PlaylistPermissionError):
        await service.update_playlist(FRIEND, playlist["id"], {"name": "Mine now"})
    with pytest.raises(PlaylistNotFoundError):
        await service.share_playlist(FRIEND, playlist["id"], [{"email": "admin@example.com", "permission": "view"}])

    friend_view = await service.get_playlist_by_id({"id": FRIEND, "admin": False}, playlist["id"])
    assert friend_view["isCollaborator"] is True
    assert friend_view["canEdit"] is False
    assert friend_view["ownerName"] == "Viewer"

    assert await service.update_playlist(VIEWER, playlist["id"], {"description": "Crime films"})
    owner_view = await service.get_playlist_by_id({"id": VIEWER}, playlist["id"])
    assert owner_view["name"] == "Heists"
    assert owner_view["privacy"] == "shared"
    assert owner_view["description"] == "Crime films"


async def test_listing_includes_public_playlists(service):
    await service.ensure_default_playlist(VIEWER)
    public = await service.create_playlist(FRIEND, {"name": "Classics", "privacy": "public"})
    secret = await service.create_playlist(FRIEND, {"name": "Secret"})

    playlists = await service.get_user_playlists({"id": VIEWER})
    names = {p["name"]: p for p in playlists}
    assert set(names) == {"My Watchlist", "Classics"}
    assert names["Classics"]["isPublic"] is True
    assert names["Classics"]["id"] == public["id"]

    own_only = await service.get_user_playlists({"id": VIEWER}, include_shared=False, include_public=False)
    assert [p["name"] for p in own_only] == ["My Watchlist"]

    with pytest.raises(PlaylistNotFoundError):
        await service.get_playlist_by_id({"id": VIEWER}, secret["id"])


async def test_delete_playlist_moves_items_to_default(service, users_db):
    default = await service.ensure_default_playlist(VIEWER)
    custom = await service.create_playlist(VIEWER, {"name": "Temp"})
    await service.add_to_watchlist(VIEWER, _movie(1, "One", playlistId=custom["id"]))
    await service.set_playlist_visibility(VIEWER, custom["id"], {"showInApp": True})

    with pytest.raises(DefaultPlaylistError):
        await service.delete_playlist(VIEWER, default["id"])
    assert await service.delete_playlist(FRIEND, custom["id"]) is False

    assert await service.delete_playlist(VIEWER, custom["id"]) is True
    assert await service.get_user_watchlist(VIEWER, count_only=True) == 1
    assert await users_db["PlaylistVisibility"].count_documents({}) == 0


async def test_visibility_upsert_keeps_defaults(service):
    playlist = await service.create_playlist(VIEWER, {"name": "Kids"})
    assert await service.get_playlist_visibility(VIEWER, playlist["id"]) is None

    saved = await service.set_playlist_visibility(VIEWER, playlist["id"], {"showInApp": True, "appOrder": 2})
    assert saved["showInApp"] is True
    assert saved["appOrder"] == 2
    assert saved["hideUnavailable"] is False

    updated = await service.set_playlist_visibility(VIEWER, playlist["id"], {"appTitle": "For the kids"})
    assert updated["appOrder"] == 2
    assert updated["appTitle"] == "For the kids"

    visible = await service.list_visible_playlists(VIEWER)
    assert [v["playlistId"] for v in visible] == [playlist["id"]]


async def test_watchlist_routes(client, service, users, auth_state):
    auth_state.user = users["viewer"]

    created = await client.post("/api/watchlist", json=_movie(603, "The Matrix"))
    assert created.status_code == 201
    item_id = created.json()["id"]

    duplicate = await client.post("/api/watchlist", json=_movie(603, "The Matrix"))
    assert duplicate.status_code == 409

    invalid = await client.post("/api/watchlist", json={"tmdbId": 603, "mediaType": "book", "title": "x"})
    assert invalid.status_code == 400
    assert invalid.json()["field"] == "mediaType"

    assert (await client.get("/api/watchlist", params={"countOnly": True})).json() == {"count": 1}
    assert (await client.get("/api/watchlist", params={"limit": 500})).status_code == 400

    status = await client.get("/api/watchlist/status", params={"tmdbId": 603})
    assert status.json()["inWatchlist"] is True

    moved = await client.post("/api/watchlist/move", json={"itemIds": [item_id]})
    assert moved.json() == {"movedCount": 0}

    assert (await client.delete(f"/api/watchlist/{item_id}")).json() == {"success": True}
    assert (await client.delete(f"/api/watchlist/{item_id}")).status_code == 404


async def test_playlist_routes(client, service, users, auth_state):
    auth_state.user = users["viewer"]

    listed = await client.get("/api/watchlist/playlists")
    default_id = listed.json()[0]["id"]

    created = await client.post("/api/watchlist/playlists", json={"name": "Heists"})
    playlist_id = created.json()["id"]

    assert (await client.patch(f"/api/watchlist/playlists/{playlist_id}", json={"privacy": "public"})).json() == {"success": True}
    sorting = await client.put(f"/api/watchlist/playlists/{playlist_id}/sorting", json={"sortBy": "title", "sortOrder": "asc"})
    assert sorting.json() == {"success": True}

    assert (await client.delete(f"/api/watchlist/playlists/{default_id}")).status_code == 400
    assert (await client.get("/api/watchlist/playlists/not-an-id")).status_code == 400

    visibility = await client.get(f"/api/watchlist/playlists/{playlist_id}/visibility")
    assert visibility.json()["showInApp"] is False
    await client.put(f"/api/watchlist/playlists/{playlist_id}/visibility", json={"showInApp": True})
    assert [v["playlistId"] for v in (await client.get("/api/watchlist/playlists/visible")).json()] == [playlist_id]

    auth_state.user = users["friend"]
    forbidden = await client.patch(f"/api/watchlist/playlists/{playlist_id}", json={"name": "Taken"})
    assert forbidden.status_code == 403
    assert (await client.get(f"/api/watchlist/playlists/{playlist_id}")).json()["isPublic"] is True


async def test_watchlist_operations_are_rate_limited_per_user(client, service, users, auth_state):
    auth_state.user = users["viewer"]
    for _ in range(5):
        response = await client.delete(f"/api/watchlist/playlists/{ObjectId()}")
        assert response.status_code == 404

    limited = await client.delete(f"/api/watchlist/playlists/{ObjectId()}")
    assert limited.status_code == 429
    assert limited.json()["error"] == "Too many deletePlaylist requests. Please try again later."
    assert int(limited.headers["Retry-After"]) > 0

    listed = await client.get("/api/watchlist/playlists")
    assert listed.status_code == 200
    assert listed.headers["X-RateLimit-Limit"] == "10000"

    auth_state.user = users["friend"]
    assert (await client.delete(f"/api/watchlist/playlists/{ObjectId()}")).status_code == 404
