import pytest

from app.utils.validation import (
    WatchlistValidationError,
    is_valid_date_string,
    validate_collaborators,
    validate_object_id,
    validate_playlist_data,
    validate_tmdb_data,
    validate_watchlist_item,
    validate_watchlist_query,
    validation_error_response,
)


def test_library_item_is_internal():
    item = validate_watchlist_item({"mediaId": " abc ", "mediaType": "movie", "title": " Heat "})
    assert item == {"mediaId": "abc", "isExternal": False, "mediaType": "movie", "title": "Heat"}


def test_tmdb_only_item_is_external_with_integer_id():
    item = validate_watchlist_item({"tmdbId": "603", "mediaType": "movie", "title": "The Matrix"})
    assert item["tmdbId"] == 603
    assert item["isExternal"] is True


def test_explicit_is_external_wins():
    item = validate_watchlist_item({"tmdbId": 603, "mediaType": "movie", "title": "M", "isExternal": False})
    assert item["isExternal"] is False


@pytest.mark.parametrize("payload, field", [
    ({"mediaType": "movie", "title": "x"}, None),
    ({"tmdbId": -4, "mediaType": "movie", "title": "x"}, "tmdbId"),
    ({"tmdbId": 1, "title": "x"}, "mediaType"),
    ({"tmdbId": 1, "mediaType": "book", "title": "x"}, "mediaType"),
    ({"tmdbId": 1, "mediaType": "tv"}, "title"),
    ({"tmdbId": 1, "mediaType": "tv", "title": "x" * 501}, "title"),
    ({"tmdbId": 1, "mediaType": "tv", "title": "x", "posterURL": "ftp://nope"}, "posterURL"),
])
def test_invalid_items(payload, field):
    with pytest.raises(WatchlistValidationError) as exc_info:
        validate_watchlist_item(payload)
    assert exc_info.value.field == field


def test_tmdb_data_kept_only_for_external_items():
    tmdb = {"overview": "o", "vote_average": 11, "release_date": "1999-03-31", "poster_path": "/p.jpg"}
    external = validate_watchlist_item({"tmdbId": 603, "mediaType": "movie", "title": "M", "tmdbData": tmdb})
    assert external["tmdbData"] == {"overview": "o", "release_date": "1999-03-31", "poster_path": "/p.jpg"}

    internal = validate_watchlist_item({"mediaId": "m1", "mediaType": "movie", "title": "M", "tmdbData": tmdb})
    assert "tmdbData" not in internal


def test_tmdb_data_tv_fields():
    data = validate_tmdb_data({
        "first_air_date": "2008-01-20",
        "number_of_seasons": 5,
        "number_of_episodes": 0,
        "status": "Ended",
        "networks": list(range(8)),
        "release_date": "2008-01-20",
    }, "tv")
    assert data == {"first_air_date": "2008-01-20", "number_of_seasons": 5, "status": "Ended", "networks": [0, 1, 2, 3, 4]}
    assert validate_tmdb_data("nope", "tv") == {}


def test_date_strings():
    assert is_valid_date_string("2024-02-29")
    assert not is_valid_date_string("2023-02-29")
    assert not is_valid_date_string("2024/01/01")


def test_query_defaults_and_bounds():
    assert validate_watchlist_query() == {"page": 0, "limit": 20}
    assert validate_watchlist_query({"page": "2", "limit": "50", "mediaType": "tv"}) == {
        "page": 2, "limit": 50, "mediaType": "tv"
    }
    with pytest.raises(WatchlistValidationError):
        validate_watchlist_query({"limit": 101})
    with pytest.raises(WatchlistValidationError):
        validate_watchlist_query({"page": -1})


def test_playlist_data_defaults():
    assert validate_playlist_data({"name": " Weekend "}) == {"name": "Weekend", "description": "", "privacy": "private"}
    with pytest.raises(WatchlistValidationError) as exc_info:
        validate_playlist_data({"name": "x", "privacy": "secret"})
    assert exc_info.value.field == "privacy"
    with pytest.raises(WatchlistValidationError):
        validate_playlist_data({"name": "x" * 101})


def test_collaborators():
    assert validate_collaborators([{"email": "Friend@Example.com", "permission": "edit"}]) == [
        {"email": "friend@example.com", "permission": "edit"}
    ]
    with pytest.raises(WatchlistValidationError, match="Collaborator 1 email must be valid"):
        validate_collaborators([{"email": "not-an-email", "permission": "view"}])
    with pytest.raises(WatchlistValidationError, match="Maximum 20"):
        validate_collaborators([{"email": f"u{i}@x.io", "permission": "view"} for i in range(21)])


def test_object_id_and_error_response():
    assert validate_object_id("5f1d7f5e9d3e2a1b2c3d4e5f")
    with pytest.raises(WatchlistValidationError) as exc_info:
        validate_object_id("123", "playlistId")
    assert validation_error_response(exc_info.value) == {
        "error": "Validation Error",
        "message": "playlistId must be a valid ObjectId",
        "field": "playlistId",
    }
