import base64

import pytest
from aioresponses import aioresponses

from app.core.config import settings
from app.utils.http_client import (
    HttpRequestError,
    calculate_backoff,
    fetch_image_bytes,
    http_get,
    validate_url,
)

URL_JSON = "https://api.example.com/data"
NO_WAIT = {"base_delay": 0, "max_delay": 0, "jitter": 0}


def _get_calls(mocked):
    return next(calls for (method, _), calls in mocked.requests.items() if method == "GET")


def test_backoff_is_capped():
    assert calculate_backoff(0, 1.0, 10.0, 0) == 1.0
    assert calculate_backoff(2, 1.0, 10.0, 0) == 4.0
    assert calculate_backoff(10, 1.0, 10.0, 0) == 10.0
    assert 10.0 <= calculate_backoff(10, 1.0, 10.0, 1.0) <= 11.0


async def test_json_response():
    with aioresponses() as mocked:
        mocked.get(URL_JSON, status=200, payload={"ok": True})
        result = await http_get(URL_JSON)
    assert result["data"] == {"ok": True}


async def test_retries_server_errors_then_succeeds():
    with aioresponses() as mocked:
        mocked.get(URL_JSON, status=503)
        mocked.get(URL_JSON, status=429)
        mocked.get(URL_JSON, status=200, payload=[1, 2])
        result = await http_get(URL_JSON, retry_limit=3, **NO_WAIT)
    assert result["data"] == [1, 2]


async def test_gives_up_after_retry_limit():
    with aioresponses() as mocked:
        mocked.get(URL_JSON, status=500, repeat=True)
        with pytest.raises(HttpRequestError) as exc_info:
            await http_get(URL_JSON, retry_limit=2, **NO_WAIT)
    assert exc_info.value.status == 500
    assert len(_get_calls(mocked)) == 3


async def test_client_errors_are_not_retried():
    with aioresponses() as mocked:
        mocked.get(URL_JSON, status=404)
        with pytest.raises(HttpRequestError, match="HTTP Error: 404"):
            await http_get(URL_JSON, retry_limit=3, **NO_WAIT)
    assert len(_get_calls(mocked)) == 1


async def test_unsupported_response_type():
    with pytest.raises(ValueError):
        await http_get(URL_JSON, response_type="xml")


async def test_conditional_request_uses_cached_validators(http_cache):
    with aioresponses() as mocked:
        mocked.get(URL_JSON, status=200, body="BEGIN:VCALENDAR", headers={"ETag": '"v1"'})
        first = await http_get(URL_JSON, response_type="text", cache=http_cache)
        assert first["data"] == "BEGIN:VCALENDAR"

        mocked.get(URL_JSON, status=304)
        second = await http_get(URL_JSON, response_type="text", cache=http_cache)
        assert second["data"] is None

        calls = _get_calls(mocked)
        assert calls[1].kwargs["headers"]["If-None-Match"] == '"v1"'

    entry = await http_cache.get_entry(URL_JSON)
    assert entry["etag"] == '"v1"'
    assert entry["data"] == "BEGIN:VCALENDAR"


async def test_fetch_image_serves_cache_on_not_modified(http_cache):
    url = "https://img.example.com/poster.jpg"
    await http_cache.set_entry(url, {
        "data": base64.b64encode(b"\x89PNG").decode("ascii"),
        "etag": '"img"',
        "lastModified": None,
        "timestamp": 0,
    })
    with aioresponses() as mocked:
        mocked.get(url, status=304)
        data = await fetch_image_bytes(url, cache=http_cache)
    assert data == b"\x89PNG"


async def test_fetch_image_without_cache_entry_fails_on_not_modified():
    url = "https://img.example.com/missing.jpg"
    with aioresponses() as mocked:
        mocked.get(url, status=304)
        with pytest.raises(HttpRequestError):
            await fetch_image_bytes(url, retry_limit=0)


async def test_validate_url():
    with aioresponses() as mocked:
        mocked.head("https://cdn.example.com/ok.mp4", status=200)
        mocked.head("https://cdn.example.com/gone.mp4", status=404)
        assert await validate_url("https://cdn.example.com/ok.mp4") is True
        assert await validate_url("https://cdn.example.com/gone.mp4") is False
    assert await validate_url("") is False


async def test_retry_settings_apply_when_arguments_are_omitted(monkeypatch, http_cache):
    monkeypatch.setattr(settings, "HTTP_RETRY_LIMIT", 1)
    monkeypatch.setattr(settings, "HTTP_RETRY_BASE_DELAY", 0)
    monkeypatch.setattr(settings, "HTTP_RETRY_MAX_DELAY", 0)
    monkeypatch.setattr(settings, "HTTP_RETRY_JITTER", 0)
    with aioresponses() as mocked:
        mocked.get(URL_JSON, status=502, repeat=True)
        with pytest.raises(HttpRequestError):
            await http_get(URL_JSON)
    assert len(_get_calls(mocked)) == 2

    with aioresponses() as mocked:
        mocked.get(URL_JSON, status=200, payload={"ok": True}, headers={"ETag": '"v2"'})
        await http_get(URL_JSON)
    assert await http_cache.get_entry(URL_JSON) is None
