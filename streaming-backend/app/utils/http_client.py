# backend/app/utils/http_client.py

import asyncio
import base64
import logging
import random
import time
from typing import Any, Dict, Optional

import aiohttp

from app.core.config import settings
from app.data_access.redis_client import HttpCacheRepository

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429}
RESPONSE_TYPES = ("json", "text", "bytes")


class HttpRequestError(Exception):
    """Raised when an outbound GET fails for good."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def calculate_backoff(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
) -> float:
    """Exponential backoff in seconds, capped at max_delay, plus random jitter."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + random.random() * jitter


def _is_retryable(status: int) -> bool:
    return status >= 500 or status in RETRYABLE_STATUS_CODES


def _encode_for_cache(data: Any, response_type: str) -> Any:
    if response_type == "bytes":
        return base64.b64encode(data).decode("ascii")
    return data


def decode_cached_data(entry: Dict[str, Any], response_type: str) -> Any:
    """Returns the payload stored in a cache entry in its original type."""
    data = entry.get("data")
    if response_type == "bytes" and data is not None:
        return base64.b64decode(data)
    return data


async def _read_body(response: aiohttp.ClientResponse, url: str, response_type: str) -> Any:
    if response_type == "json":
        try:
            return await response.json(content_type=None)
        except ValueError as e:
            raise HttpRequestError(f"Invalid JSON response from {url}", response.status) from e
    if response_type == "text":
        return await response.text()
    return await response.read()


async def http_get(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    response_type: str = "json",
    cache: Optional[HttpCacheRepository] = None,
    retry_limit: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    jitter: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Performs a GET request with retries and conditional caching.

    Up to ``retry_limit`` retries are made on network errors, timeouts, 5xx,
    408 and 429, sleeping with exponential backoff plus jitter in between.
    When a cache repository is given, the stored ETag / Last-Modified are
    sent as validators. A 304 for a cached URL returns ``data=None``; any 2xx
    refreshes the cache entry.

    Args:
        url: The URL to fetch.
        headers: Extra request headers.
        timeout: Total request timeout in seconds.
        response_type: One of 'json', 'text' or 'bytes'.
        cache: Optional conditional-request cache.
        retry_limit, base_delay, max_delay, jitter: Retry policy overrides.

    Returns:
        ``{"data": ..., "headers": {...}}``

    Raises:
        HttpRequestError: On a non-retryable status, or when retries are exhausted.
        ValueError: For an unsupported response_type.
    """
    if response_type not in RESPONSE_TYPES:
        raise ValueError(f"Unsupported response type: {response_type}")

    limit = settings.HTTP_RETRY_LIMIT if retry_limit is None else retry_limit
    base = settings.HTTP_RETRY_BASE_DELAY if base_delay is None else base_delay
    cap = settings.HTTP_RETRY_MAX_DELAY if max_delay is None else max_delay
    spread = settings.HTTP_RETRY_JITTER if jitter is None else jitter
    client_timeout = aiohttp.ClientTimeout(total=timeout or settings.HTTP_TIMEOUT_SECONDS)

    request_headers = dict(headers or {})
    cached_entry = await cache.get_entry(url) if cache is not None else None
    if cached_entry:
        if cached_entry.get("etag"):
            request_headers["If-None-Match"] = cached_entry["etag"]
        if cached_entry.get("lastModified"):
            request_headers["If-Modified-Since"] = cached_entry["lastModified"]

    last_error: Optional[HttpRequestError] = None
    for attempt in range(limit + 1):
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(url, headers=request_headers) as response:
                    response_headers = dict(response.headers)

                    if response.status == 304 and cached_entry:
                        logger.debug(f"Not modified: {url}")
                        return {"data": None, "headers": response_headers}

                    if 200 <= response.status < 300:
                        data = await _read_body(response, url, response_type)
                        if cache is not None:
                            await cache.set_entry(url, {
                                "data": _encode_for_cache(data, response_type),
                                "etag": response.headers.get("ETag"),
                                "lastModified": response.headers.get("Last-Modified"),
                                "timestamp": int(time.time() * 1000),
                            })
                        return {"data": data, "headers": response_headers}

                    error = HttpRequestError(f"HTTP Error: {response.status} for URL: {url}", response.status)
                    if not _is_retryable(response.status):
                        raise error
                    last_error = error
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            last_error = HttpRequestError(f"Request to {url} failed: {e}")

        if attempt < limit:
            delay = calculate_backoff(attempt, base, cap, spread)
            logger.warning(f"Retrying request to {url} (attempt {attempt + 1}/{limit}) after {delay:.2f}s: {last_error}")
            await asyncio.sleep(delay)

    logger.error(f"Giving up on {url} after {limit + 1} attempts: {last_error}")
    raise last_error


async def fetch_image_bytes(url: str, cache: Optional[HttpCacheRepository] = None, **kwargs) -> bytes:
    """Fetches an image, serving the cached copy when the server answers 304."""
    headers = {**kwargs.pop("headers", {}), "Accept": "image/*"}
    result = await http_get(url, headers=headers, response_type="bytes", cache=cache, **kwargs)
    if result["data"] is not None:
        return result["data"]

    cached_entry = await cache.get_entry(url) if cache is not None else None
    if not cached_entry or cached_entry.get("data") is None:
        raise HttpRequestError(f"No cached data available for image {url}")
    return decode_cached_data(cached_entry, "bytes")


async def validate_url(url: str, timeout: Optional[float] = None) -> bool:
    """Sends a HEAD request and reports whether the resource answered 2xx."""
    if not url:
        return False
    client_timeout = aiohttp.ClientTimeout(total=timeout or settings.HTTP_TIMEOUT_SECONDS)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.head(url, allow_redirects=True) as response:
                return 200 <= response.status < 300
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning(f"URL validation failed for {url}: {e}")
        return False
