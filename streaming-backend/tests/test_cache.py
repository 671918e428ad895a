import time

from app.data_access.redis_client import RateLimiter


async def test_cache_round_trips_json_and_scalars(cache):
    assert await cache.set("stats", {"movies": 3}, ttl_seconds=30)
    assert await cache.set("name", "value")
    assert await cache.get("stats") == {"movies": 3}
    assert await cache.get("name") == "value"
    assert await cache.get("missing") is None


async def test_cache_delete_by_prefix(cache):
    await cache.set("rec:user:1:0:10", [1])
    await cache.set("rec:user:1:1:10", [2])
    await cache.set("media:counts", {"movies": 1})

    assert await cache.delete_by_prefix("rec:user:1:")
    assert await cache.get("rec:user:1:0:10") is None
    assert await cache.get("media:counts") == {"movies": 1}


async def test_http_cache_batch_operations(http_cache):
    entries = {
        "https://a.example.com": {"data": "a", "etag": '"1"', "lastModified": None, "timestamp": 1},
        "https://b.example.com": {"data": "b", "etag": None, "lastModified": "Mon", "timestamp": 2},
    }
    assert await http_cache.set_entries(entries)

    fetched = await http_cache.get_entries(["https://a.example.com", "https://b.example.com", "https://c.example.com"])
    assert fetched["https://a.example.com"]["data"] == "a"
    assert fetched["https://b.example.com"]["lastModified"] == "Mon"
    assert fetched["https://c.example.com"] is None

    assert await http_cache.clear_entries(["https://a.example.com"])
    assert await http_cache.get_entry("https://a.example.com") is None

    assert await http_cache.clear_entries()
    assert await http_cache.get_entry("https://b.example.com") is None


async def test_http_cache_single_entries(http_cache, fake_redis):
    entry = {"data": "BEGIN:VCALENDAR", "etag": '"v1"', "lastModified": None, "timestamp": 5}
    assert await http_cache.set_entry("https://sonarr.example.com/feed.ics", entry)
    assert await fake_redis.ttl("http-cache:https://sonarr.example.com/feed.ics") == 60
    assert await http_cache.get_entry("https://sonarr.example.com/feed.ics") == entry

    assert await http_cache.clear_entry("https://sonarr.example.com/feed.ics")
    assert await http_cache.get_entry("https://sonarr.example.com/feed.ics") is None


async def test_rate_limiter_sliding_window(fake_redis):
    limiter = RateLimiter(fake_redis)

    first = await limiter.hit("deletion_10.0.0.1", max_requests=2)
    second = await limiter.hit("deletion_10.0.0.1", max_requests=2)
    assert (first.is_limited, first.remaining) == (False, 1)
    assert (second.is_limited, second.remaining) == (False, 0)
    assert "Retry-After" not in second.headers()

    blocked = await limiter.hit("deletion_10.0.0.1", max_requests=2)
    assert blocked.is_limited
    assert 0 < blocked.retry_after <= 3600
    assert blocked.headers()["Retry-After"] == str(blocked.retry_after)
    assert await fake_redis.zcard("rate-limit:deletion_10.0.0.1") == 2

    assert not (await limiter.hit("deletion_10.0.0.2", max_requests=2)).is_limited
    assert await limiter.reset("deletion_10.0.0.1")
    assert not (await limiter.hit("deletion_10.0.0.1", max_requests=2)).is_limited


async def test_rate_limiter_forgets_hits_outside_the_window(fake_redis):
    limiter = RateLimiter(fake_redis)
    await fake_redis.zadd("rate-limit:status_1.2.3.4", {"old": time.time() - 7200})

    result = await limiter.hit("status_1.2.3.4", max_requests=1)
    assert not result.is_limited
    assert await fake_redis.zcard("rate-limit:status_1.2.3.4") == 1
