# backend/app/services/calendar_service.py

import logging
from typing import Optional, Dict, Tuple

from app.core.config import settings
from app.data_access.redis_client import HttpCacheRepository
from app.utils.http_client import HttpRequestError, decode_cached_data, http_get

logger = logging.getLogger(__name__)

CALENDAR_RETRY_LIMIT = 3
CALENDAR_BASE_DELAY = 1.0


class InvalidCalendarEndpointError(Exception):
    pass


class CalendarFeedNotConfiguredError(Exception):
    pass


def calendar_feeds() -> Dict[str, Tuple[Optional[str], str]]:
    """Endpoint name -> (iCal feed URL, download file name)."""
    return {
        "sonarr": (settings.SONARR_ICAL_LINK, "Sonarr.ics"),
        "radarr": (settings.RADARR_ICAL_LINK, "Radarr.ics"),
    }


class CalendarService:
    def __init__(self, http_cache: Optional[HttpCacheRepository] = None):
        self.http_cache = http_cache

    async def fetch_calendar(self, endpoint: str) -> Tuple[str, str]:
        """
        Downloads the iCal feed behind ``endpoint``.

        Returns:
            ``(ics_text, file_name)``

        Raises:
            InvalidCalendarEndpointError: For an unknown endpoint.
            CalendarFeedNotConfiguredError: When the feed URL is not set.
            HttpRequestError: When the feed cannot be fetched.
        """
        feeds = calendar_feeds()
        if endpoint not in feeds:
            raise InvalidCalendarEndpointError(f"Unknown calendar endpoint: {endpoint}")
        url, file_name = feeds[endpoint]
        if not url:
            raise CalendarFeedNotConfiguredError(f"No iCal link configured for {endpoint}")

        logger.info(f"Syncing {endpoint} calendar")
        result = await http_get(
            url,
            response_type="text",
            retry_limit=CALENDAR_RETRY_LIMIT,
            base_delay=CALENDAR_BASE_DELAY,
            cache=self.http_cache,
        )
        data = result["data"]
        if data is None and self.http_cache is not None:
            cached_entry = await self.http_cache.get_entry(url)
            data = decode_cached_data(cached_entry or {}, "text")
        if data is None:
            raise HttpRequestError(f"No calendar data available for {endpoint}")
        return data, file_name
