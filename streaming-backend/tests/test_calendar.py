import pytest
from aioresponses import aioresponses

from app.core.config import settings
from app.services.calendar_service import (
    CalendarFeedNotConfiguredError,
    CalendarService,
    InvalidCalendarEndpointError,
)

SONARR_URL = "https://sonarr.example.com/feed/calendar/Sonarr.ics"
ICS = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nEND:VCALENDAR\r\n"


@pytest.fixture
def sonarr_feed(monkeypatch):
    monkeypatch.setattr(settings, "SONARR_ICAL_LINK", SONARR_URL)
    return SONARR_URL


async def test_unknown_and_unconfigured_feeds(monkeypatch):
    monkeypatch.setattr(settings, "RADARR_ICAL_LINK", None)
    service = CalendarService()
    with pytest.raises(InvalidCalendarEndpointError):
        await service.fetch_calendar("lidarr")
    with pytest.raises(CalendarFeedNotConfiguredError):
        await service.fetch_calendar("radarr")


async def test_not_modified_feed_is_served_from_cache(sonarr_feed, http_cache):
    service = CalendarService(http_cache)
    with aioresponses() as mocked:
        mocked.get(sonarr_feed, status=200, body=ICS, headers={"ETag": '"cal-1"'})
        mocked.get(sonarr_feed, status=304)
        first, file_name = await service.fetch_calendar("sonarr")
        second, _ = await service.fetch_calendar("sonarr")

    assert file_name == "Sonarr.ics"
    assert first == second == ICS


async def test_calendar_route(client, users, auth_state, sonarr_feed):
    assert (await client.get("/api/calendar/sonarr")).status_code == 401

    auth_state.user = users["viewer"]
    with aioresponses() as mocked:
        mocked.get(sonarr_feed, status=200, body=ICS)
        response = await client.get("/api/calendar/sonarr")

    assert response.status_code == 200
    assert response.text == ICS
    assert response.headers["content-type"].startswith("text/calendar")
    assert response.headers["content-disposition"] == 'attachment; filename="Sonarr.ics"'

    invalid = await client.get("/api/calendar/lidarr")
    assert invalid.status_code == 400
    assert invalid.json() == {"error": "Invalid endpoint"}


async def test_calendar_route_upstream_failure(client, users, auth_state, sonarr_feed):
    auth_state.user = users["viewer"]
    with aioresponses() as mocked:
        mocked.get(sonarr_feed, status=404)
        response = await client.get("/api/calendar/sonarr")
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to sync data"}
