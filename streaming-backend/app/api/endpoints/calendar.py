# backend/app/api/endpoints/calendar.py

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, Response

from app.api.deps import get_current_user, get_http_cache
from app.data_access.redis_client import HttpCacheRepository
from app.services.calendar_service import CalendarService, InvalidCalendarEndpointError

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(get_current_user)])


def get_calendar_service(
    http_cache: Optional[HttpCacheRepository] = Depends(get_http_cache),
) -> CalendarService:
    return CalendarService(http_cache=http_cache)


@router.get(
    "/{endpoint}",
    summary="Download a Release Calendar",
    description="Proxies the Sonarr or Radarr iCal feed as a downloadable .ics file.",
    response_class=Response,
    responses={200: {"content": {"text/calendar": {}}}, 400: {"description": "Invalid endpoint"}},
)
async def sync_calendar(
    endpoint: str,
    calendar_service: CalendarService = Depends(get_calendar_service),
):
    try:
        ics, file_name = await calendar_service.fetch_calendar(endpoint)
    except InvalidCalendarEndpointError:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid endpoint"})
    except Exception as e:
        logger.error(f"Error syncing {endpoint} calendar: {e}", exc_info=True)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Failed to sync data"})

    return Response(
        content=ics,
        media_type="text/calendar",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )
