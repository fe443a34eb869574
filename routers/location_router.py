# routers/location_router.py
import logging
from fastapi import APIRouter, Depends, HTTPException

from dependencies import get_presence_session, verify_api_key
from errors import StoreError
from models.location_models import (
    NearbyByCoordinatesRequest,
    NearbyView,
    PositionFix,
    SensorErrorReport,
)
from models.shared import StandardResponse
from services.session import PresenceSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["location"])


@router.post("/location", response_model=StandardResponse[dict])
async def report_location(
    fix: PositionFix,
    api_key: str = Depends(verify_api_key),
    session: PresenceSession = Depends(get_presence_session)
):
    """Accept a device position fix; the sync policy decides whether it is stored."""
    session.stream.publish(fix)
    return StandardResponse(data={}, message="Location received")


@router.post("/location/error", response_model=StandardResponse[dict])
async def report_location_error(
    report: SensorErrorReport,
    api_key: str = Depends(verify_api_key),
    session: PresenceSession = Depends(get_presence_session)
):
    """Accept a device sensor error; a coarse fallback position is used instead."""
    session.stream.report_error(report)
    return StandardResponse(data={}, message="Falling back to approximate location")


@router.get("/nearby", response_model=StandardResponse[NearbyView])
async def get_nearby(
    refresh: bool = False,
    api_key: str = Depends(verify_api_key),
    session: PresenceSession = Depends(get_presence_session)
):
    """Nearby online users around the caller's last known position."""
    index = session.index
    message = ""

    if index.origin is None:
        message = "Waiting for a location fix"
    elif refresh:
        try:
            await index.refresh(session.user_id, index.origin)
        except StoreError as e:
            logger.error(f"Nearby users error: {e}")
            message = "Showing last known results"

    view = NearbyView(
        origin=index.origin,
        refreshed_at=index.refreshed_at,
        nearby_users=index.view,
        total_found=len(index.view),
    )
    return StandardResponse(data=view, message=message)


@router.post("/nearby_by_coordinates", response_model=StandardResponse[NearbyView])
async def find_nearest_users_by_coords(
    req: NearbyByCoordinatesRequest,
    api_key: str = Depends(verify_api_key),
    session: PresenceSession = Depends(get_presence_session)
):
    """Nearby online users around the given coordinates, without moving the caller."""
    origin = (req.latitude, req.longitude)
    try:
        nearby_users = await session.index.query(session.user_id, origin)
    except StoreError as e:
        logger.error(f"Nearby users error: {e}")
        raise HTTPException(status_code=503, detail="Nearby users are temporarily unavailable")

    view = NearbyView(origin=origin, nearby_users=nearby_users, total_found=len(nearby_users))
    return StandardResponse(data=view)
