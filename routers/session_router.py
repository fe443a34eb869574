# routers/session_router.py
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status

from dependencies import get_client_ip, get_sessions, verify_api_key, verify_session
from errors import SessionNotFoundError
from models.session_models import Identity, SessionInfo
from models.shared import StandardResponse
from services.session import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["session"])


@router.post("", response_model=StandardResponse[SessionInfo])
async def open_session(
    request: Request,
    api_key: str = Depends(verify_api_key),
    identity: Identity = Depends(verify_session),
    sessions: SessionManager = Depends(get_sessions)
):
    """
    Sign the caller in.

    Ensures a profile exists for the verified identity and starts location
    sync, presence heartbeat and the nearby view. Opening twice returns the
    existing session. When the profile could not be stored the session runs
    degraded: positions are tracked locally but nothing is written.
    """
    session = await sessions.open(identity, client_ip=get_client_ip(request))
    info = session.info()
    message = "Temporary profile. Retry later to save your profile." if session.degraded else ""
    return StandardResponse(data=info, message=message)


@router.post("/retry", response_model=StandardResponse[SessionInfo])
async def retry_profile(
    api_key: str = Depends(verify_api_key),
    identity: Identity = Depends(verify_session),
    sessions: SessionManager = Depends(get_sessions)
):
    """Re-run profile provisioning for a degraded session."""
    try:
        session = await sessions.retry(identity)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return StandardResponse(data=session.info())


@router.delete("", response_model=StandardResponse[dict])
async def close_session(
    api_key: str = Depends(verify_api_key),
    identity: Identity = Depends(verify_session),
    sessions: SessionManager = Depends(get_sessions)
):
    """Sign out: stop tracking, mark offline and forget the cached position."""
    try:
        await sessions.close(identity.user_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return StandardResponse(data={}, message="Logout successful")
