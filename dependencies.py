# dependencies.py
from typing import Optional
import requests
from fastapi import Request, HTTPException, Header, Depends, status
from starlette.concurrency import run_in_threadpool

from config import get_api_key, get_auth_base_url, get_auth_user_endpoint
from errors import AuthError, SessionNotFoundError
from helpers.profile_store import ProfileStore
from models.session_models import Identity
from services.session import PresenceSession, SessionManager

API_KEY = get_api_key()
AUTH_BASE_URL = get_auth_base_url()
AUTH_USER_ENDPOINT = get_auth_user_endpoint()


def get_store(request: Request) -> ProfileStore:
    return request.app.state.store


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_client_ip(request: Request) -> Optional[str]:
    """Best-effort public address of the device, for IP geolocation."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def verify_api_key(api_key: str = Header(...)):
    """Verify API key from request header."""
    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Unauthorized API access")
    return api_key


def fetch_identity(token: str) -> Identity:
    """Resolve a session token to the identity issued by the auth service."""
    headers = {"Authorization": f"Bearer {token}"}

    try:
        response = requests.get(f"{AUTH_BASE_URL}{AUTH_USER_ENDPOINT}", headers=headers, timeout=3)
    except requests.RequestException:
        raise AuthError("Unable to verify credentials at this time", unavailable=True)

    if response.status_code != 200:
        raise AuthError("Invalid authentication credentials")

    try:
        body = response.json()
    except ValueError:
        raise AuthError("Malformed response from auth service", unavailable=True)

    user_id = body.get("id")
    if not user_id:
        raise AuthError("No active session found")
    return Identity(user_id=str(user_id), email=body.get("email"))


async def verify_session(authorization: Optional[str] = Header(None)) -> Identity:
    """Verify the bearer session token and return the caller's identity."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication headers"
        )

    token = authorization.split(" ", 1)[1].strip()
    try:
        return await run_in_threadpool(fetch_identity, token)
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE if e.unavailable else status.HTTP_401_UNAUTHORIZED,
            detail=str(e)
        )


async def get_presence_session(
    identity: Identity = Depends(verify_session),
    sessions: SessionManager = Depends(get_sessions)
) -> PresenceSession:
    """Get the caller's open presence session."""
    try:
        return sessions.get(identity.user_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
