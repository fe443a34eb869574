# routers/profile_router.py
import logging
from fastapi import APIRouter, Depends, HTTPException, status

from dependencies import get_store, verify_api_key, verify_session
from errors import StoreError
from helpers.profile_store import ProfileStore
from models.profile_models import Profile, ProfileUpdate
from models.session_models import Identity
from models.shared import StandardResponse

# Set up logging
logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["profiles"],
    responses={404: {"description": "Profile not found"}}
)


@router.get("/me", response_model=StandardResponse[Profile])
async def get_profile(
    api_key: str = Depends(verify_api_key),
    identity: Identity = Depends(verify_session),
    store: ProfileStore = Depends(get_store)
):
    """Retrieve the caller's stored profile."""
    try:
        profile = await store.fetch_profile(identity.user_id)
    except StoreError as e:
        logger.error(f"Error retrieving profile for user {identity.user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Profile store unavailable")

    if profile is None:
        raise HTTPException(status_code=404, detail=f"Profile for user {identity.user_id} not found")
    return StandardResponse(data=profile)


@router.put("/me", response_model=StandardResponse[Profile])
async def update_profile(
    update: ProfileUpdate,
    api_key: str = Depends(verify_api_key),
    identity: Identity = Depends(verify_session),
    store: ProfileStore = Depends(get_store)
):
    """
    Update the caller's public attributes.

    Only fields present in the body change. Identity, position and presence
    columns are not editable here.
    """
    changes = update.changes()
    logger.info(f"Received profile update for user {identity.user_id}: {sorted(changes)}")

    try:
        profile = await store.update_profile(identity.user_id, changes)
    except StoreError as e:
        logger.error(f"Error updating profile for user {identity.user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Profile update failed")

    if profile is None:
        raise HTTPException(status_code=404, detail=f"Profile for user {identity.user_id} not found")
    return StandardResponse(data=profile, message="Profile updated")
