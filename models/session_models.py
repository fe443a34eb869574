from pydantic import BaseModel
from typing import Optional, Tuple
from models.location_models import WatchOptions
from models.profile_models import Profile, ProfileStatus


class Identity(BaseModel):
    """The caller as verified by the auth service."""
    user_id: str
    email: Optional[str] = None


class SessionInfo(BaseModel):
    user_id: str
    profile: Profile
    status: ProfileStatus
    reason: Optional[str] = None
    origin: Optional[Tuple[float, float]] = None
    watch_options: WatchOptions
