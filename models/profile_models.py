from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime, timezone
import json
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class ProfileStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"


PROFILE_COLUMNS = (
    "id", "username", "gender", "avatar_url", "latitude", "longitude",
    "is_online", "last_online", "location_updated_at", "age", "bio",
    "interests", "location", "created_at",
)


class Profile(BaseModel):
    id: str
    username: Optional[str] = None
    gender: Gender = Gender.MALE
    avatar_url: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_online: bool = False
    last_online: Optional[datetime] = None
    location_updated_at: Optional[datetime] = None
    age: Optional[int] = None
    bio: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    location: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator('gender', mode='before')
    @classmethod
    def default_gender(cls, v):
        if v is None or v == "":
            return Gender.MALE
        return v

    @field_validator('is_online', mode='before')
    @classmethod
    def null_is_offline(cls, v):
        return bool(v) if v is not None else False

    @field_validator('interests', mode='before')
    @classmethod
    def parse_interests(cls, v):
        if v is None:
            return []

        # jsonb columns come back from asyncpg as text
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                logger.warning(f"Error parsing interests: {v}")
                return []
            return parsed if isinstance(parsed, list) else []

        if isinstance(v, (list, tuple)):
            return list(v)

        return []

    @model_validator(mode='after')
    def position_both_or_neither(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must both be set or both be null")
        return self

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def from_row(cls, row) -> "Profile":
        return cls(**dict(row))


def default_username(identity: str, email: Optional[str]) -> str:
    """Derive a display name from the email local-part."""
    local_part = (email or "").split("@")[0]
    return local_part or f"user_{identity[:8]}"


def new_profile(identity: str, email: Optional[str], now: Optional[datetime] = None) -> Profile:
    """Build the row inserted the first time an identity signs in."""
    now = now or datetime.now(timezone.utc)
    return Profile(
        id=identity,
        username=default_username(identity, email),
        gender=Gender.MALE,
        avatar_url=None,
        latitude=None,
        longitude=None,
        is_online=True,
        last_online=now,
        location_updated_at=None,
        interests=[],
        created_at=now,
    )


class ProfileResult(BaseModel):
    """Outcome of provisioning: a persisted row, or a placeholder with a reason."""
    status: ProfileStatus
    profile: Profile
    reason: Optional[str] = None

    @classmethod
    def ok(cls, profile: Profile) -> "ProfileResult":
        return cls(status=ProfileStatus.OK, profile=profile)

    @classmethod
    def degraded(cls, profile: Profile, reason: str) -> "ProfileResult":
        return cls(status=ProfileStatus.DEGRADED, profile=profile, reason=reason)

    @property
    def is_degraded(self) -> bool:
        return self.status == ProfileStatus.DEGRADED


class ProfileUpdate(BaseModel):
    """User-editable public attributes."""
    username: Optional[str] = Field(default=None, min_length=1, max_length=64)
    gender: Optional[Gender] = None
    avatar_url: Optional[str] = None
    age: Optional[int] = Field(default=None, ge=13, le=120)
    bio: Optional[str] = Field(default=None, max_length=500)
    interests: Optional[List[str]] = None
    location: Optional[str] = Field(default=None, max_length=120)

    @field_validator('username', 'gender')
    @classmethod
    def reject_null(cls, v, info):
        # Omitted fields are left alone; an explicit null cannot be stored
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v

    @field_validator('interests')
    @classmethod
    def strip_interests(cls, v):
        if v is None:
            return v
        return [item.strip() for item in v if item and item.strip()]

    def changes(self) -> dict:
        return self.model_dump(mode="json", exclude_unset=True)
