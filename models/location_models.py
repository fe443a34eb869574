# models/location_models.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Tuple
from datetime import datetime, timezone
from enum import Enum
from geo import normalize_coordinates
from models.profile_models import Gender


class LocationSource(str, Enum):
    GPS = "gps"
    IP_FALLBACK = "ip-fallback"
    STATIC_FALLBACK = "static-fallback"


class LocationSample(BaseModel):
    latitude: float
    longitude: float
    captured_at: datetime
    source: LocationSource = LocationSource.GPS

    @classmethod
    def create(cls, latitude: float, longitude: float, source: LocationSource,
               captured_at: Optional[datetime] = None) -> "LocationSample":
        lat, lon = normalize_coordinates(latitude, longitude)
        return cls(
            latitude=lat,
            longitude=lon,
            captured_at=captured_at or datetime.now(timezone.utc),
            source=source,
        )

    @property
    def position(self) -> tuple:
        return self.latitude, self.longitude


class SyncState(BaseModel):
    last_persisted_location: Tuple[float, float]
    last_persisted_at: datetime


class CandidateUser(BaseModel):
    id: str
    username: Optional[str] = None
    gender: Gender = Gender.MALE
    avatar_url: Optional[str] = None
    age: Optional[int] = None
    bio: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    location: Optional[str] = None
    is_online: bool = True
    last_online: Optional[datetime] = None
    latitude: float
    longitude: float
    location_updated_at: Optional[datetime] = None
    distance_km: float


class PositionFix(BaseModel):
    """A raw fix posted by the device."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float
    captured_at: Optional[datetime] = None
    accuracy_m: Optional[float] = None

    @field_validator('captured_at')
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class SensorErrorCode(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"


class SensorErrorReport(BaseModel):
    code: SensorErrorCode
    message: Optional[str] = None


class NearbyByCoordinatesRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float


class WatchOptions(BaseModel):
    """Options the device should pass to its position watcher."""
    enable_high_accuracy: bool = False
    timeout_ms: int = 10000
    maximum_age_ms: int = 30000


class NearbyView(BaseModel):
    origin: Optional[Tuple[float, float]] = None
    refreshed_at: Optional[datetime] = None
    nearby_users: List[CandidateUser] = Field(default_factory=list)
    total_found: int = 0
