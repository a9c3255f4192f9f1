"""
Database Schemas for the Community Parking App

Each Pydantic model corresponds to a MongoDB collection (collection name is the
lowercased class name). Notifications are a tagged union over ``type``; each
variant carries its own typed ``data`` payload.
"""
from pydantic import BaseModel, Field, TypeAdapter, model_validator
from typing import Annotated, ClassVar, List, Literal, Optional, Union
from datetime import datetime

SpotType = Literal["street", "garage", "lot"]
SpotStatus = Literal["available", "taken", "expired"]


class Location(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, description="Latitude in decimal degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in decimal degrees")
    address: Optional[str] = Field(None, description="Street address")


class Vehicle(BaseModel):
    id: Optional[str] = None
    user_id: str = Field(..., description="Owner of the vehicle")
    make: str
    model: str
    year: int = Field(..., ge=1886)
    license_plate: str
    color: str = ""


class User(BaseModel):
    id: Optional[str] = Field(None, description="Identity provider uid")
    email: str = Field(..., description="Email address")
    display_name: Optional[str] = Field(None, description="Public name shown on the leaderboard")
    photo_url: Optional[str] = None
    created_at: Optional[datetime] = None
    points: int = Field(0, description="Ledger-derived balance")
    vehicles: List[Vehicle] = Field(default_factory=list)


class UserPreferences(BaseModel):
    user_id: str
    notification_radius: float = Field(1, gt=0, description="Radius in miles")
    notifications_enabled: bool = True
    dark_mode_enabled: bool = False
    preferred_parking_types: List[SpotType] = Field(
        default_factory=lambda: ["street", "garage", "lot"]
    )
    max_parking_cost: Optional[float] = Field(None, ge=0, description="None means no limit")


class SpotReport(BaseModel):
    """Fields a reporter supplies for a new spot."""
    location: Location
    expires_at: datetime = Field(..., description="Estimated time the spot stops being free")
    type: SpotType = "street"
    cost: Optional[float] = Field(None, ge=0, description="None means free")
    time_limit: Optional[int] = Field(None, gt=0, description="Minutes; None means no limit")
    is_handicap_accessible: bool = False
    is_ev_charging: bool = False


class ParkingSpot(SpotReport):
    id: Optional[str] = None
    reporter_id: str = Field(..., description="User who reported the spot")
    reporter_name: str = "Anonymous"
    timestamp: datetime
    verified: bool = False
    verified_count: int = Field(0, ge=0)
    photos: List[str] = Field(default_factory=list)
    rating: float = Field(0, ge=0, le=5)
    rating_count: int = Field(0, ge=0)
    status: SpotStatus = "available"
    updated_at: Optional[datetime] = None


class NearbySpot(ParkingSpot):
    distance_m: float = Field(..., ge=0, description="Great-circle distance from the search center")


class SpotRating(BaseModel):
    id: Optional[str] = None
    spot_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    timestamp: datetime


class ParkingSession(BaseModel):
    id: Optional[str] = None
    user_id: str
    spot_id: str
    vehicle_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[int] = Field(None, description="Minutes, set when the session ends")
    cost: Optional[float] = None
    is_active: bool = True
    reminder_set: bool = False
    reminder_time: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_reminder(self):
        if self.reminder_set != (self.reminder_time is not None):
            raise ValueError("reminder_time must be set exactly when reminder_set is true")
        return self


class Reward(BaseModel):
    id: Optional[str] = None
    user_id: str
    type: Literal["points", "badge", "level_up"] = "points"
    points_earned: int
    description: str
    timestamp: datetime
    claimed: bool = False


# Notification payloads, one per notification type

class SpotFoundData(BaseModel):
    notification_type: ClassVar[str] = "spot_found"
    spot_id: str
    latitude: float
    longitude: float
    spot_type: SpotType
    cost: Optional[float] = None


class TimeExpiringData(BaseModel):
    notification_type: ClassVar[str] = "time_expiring"
    session_id: str
    minutes_remaining: int


class RewardEarnedData(BaseModel):
    notification_type: ClassVar[str] = "reward_earned"
    points_earned: int
    description: str


class SpotTakenData(BaseModel):
    notification_type: ClassVar[str] = "spot_taken"
    spot_id: str
    session_id: str


NotificationData = Union[SpotFoundData, TimeExpiringData, RewardEarnedData, SpotTakenData]


class _NotificationBase(BaseModel):
    id: Optional[str] = None
    user_id: str
    title: str
    message: str
    timestamp: datetime
    read: bool = False


class SpotFoundNotification(_NotificationBase):
    type: Literal["spot_found"]
    data: SpotFoundData


class TimeExpiringNotification(_NotificationBase):
    type: Literal["time_expiring"]
    data: TimeExpiringData


class RewardEarnedNotification(_NotificationBase):
    type: Literal["reward_earned"]
    data: RewardEarnedData


class SpotTakenNotification(_NotificationBase):
    type: Literal["spot_taken"]
    data: SpotTakenData


Notification = Annotated[
    Union[SpotFoundNotification, TimeExpiringNotification, RewardEarnedNotification, SpotTakenNotification],
    Field(discriminator="type"),
]
notification_adapter = TypeAdapter(Notification)
