"""
Pydantic schemas for the safety API.

Separated from the route handlers so they are reusable across
the codebase (WebSocket handlers, background workers, tests).

The caller identity travels as an explicit ``user_id`` field;
authentication happens in front of this service.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from backend.app.safety.models import (
    CheckInStatus,
    FollowMeSettings,
    Location,
    SafetyAlertCategory,
    Severity,
    TriggerSource,
)


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    """A position as reported by the mobile app."""
    latitude: float = Field(
        ..., ge=-90.0, le=90.0,
        description="Latitude in decimal degrees",
        examples=[12.9716],
    )
    longitude: float = Field(
        ..., ge=-180.0, le=180.0,
        description="Longitude in decimal degrees",
        examples=[77.5946],
    )
    accuracy: Optional[float] = Field(None, ge=0, description="GPS accuracy in metres")
    address: Optional[str] = Field(None, examples=["Main Library, North Gate"])
    timestamp: Optional[datetime] = None

    def to_location(self) -> Location:
        return Location(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy=self.accuracy,
            address=self.address,
            timestamp=self.timestamp,
        )


def _location(value: Optional[LocationInput]) -> Optional[Location]:
    return value.to_location() if value else None


# ---------------------------------------------------------------------------
# SOS
# ---------------------------------------------------------------------------

class SOSTriggerRequest(BaseModel):
    # Optional so a missing id is reported by the service's own validation
    user_id: Optional[str] = Field(None, examples=["U-1001"])
    message: Optional[str] = Field(None, max_length=500)
    summary: Optional[str] = Field(None, max_length=2000)
    severity: Optional[Severity] = None
    location: Optional[LocationInput] = None
    trigger_source: Optional[TriggerSource] = None

    def location_value(self) -> Optional[Location]:
        return _location(self.location)


class SOSTriggerResponse(BaseModel):
    alert_id: str
    status: str
    created_at: str


class SOSResolveRequest(BaseModel):
    resolver_id: str = Field(..., min_length=1, examples=["SEC-7"])
    notes: Optional[str] = Field(None, max_length=2000)


# ---------------------------------------------------------------------------
# Guardian
# ---------------------------------------------------------------------------

class GuardianStartRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    destination: str = Field(..., min_length=1, examples=["Hostel Block C"])
    destination_coords: LocationInput
    estimated_duration_minutes: int = Field(..., ge=1, le=24 * 60, examples=[15])
    trusted_contact_ids: List[str] = Field(default_factory=list)
    current_location: Optional[LocationInput] = None


class GuardianLocationRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    location: LocationInput
    status: Optional[CheckInStatus] = None
    message: Optional[str] = Field(None, max_length=500)


class GuardianEndRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Follow Me
# ---------------------------------------------------------------------------

class FollowMeSettingsInput(BaseModel):
    update_interval_seconds: Optional[int] = Field(None, ge=1)
    max_history_points: Optional[int] = Field(None, ge=1, le=10_000)
    share_address: Optional[bool] = None

    def merged_with(self, defaults: FollowMeSettings) -> FollowMeSettings:
        values = defaults.to_dict()
        values.update(self.model_dump(exclude_none=True))
        return FollowMeSettings(**values)


class FollowMeStartRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    location: LocationInput
    duration_seconds: Optional[int] = Field(None, ge=60, le=24 * 3600)
    share_with_contact_ids: List[str] = Field(default_factory=list)
    settings: Optional[FollowMeSettingsInput] = None


class FollowMeStartResponse(BaseModel):
    session_id: str
    expires_at: str
    sharing_with: List[str]


class FollowMeLocationRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    location: LocationInput


class FollowMeStopRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class FollowMeSettingsRequest(FollowMeSettingsInput):
    user_id: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Safety alerts
# ---------------------------------------------------------------------------

class SafetyAlertRequest(BaseModel):
    reporter_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200, examples=["Broken street light"])
    description: str = Field(..., min_length=1, max_length=2000)
    category: SafetyAlertCategory = SafetyAlertCategory.OTHER
    severity: Severity = Severity.MEDIUM
    location: LocationInput
    radius_m: Optional[float] = Field(None, gt=0, le=50_000)
    is_anonymous: bool = False


class SafetyAlertResponse(BaseModel):
    alert_id: str
    severity: str
    category: str
    radius_m: float
    recipients_targeted: int
    recipients_reached: int
    created_at: str
