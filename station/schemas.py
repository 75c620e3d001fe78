"""
station/schemas.py

Pydantic data models for the station core.
- Device / LocationSample: registry records mutated only by the presence tracker
- ScheduledOperation: time-boxed remote operation owned by the schedule engine
- SignalEvent / ScheduleRequest: inbound payloads
- PresenceView: read surface handed to the rendering layer

Records are frozen; every change produces a new instance so readers always
hold a consistent snapshot.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class PresenceState(str, Enum):
    ONLINE = "Online"
    OFFLINE = "Offline"


class OperationType(str, Enum):
    AUDIO = "Audio"
    VIDEO = "Video"

    @property
    def media(self) -> str:
        """Path segment used by the remote recording endpoints."""
        return self.value.lower()


class OperationStatus(str, Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


# The only legal lifecycle edges
ALLOWED_TRANSITIONS: frozenset[tuple[OperationStatus, OperationStatus]] = frozenset(
    {
        (OperationStatus.PENDING, OperationStatus.ACTIVE),
        (OperationStatus.ACTIVE, OperationStatus.COMPLETED),
        (OperationStatus.PENDING, OperationStatus.CANCELLED),
    }
)

TERMINAL_STATUSES: frozenset[OperationStatus] = frozenset(
    {OperationStatus.COMPLETED, OperationStatus.CANCELLED}
)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp leniently.

    Returns None for absent or unparsable input instead of raising.
    Naive values are taken as UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        if not value.strip():
            return None
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LocationSample(BaseModel):
    """Last known position of a device, kept for display."""

    model_config = ConfigDict(frozen=True)

    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    timestamp: Optional[datetime] = None  # claimed sample time


class Device(BaseModel):
    """A remote endpoint as seen by the station."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: Optional[str] = None
    last_signal_at: Optional[datetime] = None  # reception time of the last signal
    presence_state: PresenceState = PresenceState.OFFLINE
    location_sample: Optional[LocationSample] = None


class ScheduledOperation(BaseModel):
    """
    A time-boxed remote recording.

    Serialized with aliases to the persisted shape:
    {id, deviceId, type, scheduledDateTime, duration, note, status, createdAt}.
    The remote-tracking fields record what the gateway actually confirmed;
    status itself follows the wall clock.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    device_id: str = Field(alias="deviceId")
    op_type: OperationType = Field(alias="type")
    scheduled_at: datetime = Field(alias="scheduledDateTime")
    duration_minutes: int = Field(alias="duration")
    note: Optional[str] = None
    status: OperationStatus = OperationStatus.PENDING
    created_at: datetime = Field(alias="createdAt")

    start_confirmed: bool = Field(default=False, alias="startConfirmed")
    stop_confirmed: bool = Field(default=False, alias="stopConfirmed")
    remote_ref: Optional[str] = Field(default=None, alias="remoteRef")
    artifact_ref: Optional[str] = Field(default=None, alias="artifactRef")
    last_error: Optional[str] = Field(default=None, alias="lastError")
    finished_at: Optional[datetime] = Field(default=None, alias="finishedAt")

    @property
    def ends_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SignalEvent(BaseModel):
    """Inbound signal from the telemetry channel."""

    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(alias="deviceId")
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    # Kept raw: an unparsable claimed timestamp must not reject the signal
    timestamp: Optional[str] = None


class ScheduleRequest(BaseModel):
    """Request body for POST /schedules."""

    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(alias="deviceId")
    op_type: OperationType = Field(alias="type")
    scheduled_at: datetime = Field(alias="scheduledDateTime")
    duration_minutes: int = Field(alias="duration")
    note: Optional[str] = None


class PresenceView(BaseModel):
    """Presence read surface for one device."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    device_id: str = Field(alias="deviceId")
    presence_state: PresenceState = Field(alias="presenceState")
    last_signal_at: Optional[datetime] = Field(default=None, alias="lastSignalAt")
    location_sample: Optional[LocationSample] = Field(
        default=None, alias="locationSample"
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class LoginRequest(BaseModel):
    """Request body for POST /session/login."""

    username: str
    password: str
