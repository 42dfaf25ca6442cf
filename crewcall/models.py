"""
Domain models for crew, devices, locations, shifts and service requests.
"""

from datetime import datetime
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, Field


def new_id() -> str:
    return uuid4().hex


class DutyStatus(StrEnum):
    ON_DUTY = "on-duty"
    OFF_DUTY = "off-duty"
    ON_LEAVE = "on-leave"


class UserRole(StrEnum):
    ADMIN = "admin"
    CHIEF_STEWARDESS = "chief-stewardess"
    CREW = "crew"


class DeviceType(StrEnum):
    SMART_BUTTON = "smart_button"
    WATCH = "watch"
    REPEATER = "repeater"
    MOBILE_APP = "mobile_app"


class DeviceStatus(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    LOW_BATTERY = "low_battery"


class RequestType(StrEnum):
    SERVICE = "service"
    EMERGENCY = "emergency"
    VOICE = "voice"
    DND = "dnd"
    LIGHTS = "lights"
    PREPARE_FOOD = "prepare_food"
    BRING_DRINKS = "bring_drinks"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    URGENT = "urgent"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @property
    def is_urgent(self) -> bool:
        return self.rank >= _PRIORITY_RANK[Priority.URGENT]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.URGENT: 2,
    Priority.EMERGENCY: 3,
}


class RequestStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (RequestStatus.PENDING, RequestStatus.ACCEPTED)


class ActivityType(StrEnum):
    BUTTON_PRESS = "button_press"
    REQUEST_CREATED = "request_created"
    REQUEST_ACCEPTED = "request_accepted"
    REQUEST_DECLINED = "request_declined"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_CANCELLED = "request_cancelled"


class User(BaseModel):
    id: str = Field(default_factory=new_id)
    username: str
    role: UserRole = UserRole.CREW


class CrewMember(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    department: str
    position: str
    status: DutyStatus = DutyStatus.OFF_DUTY
    user_id: str | None = None  # linked User account, 1:1
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Device(BaseModel):
    id: str = Field(default_factory=new_id)
    device_id: str  # stable hardware identifier
    name: str | None = None
    mac_address: str | None = None
    type: DeviceType
    sub_type: str | None = None
    status: DeviceStatus = DeviceStatus.ONLINE
    battery_level: int | None = None
    signal_strength: int | None = None
    last_seen: datetime | None = None
    crew_member_id: str | None = None
    location_id: str | None = None

    @property
    def reachable(self) -> bool:
        return self.status != DeviceStatus.OFFLINE


class Location(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    type: str
    department: str | None = None  # restricts which crew get notified
    smart_button_id: str | None = None


class Shift(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    start_time: str  # HH:MM
    end_time: str  # HH:MM, may be earlier than start_time for overnight shifts
    primary_count: int = 1
    backup_count: int = 0
    color: str
    sequence: int = 0  # creation order, drives the palette


class ServiceRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    button_id: str | None = None
    location_id: str | None = None
    location_name: str | None = None
    guest_name: str | None = None
    guest_id: str | None = None
    request_type: RequestType = RequestType.SERVICE
    priority: Priority = Priority.NORMAL
    status: RequestStatus = RequestStatus.PENDING
    message: str | None = None
    assigned_to_id: str | None = None  # CrewMember ID
    declined_crew_ids: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    accepted_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class ServiceRequestHistory(BaseModel):
    id: str = Field(default_factory=new_id)
    request_id: str
    previous_status: RequestStatus
    new_status: RequestStatus
    acting_crew_id: str | None = None
    request_type: RequestType
    priority: Priority
    location_name: str | None = None
    response_time: int | None = None  # seconds, created -> accepted
    completion_time: int | None = None  # seconds, accepted -> completed
    recorded_at: datetime


class Guest(BaseModel):
    id: str = Field(default_factory=new_id)
    first_name: str
    last_name: str
    location_id: str | None = None  # cabin the guest is staying in
    created_at: datetime

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ActivityLog(BaseModel):
    """Append-only record of what happened to a request and by whom."""

    id: str = Field(default_factory=new_id)
    type: ActivityType
    details: str
    request_id: str | None = None
    crew_member_id: str | None = None
    device_id: str | None = None
    location_id: str | None = None
    guest_id: str | None = None
    response_time: int | None = None  # seconds, created -> accepted
    recorded_at: datetime
