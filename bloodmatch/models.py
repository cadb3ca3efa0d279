"""
Domain records shared by the matching engine and the web layer.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import NamedTuple

from pydantic import BaseModel, Field


class BloodType(StrEnum):
    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"
    O_POS = "O+"
    O_NEG = "O-"


class Availability(StrEnum):
    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"
    BUSY = "Busy"
    TEMPORARILY_UNAVAILABLE = "TemporarilyUnavailable"


class Verification(StrEnum):
    UNVERIFIED = "Unverified"
    PENDING = "Pending"
    VERIFIED = "Verified"
    REJECTED = "Rejected"


class Badge(StrEnum):
    BRONZE = "Bronze"
    SILVER = "Silver"
    GOLD = "Gold"
    PLATINUM = "Platinum"  # declared tier, never assigned


class Urgency(StrEnum):
    NORMAL = "Normal"
    URGENT = "Urgent"
    CRITICAL = "Critical"
    LIFE_THREATENING = "LifeThreatening"


class RequestStatus(StrEnum):
    ACTIVE = "Active"
    MATCHING = "Matching"
    DONORS_FOUND = "DonorsFound"
    FULFILLED = "Fulfilled"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


OPEN_STATUSES = frozenset(
    {RequestStatus.ACTIVE, RequestStatus.MATCHING, RequestStatus.DONORS_FOUND}
)
TERMINAL_STATUSES = frozenset(
    {RequestStatus.FULFILLED, RequestStatus.CANCELLED, RequestStatus.EXPIRED}
)


class NotificationType(StrEnum):
    EMERGENCY_REQUEST = "EmergencyRequest"
    REQUEST_MATCH = "RequestMatch"
    DONATION_REMINDER = "DonationReminder"
    VERIFICATION = "Verification"
    SYSTEM = "System"


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class GeoPoint(BaseModel):
    latitude: float
    longitude: float


class DonorRecord(BaseModel):
    id: str
    name: str
    blood_type: BloodType
    location: GeoPoint | None = None
    availability: Availability | None = None
    verification: Verification | None = None
    total_donations: int = 0
    volume_donated_ml: float = 0
    lives_saved: int = 0
    last_donation_date: datetime | None = None
    next_eligible_date: datetime | None = None
    badge: Badge = Badge.BRONZE
    travel_radius_km: float = 25
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EmergencyRequest(BaseModel):
    id: str
    requester_id: str | None = None
    patient_name: str
    blood_type: BloodType
    units_needed: int = Field(default=1, ge=1)
    urgency: Urgency = Urgency.NORMAL
    hospital_name: str = ""
    location: GeoPoint
    status: RequestStatus = RequestStatus.ACTIVE
    created_at: datetime
    expires_at: datetime
    updated_at: datetime | None = None
    fulfilled_at: datetime | None = None
    fulfilled_by: str | None = None  # Donor ID
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    donor_ids: list[str] = Field(default_factory=list)
    interested_donor_ids: list[str] = Field(default_factory=list)
    notification_count: int = 0
    last_notification_sent: datetime | None = None


class DonationRecord(BaseModel):
    id: str
    donor_id: str
    emergency_request_id: str | None = None
    blood_type: BloodType
    volume_ml: float
    donated_at: datetime
    donation_type: str = "Emergency"
    status: str = "Completed"


class NotificationIntent(BaseModel):
    id: str
    user_id: str
    title: str
    message: str
    type: NotificationType = NotificationType.SYSTEM
    related_entity_id: str | None = None
    related_entity_type: str | None = None
    read: bool = False
    created_at: datetime


class Candidate(NamedTuple):
    donor: DonorRecord
    distance_km: float


class EmergencyRequestCreate(BaseModel):
    requester_id: str | None = None
    patient_name: str
    blood_type: BloodType
    units_needed: int = Field(default=1, ge=1)
    urgency: Urgency = Urgency.NORMAL
    hospital_name: str = ""
    location: GeoPoint


class DonorProfileUpdate(BaseModel):
    """Fields the donor or an admin may change outside the engine."""

    name: str | None = None
    location: GeoPoint | None = None
    availability: Availability | None = None
    verification: Verification | None = None
    travel_radius_km: float | None = Field(default=None, gt=0)
