import math
from datetime import UTC, datetime

import pytest

from bloodmatch.config import Settings
from bloodmatch.database import DONORS, EMERGENCY_REQUESTS, InMemoryRecordStore
from bloodmatch.engine import MatchingEngine
from bloodmatch.geo import EARTH_RADIUS_KM
from bloodmatch.lifecycle import deadline_for
from bloodmatch.models import (
    Availability,
    BloodType,
    DonorRecord,
    EmergencyRequest,
    GeoPoint,
    RequestStatus,
    Urgency,
    Verification,
)

T0 = datetime(2025, 7, 2, 12, 0, 0, tzinfo=UTC)
HOSPITAL = GeoPoint(latitude=40.7128, longitude=-74.0060)
KM_PER_DEGREE = EARTH_RADIUS_KM * math.pi / 180


def km_north(km: float, origin: GeoPoint = HOSPITAL) -> GeoPoint:
    # along a meridian the haversine distance is exactly R * dlat
    return GeoPoint(
        latitude=origin.latitude + km / KM_PER_DEGREE,
        longitude=origin.longitude,
    )


class FakeClock:
    """Monotonic clock for the cache that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeNow:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now += delta


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def hospital() -> GeoPoint:
    return HOSPITAL


@pytest.fixture
def make_donor():
    def _make(
        donor_id: str,
        blood_type: BloodType | str = BloodType.O_NEG,
        km: float | None = 5.0,
        **overrides,
    ) -> DonorRecord:
        fields = {
            "id": donor_id,
            "name": donor_id.title(),
            "blood_type": blood_type,
            "location": km_north(km) if km is not None else None,
            "availability": Availability.AVAILABLE,
            "verification": Verification.VERIFIED,
        }
        fields.update(overrides)
        return DonorRecord(**fields)

    return _make


@pytest.fixture
def make_request():
    def _make(
        request_id: str = "req-1",
        blood_type: BloodType | str = BloodType.O_NEG,
        urgency: Urgency = Urgency.CRITICAL,
        created_at: datetime = T0,
        **overrides,
    ) -> EmergencyRequest:
        fields = {
            "id": request_id,
            "requester_id": "requester-1",
            "patient_name": "Pat Doe",
            "blood_type": blood_type,
            "urgency": urgency,
            "hospital_name": "City General",
            "location": HOSPITAL,
            "status": RequestStatus.ACTIVE,
            "created_at": created_at,
            "expires_at": created_at + deadline_for(urgency),
        }
        fields.update(overrides)
        return EmergencyRequest(**fields)

    return _make


@pytest.fixture
def fake_now() -> FakeNow:
    return FakeNow()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def engine(store, fake_now, fake_clock) -> MatchingEngine:
    return MatchingEngine(store, Settings(), now_fn=fake_now, clock=fake_clock)


@pytest.fixture
def seed(store):
    """Put donors and requests straight into the store, bypassing the cache."""

    def _seed(*records) -> None:
        for record in records:
            collection = (
                EMERGENCY_REQUESTS if isinstance(record, EmergencyRequest) else DONORS
            )
            store.create(collection, record)

    return _seed
