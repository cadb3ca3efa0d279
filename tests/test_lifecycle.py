import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from bloodmatch.database import DONATION_RECORDS, DONORS, EMERGENCY_REQUESTS
from bloodmatch.errors import (
    DonorNotEligible,
    InvalidCoordinate,
    InvalidDonationVolume,
    InvalidTransition,
    RecordNotFound,
)
from bloodmatch.lifecycle import (
    TRANSITIONS,
    active_requests,
    check_transition,
    deadline_for,
    expire_overdue,
)
from bloodmatch.models import (
    OPEN_STATUSES,
    BloodType,
    EmergencyRequestCreate,
    GeoPoint,
    NotificationType,
    RequestStatus,
    Urgency,
    Verification,
)

ALLOWED = {
    (RequestStatus.ACTIVE, "begin_matching"),
    (RequestStatus.MATCHING, "record_candidates_found"),
    (RequestStatus.DONORS_FOUND, "fulfill"),
    *((s, "cancel") for s in OPEN_STATUSES),
    *((s, "expire") for s in OPEN_STATUSES),
}


@pytest.mark.parametrize(
    "urgency,hours",
    [
        (Urgency.CRITICAL, 3),
        (Urgency.URGENT, 12),
        (Urgency.NORMAL, 24),
        (Urgency.LIFE_THREATENING, 24),
    ],
)
def test_deadline_table(urgency, hours) -> None:
    assert deadline_for(urgency) == timedelta(hours=hours)


@pytest.mark.parametrize("status", list(RequestStatus))
@pytest.mark.parametrize("action", list(TRANSITIONS))
def test_transition_table_is_total(status, action) -> None:
    if (status, action) in ALLOWED:
        target = check_transition(status, action)
        assert target != RequestStatus.ACTIVE
    else:
        with pytest.raises(InvalidTransition) as exc_info:
            check_transition(status, action)
        assert exc_info.value.from_status == status
        assert exc_info.value.attempted == action


def _payload(**overrides) -> EmergencyRequestCreate:
    fields = {
        "requester_id": "requester-1",
        "patient_name": "Pat Doe",
        "blood_type": BloodType.O_NEG,
        "units_needed": 2,
        "urgency": Urgency.CRITICAL,
        "hospital_name": "City General",
        "location": GeoPoint(latitude=40.7128, longitude=-74.006),
    }
    fields.update(overrides)
    return EmergencyRequestCreate(**fields)


def test_create_sets_active_and_expiry(engine, t0) -> None:
    request = engine.lifecycle.create(_payload())

    assert request.status == RequestStatus.ACTIVE
    assert request.created_at == t0
    assert request.expires_at == t0 + timedelta(hours=3)
    assert engine.lifecycle.get(request.id) == request


def test_create_rejects_malformed_point(engine, store) -> None:
    with pytest.raises(InvalidCoordinate):
        engine.lifecycle.create(
            _payload(location=GeoPoint(latitude=-100, longitude=0))
        )
    assert store.get_all(EMERGENCY_REQUESTS) == []


def test_forward_path_to_fulfilled(engine, seed, make_donor, fake_now) -> None:
    seed(make_donor("alice"))
    request = engine.lifecycle.create(_payload())

    assert engine.lifecycle.begin_matching(request.id).status == RequestStatus.MATCHING
    found = engine.lifecycle.record_candidates_found(request.id, ["alice", "alice"])
    assert found.status == RequestStatus.DONORS_FOUND
    assert found.donor_ids == ["alice"]

    fake_now.advance(timedelta(minutes=30))
    done = engine.lifecycle.fulfill(request.id, "alice", 450)

    assert done.status == RequestStatus.FULFILLED
    assert done.fulfilled_by == "alice"
    assert done.fulfilled_at == fake_now.now
    assert done.expires_at == request.expires_at
    assert engine.get_donor("alice").total_donations == 1


@pytest.mark.parametrize("status", sorted(RequestStatus))
def test_disallowed_transitions_leave_record_untouched(
    engine, seed, make_donor, make_request, store, status
) -> None:
    seed(make_donor("alice"), make_request("req-1", status=status))
    before = store.get(EMERGENCY_REQUESTS, "req-1")

    attempts = {
        "begin_matching": lambda: engine.lifecycle.begin_matching("req-1"),
        "record_candidates_found": lambda: engine.lifecycle.record_candidates_found(
            "req-1", ["alice"]
        ),
        "fulfill": lambda: engine.lifecycle.fulfill("req-1", "alice", 450),
        "cancel": lambda: engine.lifecycle.cancel("req-1", "no longer needed"),
    }
    for action, attempt in attempts.items():
        if (status, action) in ALLOWED:
            continue
        with pytest.raises(InvalidTransition):
            attempt()
        assert store.get(EMERGENCY_REQUESTS, "req-1") == before

    assert engine.get_donor("alice").total_donations == 0


def test_invalid_transition_message_is_actionable(engine, seed, make_request) -> None:
    seed(make_request("req-1", status=RequestStatus.FULFILLED))
    with pytest.raises(InvalidTransition) as exc_info:
        engine.lifecycle.cancel("req-1")
    assert exc_info.value.user_message == "This request is already fulfilled."


def test_fulfill_validates_before_transitioning(
    engine, seed, make_donor, make_request, store
) -> None:
    seed(make_donor("alice"), make_request(status=RequestStatus.DONORS_FOUND))

    with pytest.raises(InvalidDonationVolume):
        engine.lifecycle.fulfill("req-1", "alice", 0)
    with pytest.raises(RecordNotFound):
        engine.lifecycle.fulfill("req-1", "ghost", 450)
    with pytest.raises(RecordNotFound):
        engine.lifecycle.fulfill("missing", "alice", 450)

    assert store.get(EMERGENCY_REQUESTS, "req-1").status == RequestStatus.DONORS_FOUND


def test_fulfill_rolls_back_when_donation_cannot_be_recorded(
    engine, seed, make_donor, make_request, store
) -> None:
    seed(
        make_donor("alice"),
        make_donor("bob"),
        make_request(status=RequestStatus.DONORS_FOUND),
    )
    # cached copy outlives the stored donor
    engine.get_donor("alice")
    store.delete(DONORS, "alice")

    with pytest.raises(RecordNotFound):
        engine.lifecycle.fulfill("req-1", "alice", 450)

    stored = store.get(EMERGENCY_REQUESTS, "req-1")
    assert stored.status == RequestStatus.DONORS_FOUND
    assert stored.fulfilled_by is None
    assert stored.fulfilled_at is None
    assert store.get_all(DONATION_RECORDS) == []

    done = engine.lifecycle.fulfill("req-1", "bob", 450)
    assert done.status == RequestStatus.FULFILLED
    assert done.fulfilled_by == "bob"
    assert engine.get_donor("bob").total_donations == 1


def test_concurrent_fulfill_has_single_winner(
    engine, seed, make_donor, make_request
) -> None:
    donors = [make_donor(f"donor-{i}") for i in range(8)]
    seed(*donors, make_request(status=RequestStatus.DONORS_FOUND))
    barrier = threading.Barrier(len(donors))

    def attempt(donor_id: str) -> str:
        barrier.wait()
        try:
            engine.lifecycle.fulfill("req-1", donor_id, 450)
            return "fulfilled"
        except InvalidTransition:
            return "rejected"

    with ThreadPoolExecutor(max_workers=len(donors)) as pool:
        outcomes = list(pool.map(attempt, [d.id for d in donors]))

    assert sorted(outcomes) == ["fulfilled"] + ["rejected"] * (len(donors) - 1)
    winner = engine.lifecycle.get("req-1").fulfilled_by
    totals = {d.id: engine.get_donor(d.id).total_donations for d in donors}
    assert totals[winner] == 1
    assert sum(totals.values()) == 1


def test_cancel_notifies_requester_and_donors(engine, seed, make_donor, make_request) -> None:
    seed(
        make_donor("alice"),
        make_request(
            status=RequestStatus.DONORS_FOUND,
            donor_ids=["alice", "bob"],
            interested_donor_ids=["bob", "carol"],
        ),
    )

    cancelled = engine.lifecycle.cancel("req-1", "patient transferred")

    assert cancelled.status == RequestStatus.CANCELLED
    assert cancelled.cancellation_reason == "patient transferred"
    assert cancelled.notification_count == 4
    for user in ("requester-1", "alice", "bob", "carol"):
        (note,) = engine.notifier.for_user(user)
        assert note.related_entity_id == "req-1"
        assert "patient transferred" in note.message


def test_candidates_found_notifies_each_candidate(engine, seed, make_request) -> None:
    seed(make_request(status=RequestStatus.MATCHING))

    request = engine.lifecycle.record_candidates_found("req-1", ["alice", "bob"])

    assert request.notification_count == 2
    assert request.last_notification_sent is not None
    assert engine.notifier.for_user("alice")[0].type == NotificationType.EMERGENCY_REQUEST


def test_express_interest(engine, seed, make_donor, make_request) -> None:
    seed(
        make_donor("alice", BloodType.O_NEG),
        make_donor("bob", BloodType.AB_POS),
        make_donor("carol", BloodType.O_NEG, verification=Verification.PENDING),
        make_request(blood_type=BloodType.O_NEG),
    )

    engine.lifecycle.express_interest("req-1", "alice")
    request = engine.lifecycle.express_interest("req-1", "alice")
    assert request.interested_donor_ids == ["alice"]

    with pytest.raises(DonorNotEligible) as exc_info:
        engine.lifecycle.express_interest("req-1", "bob")
    assert "cannot donate" in exc_info.value.reasons[0]

    with pytest.raises(DonorNotEligible):
        engine.lifecycle.express_interest("req-1", "carol")

    engine.lifecycle.cancel("req-1")
    with pytest.raises(InvalidTransition):
        engine.lifecycle.express_interest("req-1", "alice")


def test_sweep_expires_only_overdue_open_requests(engine, seed, make_request, t0) -> None:
    seed(
        make_request("critical-old", urgency=Urgency.CRITICAL),
        make_request("normal-old", urgency=Urgency.NORMAL),
        make_request(
            "matching-old", urgency=Urgency.CRITICAL, status=RequestStatus.MATCHING
        ),
        make_request(
            "fulfilled-old", urgency=Urgency.CRITICAL, status=RequestStatus.FULFILLED
        ),
    )

    at_deadline = t0 + timedelta(hours=3)
    assert engine.lifecycle.sweep_expirations(at_deadline) == []

    later = at_deadline + timedelta(seconds=1)
    expired = engine.lifecycle.sweep_expirations(later)
    assert sorted(r.id for r in expired) == ["critical-old", "matching-old"]

    assert engine.lifecycle.get("normal-old").status == RequestStatus.ACTIVE
    assert engine.lifecycle.get("fulfilled-old").status == RequestStatus.FULFILLED
    assert engine.lifecycle.sweep_expirations(later) == []


def test_sweep_notifies_requester(engine, seed, make_request, t0) -> None:
    seed(make_request())
    engine.lifecycle.sweep_expirations(t0 + timedelta(days=1))

    (note,) = engine.notifier.for_user("requester-1")
    assert note.title == "Request expired"
    assert engine.lifecycle.get("req-1").notification_count == 1


def test_expire_overdue_is_idempotent(make_request, t0) -> None:
    requests = [
        make_request("a", urgency=Urgency.CRITICAL),
        make_request("b", urgency=Urgency.NORMAL),
        make_request("c", status=RequestStatus.CANCELLED),
        make_request("d", status=RequestStatus.DONORS_FOUND),
    ]
    now = t0 + timedelta(hours=5)

    once = expire_overdue(requests, now)
    twice = expire_overdue(once, now)

    assert once == twice
    assert [r.status for r in once] == [
        RequestStatus.EXPIRED,
        RequestStatus.ACTIVE,
        RequestStatus.CANCELLED,
        RequestStatus.EXPIRED,
    ]
    assert requests[0].status == RequestStatus.ACTIVE


def test_active_requests_excludes_terminal_and_overdue(make_request, t0) -> None:
    requests = [
        make_request("open"),
        make_request("matching", status=RequestStatus.MATCHING),
        make_request("done", status=RequestStatus.FULFILLED),
        make_request("stale", created_at=t0 - timedelta(hours=4)),
    ]
    assert [r.id for r in active_requests(requests, t0)] == ["open", "matching"]
