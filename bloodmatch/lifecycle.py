"""
Emergency request state machine.

    Active -> Matching -> DonorsFound -> Fulfilled
    Active | Matching | DonorsFound -> Cancelled | Expired

A request never returns to Active, and expires_at is fixed at creation.
Every transition is a guarded read-modify-write on the stored record, so of
two racing calls only one can succeed; the other sees InvalidTransition and
the record is left as the winner wrote it.
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

from bloodmatch.cache import ReadThroughCache
from bloodmatch.compatibility import can_donate_to
from bloodmatch.database import DONORS, EMERGENCY_REQUESTS
from bloodmatch.eligibility import ineligibility_reasons
from bloodmatch.errors import DonorNotEligible, InvalidTransition
from bloodmatch.geo import validate_coordinate
from bloodmatch.models import (
    OPEN_STATUSES,
    EmergencyRequest,
    EmergencyRequestCreate,
    NotificationType,
    RequestStatus,
    Urgency,
    as_utc,
)
from bloodmatch.notifications import Notifier
from bloodmatch.progression import DonorProgression, validate_volume

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

DEADLINES: dict[Urgency, timedelta] = {
    Urgency.CRITICAL: timedelta(hours=3),
    Urgency.URGENT: timedelta(hours=12),
    Urgency.NORMAL: timedelta(hours=24),
    Urgency.LIFE_THREATENING: timedelta(hours=24),
}

# action -> (states it may start from, resulting state)
TRANSITIONS: dict[str, tuple[frozenset[RequestStatus], RequestStatus]] = {
    "begin_matching": (
        frozenset({RequestStatus.ACTIVE}),
        RequestStatus.MATCHING,
    ),
    "record_candidates_found": (
        frozenset({RequestStatus.MATCHING}),
        RequestStatus.DONORS_FOUND,
    ),
    "fulfill": (
        frozenset({RequestStatus.DONORS_FOUND}),
        RequestStatus.FULFILLED,
    ),
    "cancel": (OPEN_STATUSES, RequestStatus.CANCELLED),
    "expire": (OPEN_STATUSES, RequestStatus.EXPIRED),
}


def deadline_for(urgency: Urgency) -> timedelta:
    return DEADLINES[urgency]


def check_transition(status: RequestStatus, action: str) -> RequestStatus:
    """Return the state ``action`` leads to from ``status``, or raise."""
    allowed_from, target = TRANSITIONS[action]
    if status not in allowed_from:
        raise InvalidTransition(status, action)
    return target


def is_overdue(request: EmergencyRequest, now: datetime) -> bool:
    return (
        request.status in OPEN_STATUSES
        and as_utc(now) > as_utc(request.expires_at)
    )


def active_requests(
    requests: Iterable[EmergencyRequest], now: datetime
) -> list[EmergencyRequest]:
    """Open requests that have not yet passed their deadline."""
    return [
        r
        for r in requests
        if r.status in OPEN_STATUSES and as_utc(r.expires_at) > as_utc(now)
    ]


def expire_overdue(
    requests: Iterable[EmergencyRequest], now: datetime
) -> list[EmergencyRequest]:
    """
    Pure sweep: copies of ``requests`` with overdue open ones marked Expired.
    Running it on its own output changes nothing.
    """
    swept = []
    for request in requests:
        if is_overdue(request, now):
            request = request.model_copy(
                update={"status": RequestStatus.EXPIRED, "updated_at": now}
            )
        swept.append(request)
    return swept


class RequestLifecycle:
    def __init__(
        self,
        cache: ReadThroughCache,
        progression: DonorProgression,
        notifier: Notifier,
        *,
        now_fn: NowFn = lambda: datetime.now(UTC),
    ) -> None:
        self._cache = cache
        self._progression = progression
        self._notifier = notifier
        self._now_fn = now_fn

    def get(self, request_id: str) -> EmergencyRequest:
        return self._cache.require(EMERGENCY_REQUESTS, request_id)

    def create(
        self,
        payload: EmergencyRequestCreate,
        *,
        created_at: datetime | None = None,
    ) -> EmergencyRequest:
        validate_coordinate(payload.location.latitude, payload.location.longitude)

        created_at = created_at or self._now_fn()
        request = EmergencyRequest(
            id=uuid.uuid4().hex,
            **payload.model_dump(),
            status=RequestStatus.ACTIVE,
            created_at=created_at,
            expires_at=created_at + deadline_for(payload.urgency),
            updated_at=created_at,
        )
        self._cache.create(EMERGENCY_REQUESTS, request)
        logger.info(
            "created request %s (%s, %s) expiring %s",
            request.id,
            request.blood_type,
            request.urgency,
            request.expires_at.isoformat(),
        )
        return request

    def _transition(
        self,
        request_id: str,
        action: str,
        apply: Callable[[EmergencyRequest, datetime], None] | None = None,
    ) -> EmergencyRequest:
        now = self._now_fn()

        def _guarded(request: EmergencyRequest) -> EmergencyRequest:
            target = check_transition(request.status, action)
            if apply is not None:
                apply(request, now)
            request.status = target
            request.updated_at = now
            return request

        try:
            request = self._cache.mutate(EMERGENCY_REQUESTS, request_id, _guarded)
        except InvalidTransition as exc:
            logger.warning(
                "rejected %s on request %s: status is %s",
                action,
                request_id,
                exc.from_status,
            )
            raise

        logger.info("request %s -> %s (%s)", request_id, request.status, action)
        return request

    def begin_matching(self, request_id: str) -> EmergencyRequest:
        return self._transition(request_id, "begin_matching")

    def record_candidates_found(
        self, request_id: str, donor_ids: Iterable[str]
    ) -> EmergencyRequest:
        donor_ids = list(dict.fromkeys(donor_ids))

        def _attach(request: EmergencyRequest, _now: datetime) -> None:
            request.donor_ids = donor_ids

        request = self._transition(request_id, "record_candidates_found", _attach)
        self._notify(
            request,
            donor_ids,
            f"Urgent: {request.blood_type} blood needed",
            f"{request.units_needed} unit(s) needed at "
            f"{request.hospital_name or 'a nearby hospital'}. "
            "You are a compatible donor nearby.",
            type=NotificationType.EMERGENCY_REQUEST,
        )
        return self.get(request_id)

    def fulfill(
        self,
        request_id: str,
        donor_id: str,
        donation_volume: float,
    ) -> EmergencyRequest:
        validate_volume(donation_volume)
        self._cache.require(DONORS, donor_id)

        def _fill(request: EmergencyRequest, now: datetime) -> None:
            request.fulfilled_at = now
            request.fulfilled_by = donor_id

        request = self._transition(request_id, "fulfill", _fill)
        try:
            self._progression.record_donation(
                donor_id,
                donation_volume,
                request.fulfilled_at,
                request_id=request.id,
            )
        except Exception:
            self._undo_fulfill(request_id, donor_id)
            raise

        if request.requester_id:
            self._notify(
                request,
                [request.requester_id],
                "Request fulfilled",
                f"A donor has completed the donation for {request.patient_name}.",
                type=NotificationType.REQUEST_MATCH,
            )
        self._notify(
            request,
            [donor_id],
            "Thank you for your donation",
            f"You helped {request.patient_name} at "
            f"{request.hospital_name or 'the hospital'}.",
            type=NotificationType.REQUEST_MATCH,
        )
        return self.get(request_id)

    def _undo_fulfill(self, request_id: str, donor_id: str) -> None:
        """Put a request back to DonorsFound after its donation failed to record."""

        def _undo(request: EmergencyRequest) -> EmergencyRequest:
            if (
                request.status != RequestStatus.FULFILLED
                or request.fulfilled_by != donor_id
            ):
                raise InvalidTransition(request.status, "undo_fulfill")
            request.status = RequestStatus.DONORS_FOUND
            request.fulfilled_at = None
            request.fulfilled_by = None
            request.updated_at = self._now_fn()
            return request

        try:
            self._cache.mutate(EMERGENCY_REQUESTS, request_id, _undo)
        except InvalidTransition as exc:
            logger.error(
                "could not roll back fulfill of request %s: status is %s",
                request_id,
                exc.from_status,
            )
            return
        logger.warning(
            "request %s rolled back to DonorsFound: donation by %s not recorded",
            request_id,
            donor_id,
        )

    def cancel(self, request_id: str, reason: str = "") -> EmergencyRequest:
        def _cancel(request: EmergencyRequest, now: datetime) -> None:
            request.cancelled_at = now
            request.cancellation_reason = reason or None

        request = self._transition(request_id, "cancel", _cancel)

        recipients = list(
            dict.fromkeys(
                ([request.requester_id] if request.requester_id else [])
                + request.donor_ids
                + request.interested_donor_ids
            )
        )
        message = f"The request for {request.patient_name} was cancelled."
        if reason:
            message += f" Reason: {reason}"
        self._notify(
            request,
            recipients,
            "Request cancelled",
            message,
            type=NotificationType.EMERGENCY_REQUEST,
        )
        return self.get(request_id)

    def express_interest(self, request_id: str, donor_id: str) -> EmergencyRequest:
        """
        Record a donor volunteering for a request. The donor must be
        eligible now and able to give to the request's blood type.
        """
        donor = self._cache.require(DONORS, donor_id)
        request = self.get(request_id)
        reasons = ineligibility_reasons(donor, self._now_fn())
        if not can_donate_to(donor.blood_type, request.blood_type):
            reasons.append(
                f"{donor.blood_type} cannot donate to {request.blood_type}"
            )
        if reasons:
            raise DonorNotEligible(donor_id, reasons)

        def _interest(request: EmergencyRequest) -> EmergencyRequest:
            if request.status not in OPEN_STATUSES:
                raise InvalidTransition(request.status, "express_interest")
            if donor_id not in request.interested_donor_ids:
                request.interested_donor_ids.append(donor_id)
                request.updated_at = self._now_fn()
            return request

        return self._cache.mutate(EMERGENCY_REQUESTS, request_id, _interest)

    def sweep_expirations(self, now: datetime | None = None) -> list[EmergencyRequest]:
        """
        Move every overdue open request to Expired. Safe to run repeatedly or
        concurrently with other transitions: a request that has already left
        the open states is skipped.
        """
        now = now or self._now_fn()
        expired = []

        for request in self._cache.get_all(EMERGENCY_REQUESTS):
            if not is_overdue(request, now):
                continue

            def _expire(current: EmergencyRequest) -> EmergencyRequest:
                # re-check against the stored record, not the snapshot
                if not is_overdue(current, now):
                    raise InvalidTransition(current.status, "expire")
                current.status = RequestStatus.EXPIRED
                current.updated_at = now
                return current

            try:
                request = self._cache.mutate(EMERGENCY_REQUESTS, request.id, _expire)
            except InvalidTransition:
                continue
            expired.append(request)

            if request.requester_id:
                self._notify(
                    request,
                    [request.requester_id],
                    "Request expired",
                    f"The request for {request.patient_name} expired "
                    "before it was fulfilled.",
                    type=NotificationType.EMERGENCY_REQUEST,
                )

        if expired:
            logger.info("expired %d request(s)", len(expired))
        return expired

    def _notify(
        self,
        request: EmergencyRequest,
        user_ids: Iterable[str],
        title: str,
        message: str,
        *,
        type: NotificationType,
    ) -> None:
        sent = 0
        for user_id in user_ids:
            self._notifier.emit(
                user_id,
                title,
                message,
                type=type,
                related_entity_id=request.id,
                related_entity_type="EmergencyRequest",
            )
            sent += 1
        if not sent:
            return

        now = self._now_fn()

        def _count(current: EmergencyRequest) -> EmergencyRequest:
            current.notification_count += sent
            current.last_notification_sent = now
            return current

        self._cache.mutate(EMERGENCY_REQUESTS, request.id, _count)
