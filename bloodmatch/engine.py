import logging
from collections.abc import Callable
from datetime import UTC, datetime

from bloodmatch.cache import ReadThroughCache
from bloodmatch.config import Settings
from bloodmatch.database import DONORS, EMERGENCY_REQUESTS, RecordStore
from bloodmatch.eligibility import ineligibility_reasons
from bloodmatch.errors import InvalidTransition
from bloodmatch.geo import validate_coordinate
from bloodmatch.lifecycle import RequestLifecycle, active_requests
from bloodmatch.matcher import find_candidates, find_requests_for_donor
from bloodmatch.models import (
    TERMINAL_STATUSES,
    Candidate,
    DonorProfileUpdate,
    DonorRecord,
    EmergencyRequest,
    NotificationType,
    RequestStatus,
)
from bloodmatch.notifications import Notifier
from bloodmatch.progression import DonorProgression, badge_for, next_eligible_date

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

CLEARABLE_PROFILE_FIELDS = frozenset({"location", "availability", "verification"})


def _radius(requested: float | None, default: float) -> float:
    if requested is None:
        return default
    if not requested >= 0:
        raise ValueError(f"search radius must be >= 0 km, got {requested}")
    return requested


class MatchingEngine:
    """
    Entry point used by the web handlers: owns the cache in front of the
    store and the services that read and write through it.
    """

    def __init__(
        self,
        store: RecordStore,
        settings: Settings | None = None,
        *,
        now_fn: NowFn = lambda: datetime.now(UTC),
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        cache_kwargs = {} if clock is None else {"clock": clock}
        self.cache = ReadThroughCache(
            store,
            record_ttl=self.settings.record_ttl_seconds,
            collection_ttl=self.settings.collection_ttl_seconds,
            **cache_kwargs,
        )
        self.now_fn = now_fn
        self.notifier = Notifier(self.cache, now_fn=now_fn)
        self.progression = DonorProgression(self.cache, self.notifier)
        self.lifecycle = RequestLifecycle(
            self.cache, self.progression, self.notifier, now_fn=now_fn
        )

    # donors

    def register_donor(self, donor: DonorRecord) -> DonorRecord:
        if donor.location is not None:
            validate_coordinate(donor.location.latitude, donor.location.longitude)
        now = self.now_fn()
        # derived fields are never taken from the caller
        donor = donor.model_copy(
            update={
                "badge": badge_for(donor.total_donations),
                "next_eligible_date": (
                    next_eligible_date(donor.last_donation_date)
                    if donor.last_donation_date is not None
                    else None
                ),
                "created_at": donor.created_at or now,
                "updated_at": now,
            }
        )
        self.cache.create(DONORS, donor)
        logger.info("registered donor %s (%s)", donor.id, donor.blood_type)
        return donor

    def get_donor(self, donor_id: str) -> DonorRecord:
        return self.cache.require(DONORS, donor_id)

    def update_donor_profile(
        self, donor_id: str, changes: DonorProfileUpdate
    ) -> DonorRecord:
        """
        Apply profile, availability or verification changes. Stats, badge
        and cooldown are not editable here. An explicit null clears location,
        availability or verification.
        """
        fields = {
            name: value
            for name, value in changes.model_dump(exclude_unset=True).items()
            if value is not None or name in CLEARABLE_PROFILE_FIELDS
        }
        if changes.location is not None:
            validate_coordinate(changes.location.latitude, changes.location.longitude)

        previous: list[DonorRecord] = []
        now = self.now_fn()

        def _apply(donor: DonorRecord) -> DonorRecord:
            previous.append(donor.model_copy())
            return DonorRecord.model_validate(
                {**donor.model_dump(), **fields, "updated_at": now}
            )

        donor = self.cache.mutate(DONORS, donor_id, _apply)

        if "verification" in fields and previous[0].verification != donor.verification:
            self.notifier.emit(
                donor.id,
                "Verification updated",
                "Your donor verification status is now "
                f"{donor.verification or 'unset'}.",
                type=NotificationType.VERIFICATION,
                related_entity_id=donor.id,
            )
        return donor

    def explain_eligibility(
        self, donor_id: str, at_time: datetime | None = None
    ) -> list[str]:
        donor = self.get_donor(donor_id)
        return ineligibility_reasons(donor, at_time or self.now_fn())

    def requests_for_donor(
        self,
        donor_id: str,
        max_radius_km: float | None = None,
        at_time: datetime | None = None,
    ) -> list[tuple[EmergencyRequest, float]]:
        donor = self.get_donor(donor_id)
        return find_requests_for_donor(
            donor,
            self.cache.get_all(EMERGENCY_REQUESTS),
            _radius(max_radius_km, donor.travel_radius_km),
            at_time or self.now_fn(),
        )

    # requests

    def active_requests(self, now: datetime | None = None) -> list[EmergencyRequest]:
        requests = active_requests(
            self.cache.get_all(EMERGENCY_REQUESTS), now or self.now_fn()
        )
        return sorted(requests, key=lambda r: (r.expires_at, r.id))

    def all_requests(self) -> list[EmergencyRequest]:
        return sorted(
            self.cache.get_all(EMERGENCY_REQUESTS),
            key=lambda r: (r.created_at, r.id),
        )

    def match_request(
        self,
        request_id: str,
        max_radius_km: float | None = None,
        at_time: datetime | None = None,
    ) -> list[Candidate]:
        """
        Run the matcher for a request over the current donor snapshot and
        advance the request: Active -> Matching on the first run, and
        Matching -> DonorsFound once any candidate exists.
        """
        radius = _radius(max_radius_km, self.settings.default_search_radius_km)
        request = self.lifecycle.get(request_id)
        if request.status in TERMINAL_STATUSES:
            raise InvalidTransition(request.status, "match")

        at_time = at_time or self.now_fn()
        candidates = find_candidates(
            request,
            self.cache.get_all(DONORS),
            radius,
            at_time,
        )
        logger.info(
            "request %s: %d candidate(s) within %s km",
            request_id,
            len(candidates),
            radius,
        )

        try:
            if request.status == RequestStatus.ACTIVE:
                request = self.lifecycle.begin_matching(request_id)
            if candidates and request.status == RequestStatus.MATCHING:
                self.lifecycle.record_candidates_found(
                    request_id, [c.donor.id for c in candidates]
                )
        except InvalidTransition:
            # another caller moved the request on; the candidate list is
            # still a valid answer for this snapshot
            logger.info("request %s advanced concurrently during match", request_id)

        return candidates
